"""Tests for @file reference resolution and sandboxing."""

import os

import pytest

from clion import paths


class TestIsAbsoluteReference:
    @pytest.mark.parametrize("ref", ["/etc/passwd", "C:\\Windows\\win.ini", "d:/data"])
    def test_absolute(self, ref):
        assert paths.is_absolute_reference(ref)

    @pytest.mark.parametrize("ref", ["src/a.cpp", "../x", "a", ""])
    def test_relative(self, ref):
        assert not paths.is_absolute_reference(ref)


class TestIsAllowed:
    def test_file_inside_root(self, project):
        resolved = paths.resolve("src/a.cpp", project)
        assert paths.is_allowed(resolved, project)

    def test_parent_traversal_rejected(self, project):
        resolved = paths.resolve("../../etc/passwd", project)
        assert not paths.is_allowed(resolved, project)

    def test_dotdot_inside_root_still_allowed(self, project):
        resolved = paths.resolve("src/../src/a.cpp", project)
        assert paths.is_allowed(resolved, project)

    def test_absolute_path_outside_root_rejected(self, project, tmp_path):
        outside = tmp_path / "outside.txt"
        outside.write_text("secret", encoding="utf-8")
        assert not paths.is_allowed(paths.resolve(str(outside), project), project)

    def test_missing_file_rejected(self, project):
        assert not paths.is_allowed(paths.resolve("src/missing.cpp", project), project)

    def test_directory_rejected(self, project):
        assert not paths.is_allowed(paths.resolve("src", project), project)

    def test_name_starting_with_dots_allowed(self, project):
        (project / "..notes").write_text("x", encoding="utf-8")
        assert paths.is_allowed(paths.resolve("..notes", project), project)

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
    def test_symlink_escaping_root_rejected(self, project, tmp_path):
        outside = tmp_path / "secret.txt"
        outside.write_text("secret", encoding="utf-8")
        link = project / "src" / "link.txt"
        link.symlink_to(outside)
        assert not paths.is_allowed(paths.resolve("src/link.txt", project), project)


class TestRelativeDisplay:
    def test_relative_to_root(self, project):
        resolved = paths.resolve("src/a.cpp", project)
        assert paths.relative_display(resolved, project) == "src/a.cpp"
