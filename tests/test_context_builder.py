"""Tests for @file expansion, truncation, relevance gating and memory context."""

import random

import pytest

from clion.config import ContextOptions
from clion.context_builder import (
    INCLUSION_PATTERN,
    MEMORY_HEADER,
    ContextBuilder,
    estimate_tokens,
    extract_inclusions,
    glob_to_regex,
    truncate_content,
)
from clion.relevance import AnalysisOptions


@pytest.fixture
def builder():
    return ContextBuilder()


class TestExtractInclusions:
    def test_offsets_and_force(self):
        prompt = "Look at @file a.cpp and @file b.cpp --force please"
        found = extract_inclusions(prompt)
        assert [f.file_path for f in found] == ["a.cpp", "b.cpp"]
        assert [f.force for f in found] == [False, True]
        for inc in found:
            assert prompt[inc.start_offset : inc.end_offset] == inc.raw_match

    def test_force_must_be_a_whole_word(self):
        (inc,) = extract_inclusions("@file a.cpp --forceful")
        assert not inc.force
        assert inc.raw_match == "@file a.cpp"

    def test_directive_needs_a_path(self):
        assert extract_inclusions("email me @file") == []


class TestBuildContext:
    def test_full_inclusion(self, builder, project):
        result = builder.build_context("Explain @file src/a.cpp", project)
        assert result == "Explain // File: src/a.cpp\nvoid foo() {}\n"

    def test_no_directives_is_identity(self, builder, project):
        prompt = "Nothing to expand here, not even email@file.com"
        assert builder.build_context(prompt, project) == prompt

    def test_outside_project_rejected(self, builder, project):
        result = builder.build_context("Show @file ../../etc/passwd", project)
        assert "outside project directory" in result
        assert "root:" not in result
        assert result.startswith("Show // Error: File '../../etc/passwd'")

    def test_missing_file_reported_inline(self, builder, project):
        result = builder.build_context("@file src/nope.cpp then @file src/a.cpp", project)
        assert "// Error: File 'src/nope.cpp' is outside project directory or access denied" in result
        assert "void foo() {}" in result

    def test_exclude_pattern(self, builder, project):
        (project / "src" / "keys.secret").write_text("hunter2", encoding="utf-8")
        options = ContextOptions(exclude_patterns=["*.secret"])
        result = builder.build_context("@file src/keys.secret", project, options)
        assert result == "// Warning: File 'src/keys.secret' matches exclude pattern"

    def test_read_failure_reported_inline(self, builder, project, monkeypatch):
        def boom(resolved):
            raise OSError("disk on fire")

        monkeypatch.setattr(ContextBuilder, "_read", staticmethod(boom))
        result = builder.build_context("@file src/a.cpp", project)
        assert result.startswith("// Error reading file 'src/a.cpp':")

    def test_line_numbers_and_header_format(self, builder, project):
        options = ContextOptions(include_line_numbers=True, file_header_format="=== {path} ===\n")
        result = builder.build_context("@file src/lexer.py", project, options)
        assert result.startswith("=== src/lexer.py ===\n1 | import re\n")

    def test_same_file_twice(self, builder, project):
        result = builder.build_context("@file src/a.cpp @file src/a.cpp", project)
        assert result.count("void foo() {}") == 2

    def test_offset_safety_over_random_placements(self, builder, project):
        (project / "b.txt").write_text("BBB\n", encoding="utf-8")
        refs = ["src/a.cpp", "b.txt", "../outside.txt", "src/lexer.py"]
        rendered = {ref: builder.build_context(f"@file {ref}", project) for ref in refs}
        rng = random.Random(1234)
        for _ in range(25):
            words = [rng.choice(["fix", "this", "and", "also", "@file " + rng.choice(refs)]) for _ in range(8)]
            prompt = " ".join(words)
            expected = INCLUSION_PATTERN.sub(lambda m: rendered[m.group(1)], prompt)
            assert builder.build_context(prompt, project) == expected


class TestTruncation:
    def test_large_file_truncated(self, builder, project):
        lines = [f"int value_{i} = {i};" for i in range(1000)]
        (project / "big.cpp").write_text("\n".join(lines) + "\n", encoding="utf-8")
        original = "// File: big.cpp\n" + "\n".join(lines) + "\n"
        options = ContextOptions(max_context_size=100)
        result = builder.build_context("@file big.cpp", project, options)
        assert estimate_tokens(result) < estimate_tokens(original)
        assert "// File truncated: showing 2 of 1000 lines" in result
        assert "// ... 998 lines omitted ..." in result
        assert "1 | int value_0 = 0;" in result
        assert "1000 | int value_999 = 999;" in result

    def test_truncation_disabled(self, builder, project):
        (project / "big.cpp").write_text("x = 1;\n" * 2000, encoding="utf-8")
        options = ContextOptions(max_context_size=100, truncate_large_files=False)
        result = builder.build_context("@file big.cpp", project, options)
        assert result.count("x = 1;") == 2000

    def test_always_omits_a_line(self):
        content = "\n".join(f"line {i}" for i in range(10))
        result = truncate_content(content, 10_000, "f.txt")
        assert "showing 9 of 10 lines" in result
        assert "1 lines omitted" in result

    def test_long_lines_clipped(self):
        content = "\n".join("y" * 5000 for _ in range(100))
        result = truncate_content(content, 200, "wide.txt")
        assert estimate_tokens(result) < estimate_tokens(content)
        assert " ..." in result


    def test_single_line_file_clipped(self, builder, project):
        (project / "min.js").write_text("var a=1;" * 5000, encoding="utf-8")
        options = ContextOptions(max_context_size=1000)
        result = builder.build_context("@file min.js", project, options)
        assert "// File truncated: showing 2000 of 40000 characters" in result
        assert "1 | var a=1;var a=1;" in result
        assert result.endswith(" ...\n")
        assert "lines omitted" not in result
        assert estimate_tokens(result) < 1000

    def test_truncated_file_keeps_custom_header(self, builder, project):
        (project / "big.cpp").write_text("x = 1;\n" * 2000, encoding="utf-8")
        options = ContextOptions(max_context_size=100, file_header_format="=== {path} ===\n")
        result = builder.build_context("@file big.cpp", project, options)
        assert "=== big.cpp ===\n" in result
        assert "// File: big.cpp" not in result

class TestIntelligentSelection:
    def test_low_relevance_gets_summary(self, builder, project):
        options = ContextOptions(
            enable_intelligent_selection=True, analysis=AnalysisOptions(relevance_threshold=0.9)
        )
        result = builder.build_context("Explain @file src/a.cpp", project, options)
        assert "// File: src/a.cpp\n// Functions: 1 - foo" in result
        assert "// Use @file src/a.cpp --force to include full file if needed." in result
        assert "void foo() {}" not in result

    def test_force_overrides_selection(self, builder, project):
        options = ContextOptions(
            enable_intelligent_selection=True, analysis=AnalysisOptions(relevance_threshold=0.9)
        )
        result = builder.build_context("Explain @file src/a.cpp --force", project, options)
        assert "void foo() {}" in result
        assert "--force" not in result

    def test_relevant_file_included_with_info(self, builder, project):
        options = ContextOptions(enable_intelligent_selection=True, show_relevance_info=True)
        result = builder.build_context("How does tokenize work in Lexer? @file src/lexer.py", project, options)
        assert "// Relevance Analysis for: src/lexer.py" in result
        assert "def tokenize(self, text):" in result


class TestMemoryIntegration:
    def test_relevant_memory_prepended_and_associated(self, project, memory, store):
        node_id = memory.add("Parser notes", "The parser uses recursive descent.", importance_score=80)
        memory.add("Unrelated", "Gardening tips.", importance_score=90)
        session_id = store.create()
        builder = ContextBuilder(memory=memory, sessions=store)
        options = ContextOptions(enable_memory_integration=True)

        result = builder.build_context("Explain the parser @file src/a.cpp", project, options, session_id=session_id)

        assert result.startswith(MEMORY_HEADER + "## Memory Node: Parser notes")
        assert "Gardening" not in result
        assert result.endswith("// File: src/a.cpp\nvoid foo() {}\n")
        assert node_id in store.load(session_id).memory_node_ids

    def test_importance_floor(self, project, memory):
        memory.add("Parser trivia", "parser parser parser", importance_score=10)
        builder = ContextBuilder(memory=memory)
        options = ContextOptions(enable_memory_integration=True, min_memory_importance=30)
        assert builder.find_relevant_memory_nodes("Explain the parser", options) == []

    def test_unrelated_recent_node_not_backfilled(self, memory):
        node_id = memory.add("Gardening", "Water tomatoes daily.", importance_score=90)
        memory.get(node_id)
        builder = ContextBuilder(memory=memory)
        options = ContextOptions(enable_memory_integration=True)
        assert builder.find_relevant_memory_nodes("Explain the parser", options) == []

    def test_related_recent_node_backfilled(self, memory):
        node_id = memory.add("Notes", "Grammar rules.", tags={"parser"}, importance_score=60)
        memory.get(node_id)
        builder = ContextBuilder(memory=memory)
        options = ContextOptions(enable_memory_integration=True)
        assert builder.find_relevant_memory_nodes("Explain the parser", options) == [node_id]

    def test_discovery_records_no_access(self, memory):
        node_id = memory.add("parser design", "Notes about widgets.", importance_score=80)
        builder = ContextBuilder(memory=memory)
        options = ContextOptions(enable_memory_integration=True)
        assert builder.find_relevant_memory_nodes("Explain the parser", options) == []
        node = memory.peek(node_id)
        assert node.access_count == 0
        assert memory.recently_accessed() == []

    def test_rendering_records_one_access(self, project, memory):
        node_id = memory.add("Parser notes", "The parser uses recursive descent.", importance_score=80)
        builder = ContextBuilder(memory=memory)
        options = ContextOptions(enable_memory_integration=True)
        builder.build_context("Explain the parser", project, options)
        assert memory.peek(node_id).access_count == 1

    def test_explicit_node_ids(self, project, memory):
        node_id = memory.add("Style", "Prefer small functions.")
        result = ContextBuilder(memory=memory).build_context("Review", project, memory_node_ids=[node_id])
        assert "## Memory Node: Style" in result
        assert result.endswith("Review")

    def test_memory_failure_is_not_fatal(self, project):
        class BrokenMemory:
            def search(self, *args, **kwargs):
                raise RuntimeError("index corrupted")

        builder = ContextBuilder(memory=BrokenMemory())
        options = ContextOptions(enable_memory_integration=True)
        assert builder.build_context("Explain the parser", project, options) == "Explain the parser"


class TestGlob:
    @pytest.mark.parametrize(
        "pattern,name,expected",
        [("*.cpp", "a.cpp", True), ("*.cpp", "a.cpp.bak", False), ("test_*", "test_x.py", True), ("a.c", "abc", False)],
    )
    def test_glob_to_regex(self, pattern, name, expected):
        assert bool(glob_to_regex(pattern).match(name)) is expected
