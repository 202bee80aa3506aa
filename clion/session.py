"""
Persistent conversation sessions.

Each session is one JSON document, `<session_dir>/<id>.json`.  Every
operation on `SessionStore` is a full load, an in-memory edit and a full
rewrite; there are no partial field updates.

Writes go to a temporary file in the same directory and are committed
with `os.replace`, so a reader never sees a half-written document.  Each
document carries a `version` counter: `save` refuses to overwrite a
document whose stored version differs from the one the caller loaded and
raises `SessionConflictError` instead of silently losing the other
writer's update.

Sessions form a forest through `parent_session_id` / `child_session_ids`.
Both sides of a link are always updated together, and changes that would
create a cycle are rejected.
"""

from __future__ import annotations

import json
import logging
import math
import os
import secrets
import string
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, Iterator, List, Optional, Set

from .errors import SessionConflictError, SessionHierarchyError, SessionNotFoundError

if TYPE_CHECKING:
    from .checkpoints import CheckpointService
    from .memory import MemoryService

logger = logging.getLogger(__name__)

ROLES = ("system", "user", "assistant")
CURRENT_FILE = "current"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """ISO 8601 with millisecond precision and a `Z` suffix."""
    if value is None:
        return None
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_session_id() -> str:
    """`session_<UTC yyyymmdd_hhmmss>_<8 random chars>`"""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(8))
    return f"session_{utcnow():%Y%m%d_%H%M%S}_{suffix}"


@dataclass(frozen=True)
class HistoryEntry:
    role: str
    content: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content, "timestamp": format_timestamp(self.timestamp)}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "HistoryEntry":
        return HistoryEntry(
            role=data["role"],
            content=data["content"],
            timestamp=parse_timestamp(data.get("timestamp")) or utcnow(),
        )


@dataclass
class Session:
    """A persisted multi-turn conversation."""

    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    name: str = ""
    description: str = ""
    tags: Set[str] = field(default_factory=set)
    parent_session_id: Optional[str] = None
    child_session_ids: List[str] = field(default_factory=list)
    entries: List[HistoryEntry] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)
    checkpoint_ids: List[str] = field(default_factory=list)
    last_checkpoint_id: Optional[str] = None
    memory_node_ids: List[str] = field(default_factory=list)
    total_tokens: int = 0
    is_compressed: bool = False
    version: int = 0

    def touch(self) -> None:
        self.updated_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "name": self.name,
            "description": self.description,
            "tags": sorted(self.tags),
            "parent_session_id": self.parent_session_id or "",
            "child_session_ids": list(self.child_session_ids),
            "entries": [e.to_dict() for e in self.entries],
            "metadata": dict(self.metadata),
            "checkpoint_ids": list(self.checkpoint_ids),
            "last_checkpoint_id": self.last_checkpoint_id or "",
            "memory_node_ids": list(self.memory_node_ids),
            "total_tokens": self.total_tokens,
            "is_compressed": self.is_compressed,
            "version": self.version,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Session":
        # Fields added after the first schema default to empty values.
        return Session(
            id=data["id"],
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            name=data.get("name") or "",
            description=data.get("description") or "",
            tags=set(data.get("tags") or []),
            parent_session_id=data.get("parent_session_id") or None,
            child_session_ids=list(data.get("child_session_ids") or []),
            entries=[HistoryEntry.from_dict(e) for e in data.get("entries") or []],
            metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
            checkpoint_ids=list(data.get("checkpoint_ids") or []),
            last_checkpoint_id=data.get("last_checkpoint_id") or None,
            memory_node_ids=list(data.get("memory_node_ids") or []),
            total_tokens=int(data.get("total_tokens") or 0),
            is_compressed=bool(data.get("is_compressed", False)),
            version=int(data.get("version") or 0),
        )


class SessionStore:
    """Sole owner and mutator of persisted sessions."""

    def __init__(
        self,
        session_dir: Path,
        checkpoints: Optional["CheckpointService"] = None,
        memory: Optional["MemoryService"] = None,
    ) -> None:
        self.session_dir = Path(session_dir)
        self.session_dir.mkdir(parents=True, exist_ok=True)
        self.checkpoints = checkpoints
        self.memory = memory

    # ----------------
    # Storage
    # ----------------
    def _path(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id in {".", ".."}:
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.session_dir / f"{session_id}.json"

    def _read_version(self, path: Path) -> Optional[int]:
        try:
            with path.open("r", encoding="utf-8") as f:
                return int(json.load(f).get("version") or 0)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Overwriting unreadable session file %s: %s", path, exc)
            return None

    def _ids(self) -> Iterator[str]:
        for path in self.session_dir.glob("*.json"):
            if path.is_file():
                yield path.stem

    def _sessions(self) -> Iterator[Session]:
        for session_id in self._ids():
            session = self.load(session_id)
            if session is not None:
                yield session

    def save(self, session: Session) -> bool:
        """Atomically write `session` and bump its version.

        Raises `SessionConflictError` if the stored document was changed
        by someone else since `session` was loaded.  Returns False if the
        file could not be written.
        """
        path = self._path(session.id)
        stored = self._read_version(path)
        if stored is not None and stored != session.version:
            raise SessionConflictError(
                f"Session {session.id} was modified concurrently "
                f"(stored version {stored}, loaded version {session.version})"
            )
        session.version += 1
        fd, tmp = tempfile.mkstemp(prefix=f".{session.id}_", suffix=".tmp", dir=self.session_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(session.to_dict(), f, indent=2, ensure_ascii=False)
            os.replace(tmp, path)
        except OSError as exc:
            session.version -= 1
            Path(tmp).unlink(missing_ok=True)
            logger.error("Failed to save session %s: %s", session.id, exc)
            return False
        return True

    def load(self, session_id: str) -> Optional[Session]:
        path = self._path(session_id)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as f:
                return Session.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Failed to load session %s: %s", session_id, exc)
            return None

    def require(self, session_id: str) -> Session:
        """Like `load`, but raises `SessionNotFoundError`."""
        session = self.load(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def exists(self, session_id: str) -> bool:
        return self._path(session_id).exists()

    # ----------------
    # Lifecycle
    # ----------------
    def create(self) -> str:
        return self.create_with_metadata()

    def create_with_metadata(
        self,
        name: str = "",
        description: str = "",
        tags: Optional[Iterable[str]] = None,
        parent_id: Optional[str] = None,
    ) -> str:
        if parent_id and not self.exists(parent_id):
            raise SessionNotFoundError(parent_id)
        now = utcnow()
        session = Session(
            id=new_session_id(),
            created_at=now,
            updated_at=now,
            name=name,
            description=description,
            tags=set(tags or ()),
        )
        if not self.save(session):
            raise OSError(f"Could not write session {session.id} to {self.session_dir}")
        if parent_id:
            self.set_parent(session.id, parent_id)
        logger.debug("Created session %s", session.id)
        return session.id

    def delete(self, session_id: str) -> bool:
        """Delete a session and scrub references to it.

        The parent's child list and the children's parent links are
        cleared and checkpoints are deleted through the checkpoint
        service, if one is configured.
        """
        session = self.load(session_id)
        if session is None:
            return False
        if session.parent_session_id:
            parent = self.load(session.parent_session_id)
            if parent is not None and session_id in parent.child_session_ids:
                parent.child_session_ids.remove(session_id)
                parent.touch()
                self.save(parent)
        for child_id in session.child_session_ids:
            child = self.load(child_id)
            if child is not None and child.parent_session_id == session_id:
                child.parent_session_id = None
                child.touch()
                self.save(child)
        if self.checkpoints is not None:
            removed = self.checkpoints.delete_all_for_session(session_id)
            logger.debug("Deleted %d checkpoints of session %s", removed, session_id)
        was_current = self.get_current() == session_id
        try:
            self._path(session_id).unlink()
        except FileNotFoundError:
            return False
        if was_current:
            (self.session_dir / CURRENT_FILE).unlink(missing_ok=True)
        return True

    def list_sessions(self) -> List[str]:
        """All session ids, newest first (ids embed their creation time)."""
        return sorted(self._ids(), reverse=True)

    def get_current(self) -> Optional[str]:
        path = self.session_dir / CURRENT_FILE
        try:
            session_id = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return session_id if session_id and self.exists(session_id) else None

    def set_current(self, session_id: str) -> None:
        if not self.exists(session_id):
            raise SessionNotFoundError(session_id)
        (self.session_dir / CURRENT_FILE).write_text(session_id + "\n", encoding="utf-8")

    # ----------------
    # Entries and metadata
    # ----------------
    def append_entry(self, session_id: str, role: str, content: str, tokens: int = 0) -> HistoryEntry:
        if role not in ROLES:
            raise ValueError(f"Invalid role {role!r}; expected one of {ROLES}")
        session = self.require(session_id)
        entry = HistoryEntry(role=role, content=content, timestamp=utcnow())
        session.entries.append(entry)
        session.total_tokens += max(0, tokens)
        session.updated_at = entry.timestamp
        if not self.save(session):
            raise OSError(f"Could not write session {session_id}")
        return entry

    def update_metadata(
        self,
        session_id: str,
        name: str = "",
        description: str = "",
        tags: Optional[Iterable[str]] = None,
    ) -> bool:
        """Set non-empty name/description and add tags."""
        session = self.load(session_id)
        if session is None:
            return False
        if name:
            session.name = name
        if description:
            session.description = description
        session.tags.update(tags or ())
        session.touch()
        return self.save(session)

    def add_tags(self, session_id: str, tags: Iterable[str]) -> bool:
        return self.update_metadata(session_id, tags=tags)

    def remove_tags(self, session_id: str, tags: Iterable[str]) -> bool:
        session = self.load(session_id)
        if session is None:
            return False
        session.tags.difference_update(tags)
        session.touch()
        return self.save(session)

    def compress(self, session_id: str) -> bool:
        return self._set_compressed(session_id, True)

    def decompress(self, session_id: str) -> bool:
        return self._set_compressed(session_id, False)

    def _set_compressed(self, session_id: str, value: bool) -> bool:
        session = self.load(session_id)
        if session is None:
            return False
        session.is_compressed = value
        session.touch()
        return self.save(session)

    # ----------------
    # Hierarchy
    # ----------------
    def get_hierarchy(self, session_id: str) -> List[str]:
        """Ids from the root ancestor down to `session_id`."""
        chain: List[str] = []
        current: Optional[str] = session_id
        while current and current not in chain:
            chain.append(current)
            session = self.load(current)
            if session is None:
                break
            current = session.parent_session_id
        chain.reverse()
        return chain

    def get_children(self, session_id: str) -> List[str]:
        session = self.load(session_id)
        return list(session.child_session_ids) if session else []

    def _check_acyclic(self, child_id: str, parent_id: str) -> None:
        if child_id == parent_id or child_id in self.get_hierarchy(parent_id):
            raise SessionHierarchyError(
                f"Cannot make {parent_id} the parent of {child_id}: {parent_id} descends from {child_id}"
            )

    def set_parent(self, session_id: str, parent_id: str) -> bool:
        """Move `session_id` under `parent_id`, detaching it from any prior parent."""
        if not self.exists(session_id) or not self.exists(parent_id):
            return False
        self._check_acyclic(session_id, parent_id)

        session = self.require(session_id)
        old_parent_id = session.parent_session_id
        if old_parent_id and old_parent_id != parent_id:
            old_parent = self.load(old_parent_id)
            if old_parent is not None and session_id in old_parent.child_session_ids:
                old_parent.child_session_ids.remove(session_id)
                old_parent.touch()
                self.save(old_parent)

        session.parent_session_id = parent_id
        session.touch()

        parent = self.require(parent_id)
        if session_id not in parent.child_session_ids:
            parent.child_session_ids.append(session_id)
        parent.touch()
        return self.save(session) and self.save(parent)

    def add_child(self, parent_id: str, child_id: str) -> bool:
        parent = self.load(parent_id)
        if parent is None or not self.exists(child_id):
            return False
        if child_id in parent.child_session_ids:
            return True
        return self.set_parent(child_id, parent_id)

    def remove_child(self, parent_id: str, child_id: str) -> bool:
        parent = self.load(parent_id)
        child = self.load(child_id)
        if parent is None or child is None:
            return False
        if child_id in parent.child_session_ids:
            parent.child_session_ids.remove(child_id)
        parent.touch()
        if child.parent_session_id == parent_id:
            child.parent_session_id = None
        child.touch()
        return self.save(parent) and self.save(child)

    # ----------------
    # Checkpoints
    # ----------------
    def _require_checkpoints(self) -> "CheckpointService":
        if self.checkpoints is None:
            raise RuntimeError("No checkpoint service configured")
        return self.checkpoints

    def create_checkpoint(self, session_id: str, name: str, description: str = "") -> str:
        service = self._require_checkpoints()
        session = self.require(session_id)
        checkpoint_id = service.create(session, name, description)
        session.checkpoint_ids.append(checkpoint_id)
        session.last_checkpoint_id = checkpoint_id
        session.touch()
        self.save(session)
        return checkpoint_id

    def restore_from_checkpoint(self, checkpoint_id: str) -> Session:
        """Return the session snapshot held by a checkpoint (not persisted)."""
        session = self._require_checkpoints().restore(checkpoint_id)
        if session is None:
            raise SessionNotFoundError(f"checkpoint {checkpoint_id}")
        return session

    def get_checkpoints(self, session_id: str) -> List[str]:
        return self._require_checkpoints().list_for_session(session_id)

    def delete_checkpoints(self, session_id: str) -> int:
        removed = self._require_checkpoints().delete_all_for_session(session_id)
        session = self.load(session_id)
        if session is not None:
            session.checkpoint_ids.clear()
            session.last_checkpoint_id = None
            session.touch()
            self.save(session)
        return removed

    # ----------------
    # Memory
    # ----------------
    def _require_memory(self) -> "MemoryService":
        if self.memory is None:
            raise RuntimeError("No memory service configured")
        return self.memory

    def create_memory_from_session(
        self, session_id: str, memory_name: str, parent_memory_id: Optional[str] = None
    ) -> str:
        service = self._require_memory()
        session = self.require(session_id)
        node_id = service.create_from_session(session_id, session.entries, memory_name, parent_memory_id)
        if node_id not in session.memory_node_ids:
            session.memory_node_ids.append(node_id)
        session.touch()
        self.save(session)
        return node_id

    def associate_memory(self, session_id: str, node_id: str) -> bool:
        """Link a memory node to a session.  Repeated calls are no-ops."""
        service = self._require_memory()
        if not service.exists(node_id) or not self.exists(session_id):
            return False
        if not service.associate_session(node_id, session_id):
            return False
        session = self.require(session_id)
        if node_id not in session.memory_node_ids:
            session.memory_node_ids.append(node_id)
            session.touch()
            self.save(session)
        return True

    def get_memory_nodes(self, session_id: str) -> List[str]:
        return self._require_memory().session_nodes(session_id)

    # ----------------
    # Search and maintenance
    # ----------------
    def search(self, query: str, tags: Optional[Iterable[str]] = None) -> List[str]:
        """Sessions carrying all `tags` whose name, description or entries contain `query`."""
        required = set(tags or ())
        needle = query.lower()
        results = []
        for session in self._sessions():
            if not required.issubset(session.tags):
                continue
            text = " ".join([session.name, session.description, *(e.content for e in session.entries)])
            if needle in text.lower():
                results.append(session.id)
        return sorted(results)

    def find_by_tag(self, tag: str) -> List[str]:
        return sorted(s.id for s in self._sessions() if tag in s.tags)

    def find_by_name(self, pattern: str) -> List[str]:
        needle = pattern.lower()
        return sorted(s.id for s in self._sessions() if needle in s.name.lower())

    def find_by_content(self, pattern: str) -> List[str]:
        needle = pattern.lower()
        return sorted(
            s.id for s in self._sessions() if any(needle in e.content.lower() for e in s.entries)
        )

    def by_date_range(self, start: datetime, end: datetime) -> List[str]:
        """Sessions created within `[start, end]`."""
        return sorted(
            s.id for s in self._sessions() if s.created_at is not None and start <= s.created_at <= end
        )

    def get_size(self, session_id: str) -> int:
        try:
            return self._path(session_id).stat().st_size
        except FileNotFoundError:
            return 0

    def by_size(self, min_bytes: int = 0, max_bytes: int = 0) -> List[str]:
        """Sessions whose file size is within bounds; 0 leaves a bound open."""
        results = []
        for session_id in self._ids():
            size = self.get_size(session_id)
            if (min_bytes == 0 or size >= min_bytes) and (max_bytes == 0 or size <= max_bytes):
                results.append(session_id)
        return sorted(results)

    def _last_modified(self, session: Session) -> datetime:
        if session.updated_at is not None:
            return session.updated_at
        mtime = self._path(session.id).stat().st_mtime
        return datetime.fromtimestamp(mtime, tz=timezone.utc)

    def recently_modified(self, limit: int = 10) -> List[str]:
        sessions = sorted(self._sessions(), key=self._last_modified, reverse=True)
        return [s.id for s in sessions[:limit]]

    def cleanup_older_than(self, days: int) -> int:
        """Delete sessions not modified in the last `days` days."""
        cutoff = utcnow() - timedelta(days=days)
        stale = [s.id for s in self._sessions() if self._last_modified(s) < cutoff]
        removed = sum(1 for session_id in stale if self.delete(session_id))
        if removed:
            logger.info("Removed %d sessions older than %d days", removed, days)
        return removed

    def validate_integrity(self, session_id: str) -> bool:
        session = self.load(session_id)
        if session is None:
            return False
        return bool(session.id) and bool(session.entries) and session.created_at is not None and session.updated_at is not None

    def token_count(self, session_id: str) -> int:
        session = self.load(session_id)
        if session is None:
            return 0
        if session.total_tokens > 0:
            return session.total_tokens
        return sum(math.ceil(len(e.content) / 4) for e in session.entries)

    def stats(self) -> Dict[str, Any]:
        ids = list(self._ids())
        total_size = sum(self.get_size(i) for i in ids)
        return {
            "total_sessions": len(ids),
            "total_size_bytes": total_size,
            "total_size_mb": round(total_size / (1024 * 1024), 3),
            "total_tokens": sum(self.token_count(i) for i in ids),
        }
