"""
Memory nodes: distilled, taggable knowledge fragments derived from sessions.

`MemoryService` is the contract the session store and context builder
depend on.  `JsonMemoryStore` implements it with one JSON document per
node under a directory (by default `~/.clion/memory`).  Reading a node
through `get` records an access; `peek` reads without recording one.
"""

from __future__ import annotations

import json
import logging
import math
import os
import secrets
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Sequence, Set

if TYPE_CHECKING:
    from .session import HistoryEntry

logger = logging.getLogger(__name__)

DEFAULT_IMPORTANCE = 50
_SUMMARY_CHARS = 4000


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass
class MemoryNode:
    id: str
    name: str
    description: str = ""
    content: str = ""
    tags: Set[str] = field(default_factory=set)
    importance_score: int = DEFAULT_IMPORTANCE
    access_count: int = 0
    last_accessed: Optional[datetime] = None
    created_at: Optional[datetime] = None
    parent_id: Optional[str] = None
    session_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "content": self.content,
            "tags": sorted(self.tags),
            "importance_score": self.importance_score,
            "access_count": self.access_count,
            "last_accessed": self.last_accessed.isoformat() if self.last_accessed else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "parent_id": self.parent_id,
            "session_ids": list(self.session_ids),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "MemoryNode":
        return MemoryNode(
            id=data["id"],
            name=data.get("name", ""),
            description=data.get("description", ""),
            content=data.get("content", ""),
            tags=set(data.get("tags") or []),
            importance_score=max(0, min(100, int(data.get("importance_score", DEFAULT_IMPORTANCE)))),
            access_count=int(data.get("access_count", 0)),
            last_accessed=_parse_ts(data.get("last_accessed")),
            created_at=_parse_ts(data.get("created_at")),
            parent_id=data.get("parent_id") or None,
            session_ids=list(data.get("session_ids") or []),
        )


class MemoryService(Protocol):
    def search(self, keyword: str, filters: Optional[Dict[str, Any]] = None, limit: int = 10) -> List[str]: ...

    def recently_accessed(self, limit: int = 10) -> List[str]: ...

    def get(self, node_id: str) -> Optional[MemoryNode]: ...

    def peek(self, node_id: str) -> Optional[MemoryNode]: ...

    def exists(self, node_id: str) -> bool: ...

    def create_from_session(
        self,
        session_id: str,
        entries: Sequence["HistoryEntry"],
        name: str,
        parent_id: Optional[str] = None,
    ) -> str: ...

    def associate_session(self, node_id: str, session_id: str) -> bool: ...

    def session_nodes(self, session_id: str) -> List[str]: ...

    def generate_context(self, node_ids: Sequence[str], max_tokens: int) -> str: ...


def format_node(node: MemoryNode) -> str:
    """Render one node for inclusion in a prompt."""
    lines = [f"## Memory Node: {node.name}"]
    if node.description:
        lines.append(f"**Description:** {node.description}")
    lines.append(f"**Content:** {node.content}")
    if node.tags:
        lines.append(f"**Tags:** {', '.join(sorted(node.tags))}")
    lines.append(f"**Importance:** {node.importance_score}/100")
    lines.append(f"**Access Count:** {node.access_count}")
    last = node.last_accessed.isoformat() if node.last_accessed else "never"
    lines.append(f"**Last Accessed:** {last}")
    return "\n".join(lines) + "\n\n"


class JsonMemoryStore:
    """File-backed `MemoryService`."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, node_id: str) -> Path:
        return self.base_dir / f"{node_id}.json"

    def _read(self, node_id: str) -> Optional[MemoryNode]:
        path = self._path(node_id)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as f:
                return MemoryNode.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as exc:
            logger.warning("Skipping unreadable memory node %s: %s", path, exc)
            return None

    def _write(self, node: MemoryNode) -> None:
        fd, tmp = tempfile.mkstemp(prefix="memory_", suffix=".tmp", dir=self.base_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(node.to_dict(), f, indent=2, ensure_ascii=False)
            os.replace(tmp, self._path(node.id))
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _all(self) -> List[MemoryNode]:
        nodes = []
        for path in sorted(self.base_dir.glob("*.json")):
            node = self._read(path.stem)
            if node is not None:
                nodes.append(node)
        return nodes

    def add(
        self,
        name: str,
        content: str,
        description: str = "",
        tags: Optional[Set[str]] = None,
        importance_score: int = DEFAULT_IMPORTANCE,
        parent_id: Optional[str] = None,
    ) -> str:
        """Create a standalone node and return its id."""
        node = MemoryNode(
            id=f"mem_{_now():%Y%m%d_%H%M%S}_{secrets.token_hex(4)}",
            name=name,
            description=description,
            content=content,
            tags=set(tags or ()),
            importance_score=max(0, min(100, importance_score)),
            created_at=_now(),
            parent_id=parent_id,
        )
        self._write(node)
        return node.id

    def search(self, keyword: str, filters: Optional[Dict[str, Any]] = None, limit: int = 10) -> List[str]:
        """Ids of nodes mentioning `keyword`, most important first.

        `filters` may hold `tag` (required tag) and `min_importance`.
        """
        filters = filters or {}
        needle = keyword.lower()
        hits = []
        for node in self._all():
            if filters.get("tag") and filters["tag"] not in node.tags:
                continue
            if node.importance_score < int(filters.get("min_importance", 0)):
                continue
            haystack = " ".join([node.name, node.description, node.content, *node.tags]).lower()
            if needle in haystack:
                hits.append(node)
        hits.sort(key=lambda n: (-n.importance_score, n.id))
        return [n.id for n in hits[:limit]]

    def recently_accessed(self, limit: int = 10) -> List[str]:
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        nodes = [n for n in self._all() if n.last_accessed is not None]
        nodes.sort(key=lambda n: n.last_accessed or epoch, reverse=True)
        return [n.id for n in nodes[:limit]]

    def get(self, node_id: str) -> Optional[MemoryNode]:
        node = self._read(node_id)
        if node is None:
            return None
        node.access_count += 1
        node.last_accessed = _now()
        self._write(node)
        return node

    def peek(self, node_id: str) -> Optional[MemoryNode]:
        return self._read(node_id)

    def exists(self, node_id: str) -> bool:
        return self._path(node_id).exists()

    def create_from_session(
        self,
        session_id: str,
        entries: Sequence["HistoryEntry"],
        name: str,
        parent_id: Optional[str] = None,
    ) -> str:
        transcript = "\n".join(f"{e.role}: {e.content}" for e in entries)
        if len(transcript) > _SUMMARY_CHARS:
            transcript = transcript[:_SUMMARY_CHARS] + "\n[...truncated...]"
        first_user = next((e.content for e in entries if e.role == "user"), "")
        node_id = self.add(
            name=name or f"Memory from {session_id}",
            content=transcript,
            description=first_user[:200],
            tags={"session"},
            parent_id=parent_id,
        )
        self.associate_session(node_id, session_id)
        return node_id

    def associate_session(self, node_id: str, session_id: str) -> bool:
        node = self._read(node_id)
        if node is None:
            return False
        if session_id not in node.session_ids:
            node.session_ids.append(session_id)
            self._write(node)
        return True

    def session_nodes(self, session_id: str) -> List[str]:
        return [n.id for n in self._all() if session_id in n.session_ids]

    def generate_context(self, node_ids: Sequence[str], max_tokens: int) -> str:
        """Render nodes in order until the `ceil(len / 4)` budget is spent.

        Only rendered nodes have an access recorded.
        """
        parts: List[str] = []
        used = 0
        for node_id in node_ids:
            node = self._read(node_id)
            if node is None:
                continue
            node.access_count += 1
            node.last_accessed = _now()
            block = format_node(node)
            cost = math.ceil(len(block) / 4)
            if parts and used + cost > max_tokens:
                break
            self._write(node)
            parts.append(block)
            used += cost
        return "".join(parts)
