"""Immutable named snapshots of a session's state."""

from __future__ import annotations

import json
import logging
import os
import secrets
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .session import Session, format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)


class CheckpointService(Protocol):
    def create(self, session: Session, name: str, description: str = "") -> str: ...

    def restore(self, checkpoint_id: str) -> Optional[Session]: ...

    def list_for_session(self, session_id: str) -> List[str]: ...

    def delete_all_for_session(self, session_id: str) -> int: ...


@dataclass(frozen=True)
class Checkpoint:
    id: str
    session_id: str
    name: str
    description: str
    created_at: Optional[datetime]
    snapshot: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "name": self.name,
            "description": self.description,
            "created_at": format_timestamp(self.created_at),
            "snapshot": self.snapshot,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Checkpoint":
        return Checkpoint(
            id=data["id"],
            session_id=data["session_id"],
            name=data.get("name", ""),
            description=data.get("description", ""),
            created_at=parse_timestamp(data.get("created_at")),
            snapshot=data["snapshot"],
        )


class JsonCheckpointStore:
    """Stores each checkpoint as `<base_dir>/<checkpoint_id>.json`."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, checkpoint_id: str) -> Path:
        return self.base_dir / f"{checkpoint_id}.json"

    def _load(self, checkpoint_id: str) -> Optional[Checkpoint]:
        path = self._path(checkpoint_id)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as f:
                return Checkpoint.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as exc:
            logger.warning("Skipping unreadable checkpoint %s: %s", path, exc)
            return None

    def _all(self) -> List[Checkpoint]:
        found = []
        for path in sorted(self.base_dir.glob("*.json")):
            checkpoint = self._load(path.stem)
            if checkpoint is not None:
                found.append(checkpoint)
        return found

    def create(self, session: Session, name: str, description: str = "") -> str:
        now = utcnow()
        checkpoint = Checkpoint(
            id=f"ckpt_{now:%Y%m%d_%H%M%S}_{secrets.token_hex(4)}",
            session_id=session.id,
            name=name,
            description=description,
            created_at=now,
            snapshot=session.to_dict(),
        )
        fd, tmp = tempfile.mkstemp(prefix="ckpt_", suffix=".tmp", dir=self.base_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(checkpoint.to_dict(), f, indent=2, ensure_ascii=False)
            os.replace(tmp, self._path(checkpoint.id))
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug("Checkpoint %s created for session %s", checkpoint.id, session.id)
        return checkpoint.id

    def get(self, checkpoint_id: str) -> Optional[Checkpoint]:
        return self._load(checkpoint_id)

    def restore(self, checkpoint_id: str) -> Optional[Session]:
        checkpoint = self._load(checkpoint_id)
        if checkpoint is None:
            return None
        return Session.from_dict(checkpoint.snapshot)

    def list_for_session(self, session_id: str) -> List[str]:
        return [c.id for c in self._all() if c.session_id == session_id]

    def delete_all_for_session(self, session_id: str) -> int:
        removed = 0
        for checkpoint_id in self.list_for_session(session_id):
            self._path(checkpoint_id).unlink(missing_ok=True)
            removed += 1
        return removed
