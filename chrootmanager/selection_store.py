from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from .errors import PersistenceError
from .models import Selection
from .state_store import load_document, save_document

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectionStore:
    """File-backed home of the single durable Selection (json or yaml by suffix)."""

    path: Path

    @classmethod
    def at(cls, path: str | Path) -> "SelectionStore":
        return cls(path=Path(path).expanduser())

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[Selection]:
        if not self.path.exists():
            return None
        try:
            data = load_document(self.path)
            return Selection.from_dict(data)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise PersistenceError(f"Stored selection {self.path} is unreadable: {e}") from e

    def save(self, selection: Selection) -> None:
        try:
            save_document(self.path, selection.to_dict())
        except OSError as e:
            raise PersistenceError(f"Cannot write selection to {self.path}: {e}") from e
        logger.info(
            "Selection saved to %s (mirror=%s, profile=%s)",
            self.path,
            selection.mirror_identifier,
            selection.profile_path,
        )
