from __future__ import annotations

import json
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger()

GATES_DOCUMENT = "gates.json"
PLAN_DOCUMENT = "plan.json"
PROJECT_DOCUMENT = "project.json"
RUN_STATE_DOCUMENT = "run-state.json"
SYNC_DOCUMENT = "github-sync.json"


class TaskgateStateError(RuntimeError):
    """Raised when persisted-state operations fail."""


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class ProjectStore:
    """Whole-document JSON persistence under the project's state directory.

    Every write replaces the complete document. A document that is missing or
    fails to parse reads back as ``None``.
    """

    DOCUMENTS = {
        GATES_DOCUMENT,
        PLAN_DOCUMENT,
        PROJECT_DOCUMENT,
        RUN_STATE_DOCUMENT,
        SYNC_DOCUMENT,
    }

    def __init__(self, project_dir: Path, *, state_dir: str = ".framework") -> None:
        self.project_dir = project_dir.resolve()
        self.state_dir = self.project_dir / state_dir

    @staticmethod
    def _validate_document(name: str) -> None:
        if name not in ProjectStore.DOCUMENTS:
            raise TaskgateStateError(f"Unsupported state document: {name}")

    def path_for(self, name: str) -> Path:
        self._validate_document(name)
        return self.state_dir / name

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def read_json(self, name: str) -> Any:
        path = self.path_for(name)
        if not path.is_file():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as exc:
            logger.warning("state_document_unreadable", document=name, error=str(exc))
            return None

    def write_json(self, name: str, payload: Any) -> None:
        path = self.path_for(name)
        serialized = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=path.parent,
                prefix=f".{name}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                handle.write(serialized)
                temp_path = handle.name
            os.replace(temp_path, path)
        except OSError as exc:
            raise TaskgateStateError(f"Could not write {path}: {exc}") from exc
