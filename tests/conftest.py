import json
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
import structlog


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    yield
    structlog.reset_defaults()


def _feature(feature_id: str, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": feature_id,
        "name": f"Feature {feature_id}",
        "priority": "P1",
        "size": "M",
        "type": "proprietary",
        "dependencies": [],
        "dependencyCount": 0,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def write_plan() -> Callable[..., dict[str, Any]]:
    """Write plan.json (and project.json) under ``<project>/.framework``."""

    def _write(
        project_dir: Path,
        waves: list[list[dict[str, Any] | str]],
        *,
        profile: str | None = "app",
        circular: list[list[str]] | None = None,
    ) -> dict[str, Any]:
        state_dir = project_dir / ".framework"
        state_dir.mkdir(parents=True, exist_ok=True)
        plan = {
            "status": "generated",
            "generatedAt": "2026-01-01T00:00:00+00:00",
            "waves": [
                {
                    "number": index,
                    "phase": "individual",
                    "title": f"Wave {index}",
                    "features": [
                        _feature(item) if isinstance(item, str) else item for item in features
                    ],
                }
                for index, features in enumerate(waves, start=1)
            ],
            "circularDependencies": circular or [],
        }
        (state_dir / "plan.json").write_text(json.dumps(plan), encoding="utf-8")
        if profile is not None:
            (state_dir / "project.json").write_text(
                json.dumps({"profileType": profile}), encoding="utf-8"
            )
        return plan

    return _write
