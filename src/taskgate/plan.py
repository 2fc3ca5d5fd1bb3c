from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from taskgate.profile import TDD_FEATURE_TYPES, TDD_PROFILES
from taskgate.state.store import PLAN_DOCUMENT, ProjectStore

TaskKind = Literal["db", "api", "ui", "integration", "test", "review"]
TaskOrderMode = Literal["normal", "tdd"]
Priority = Literal["P0", "P1", "P2"]
Size = Literal["S", "M", "L", "XL"]
FeatureType = Literal["common", "proprietary"]

NORMAL_ORDER: tuple[TaskKind, ...] = ("db", "api", "ui", "integration", "review", "test")
TDD_ORDER: tuple[TaskKind, ...] = ("test", "db", "api", "ui", "integration", "review")

TASK_KIND_LABELS: dict[str, str] = {
    "db": "Database",
    "api": "API",
    "ui": "UI",
    "integration": "Integration",
    "test": "Testing",
    "review": "Review",
}

TASK_KIND_REFERENCES: dict[str, list[str]] = {
    "db": ["§4"],
    "api": ["§5", "§7", "§9"],
    "ui": ["§6"],
    "integration": ["§5", "§6"],
    "test": ["§3-E", "§3-F", "§3-G", "§3-H"],
    "review": ["§3", "§9"],
}


@dataclass(slots=True)
class Feature:
    id: str
    name: str
    priority: Priority = "P1"
    size: Size = "M"
    type: FeatureType = "proprietary"
    dependencies: list[str] = field(default_factory=list)
    dependency_count: int = 0
    status: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Feature:
        dependencies = data.get("dependencies") or []
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            priority=data.get("priority", "P1"),
            size=data.get("size", "M"),
            type=data.get("type", "proprietary"),
            dependencies=[str(item) for item in dependencies],
            dependency_count=int(data.get("dependencyCount", data.get("dependency_count", 0))),
            status=data.get("status"),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "priority": self.priority,
            "size": self.size,
            "type": self.type,
            "dependencies": list(self.dependencies),
            "dependencyCount": self.dependency_count,
        }
        if self.status is not None:
            payload["status"] = self.status
        return payload


@dataclass(slots=True)
class Wave:
    number: int
    features: list[Feature] = field(default_factory=list)
    title: str = ""
    phase: str = ""
    layer: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Wave:
        return cls(
            number=int(data["number"]),
            features=[Feature.from_dict(item) for item in data.get("features") or []],
            title=str(data.get("title", "")),
            phase=str(data.get("phase", "")),
            layer=data.get("layer"),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "number": self.number,
            "phase": self.phase,
            "title": self.title,
            "features": [feature.to_dict() for feature in self.features],
        }
        if self.layer is not None:
            payload["layer"] = self.layer
        return payload


@dataclass(slots=True)
class Plan:
    waves: list[Wave] = field(default_factory=list)
    status: str = "generated"
    generated_at: str | None = None
    circular_dependencies: list[list[str]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Plan:
        cycles = data.get("circularDependencies", data.get("circular_dependencies")) or []
        return cls(
            waves=[Wave.from_dict(item) for item in data.get("waves") or []],
            status=str(data.get("status", "generated")),
            generated_at=data.get("generatedAt", data.get("generated_at")),
            circular_dependencies=[[str(node) for node in cycle] for cycle in cycles],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "generatedAt": self.generated_at,
            "waves": [wave.to_dict() for wave in self.waves],
            "circularDependencies": [list(cycle) for cycle in self.circular_dependencies],
        }

    @property
    def total_features(self) -> int:
        return sum(len(wave.features) for wave in self.waves)

    def features(self) -> list[tuple[Wave, Feature]]:
        return [(wave, feature) for wave in self.waves for feature in wave.features]

    def find_wave(self, number: int) -> Wave | None:
        for wave in self.waves:
            if wave.number == number:
                return wave
        return None


@dataclass(slots=True)
class Task:
    id: str
    feature_id: str
    kind: TaskKind
    name: str
    size: str
    references: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)

    @property
    def short_name(self) -> str:
        return self.name.split(" - ", maxsplit=1)[-1]


def task_id_for(feature_id: str, kind: str) -> str:
    return f"{feature_id}-{kind.upper()}"


def task_order(mode: TaskOrderMode) -> tuple[TaskKind, ...]:
    return TDD_ORDER if mode == "tdd" else NORMAL_ORDER


def determine_task_order_mode(profile_type: str | None, feature_type: str | None) -> TaskOrderMode:
    if profile_type in TDD_PROFILES:
        return "tdd"
    if feature_type in TDD_FEATURE_TYPES:
        return "tdd"
    return "normal"


def decompose_feature(feature: Feature, order_mode: TaskOrderMode = "normal") -> list[Task]:
    """Split a feature into its six typed tasks, chained in execution order."""
    kinds = task_order(order_mode)
    ids = [task_id_for(feature.id, kind) for kind in kinds]
    tasks: list[Task] = []
    for index, kind in enumerate(kinds):
        tasks.append(
            Task(
                id=ids[index],
                feature_id=feature.id,
                kind=kind,
                name=f"{feature.name} - {TASK_KIND_LABELS[kind]}",
                size=feature.size,
                references=list(TASK_KIND_REFERENCES[kind]),
                blocked_by=[ids[index - 1]] if index > 0 else [],
                blocks=[ids[index + 1]] if index + 1 < len(ids) else [],
            )
        )
    return tasks


def load_plan(store: ProjectStore) -> Plan | None:
    payload = store.read_json(PLAN_DOCUMENT)
    if not isinstance(payload, dict):
        return None
    try:
        return Plan.from_dict(payload)
    except (KeyError, TypeError, ValueError, AttributeError):
        return None

