from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from taskgate.state.store import GATES_DOCUMENT, ProjectStore, utcnow_iso

GateId = Literal["A", "B", "C"]
GateStatus = Literal["pending", "failed", "passed"]

GATE_IDS: tuple[GateId, ...] = ("A", "B", "C")


@dataclass(slots=True)
class GateCheck:
    name: str
    passed: bool
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "passed": self.passed, "message": self.message}


@dataclass(slots=True)
class SpecCheck(GateCheck):
    """Gate C check for a single specification document."""

    file_path: str = ""
    missing_sections: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "message": self.message,
            "file_path": self.file_path,
            "missing_sections": list(self.missing_sections),
        }


def _check_from_dict(data: dict[str, Any]) -> GateCheck:
    name = str(data.get("name", ""))
    passed = bool(data.get("passed", False))
    message = str(data.get("message", ""))
    file_path = data.get("file_path", data.get("filePath"))
    missing = data.get("missing_sections", data.get("missingSections"))
    if file_path is None and missing is None:
        return GateCheck(name=name, passed=passed, message=message)
    return SpecCheck(
        name=name,
        passed=passed,
        message=message,
        file_path=str(file_path or ""),
        missing_sections=[str(item) for item in missing or []],
    )


@dataclass(slots=True)
class GateEntry:
    status: GateStatus = "pending"
    checks: list[GateCheck] = field(default_factory=list)
    checked_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_checks(cls, checks: list[GateCheck]) -> GateEntry:
        # An empty check list never passes.
        passed = bool(checks) and all(check.passed for check in checks)
        return cls(status="passed" if passed else "failed", checks=list(checks))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GateEntry:
        status = data.get("status", "pending")
        if status not in ("pending", "failed", "passed"):
            status = "pending"
        return cls(
            status=status,
            checks=[
                _check_from_dict(item)
                for item in data.get("checks") or []
                if isinstance(item, dict)
            ],
            checked_at=str(data.get("checked_at", data.get("checkedAt", utcnow_iso()))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "checks": [check.to_dict() for check in self.checks],
            "checked_at": self.checked_at,
        }

    @property
    def failed_checks(self) -> list[GateCheck]:
        return [check for check in self.checks if not check.passed]


@dataclass(slots=True)
class GateFailure:
    gate: str
    message: str
    details: list[str] = field(default_factory=list)


_FAILURE_LABELS: dict[str, tuple[str, str]] = {
    "A": ("Gate A (Environment)", "Development environment is not ready"),
    "B": ("Gate B (Planning)", "Task decomposition / planning is incomplete"),
    "C": ("Gate C (SSOT Completeness)", "SSOT §3-E/F/G/H sections are incomplete"),
}


@dataclass(slots=True)
class GateState:
    gate_a: GateEntry = field(default_factory=GateEntry)
    gate_b: GateEntry = field(default_factory=GateEntry)
    gate_c: GateEntry = field(default_factory=GateEntry)
    updated_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GateState:
        def entry(snake: str, camel: str) -> GateEntry:
            raw = data.get(snake, data.get(camel))
            return GateEntry.from_dict(raw) if isinstance(raw, dict) else GateEntry()

        return cls(
            gate_a=entry("gate_a", "gateA"),
            gate_b=entry("gate_b", "gateB"),
            gate_c=entry("gate_c", "gateC"),
            updated_at=str(data.get("updated_at", data.get("updatedAt", utcnow_iso()))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "gate_a": self.gate_a.to_dict(),
            "gate_b": self.gate_b.to_dict(),
            "gate_c": self.gate_c.to_dict(),
            "updated_at": self.updated_at,
        }

    def entry(self, gate_id: GateId) -> GateEntry:
        return {"A": self.gate_a, "B": self.gate_b, "C": self.gate_c}[gate_id]

    def update_gate(self, gate_id: GateId, checks: list[GateCheck]) -> GateEntry:
        """Overwrite one gate's entry from a fresh evaluation."""
        entry = GateEntry.from_checks(checks)
        if gate_id == "A":
            self.gate_a = entry
        elif gate_id == "B":
            self.gate_b = entry
        else:
            self.gate_c = entry
        self.updated_at = utcnow_iso()
        return entry

    def reset(self) -> None:
        self.gate_a = GateEntry()
        self.gate_b = GateEntry()
        self.gate_c = GateEntry()
        self.updated_at = utcnow_iso()

    @property
    def all_passed(self) -> bool:
        return all(self.entry(gate_id).status == "passed" for gate_id in GATE_IDS)


def collect_failures(state: GateState) -> list[GateFailure]:
    failures: list[GateFailure] = []
    for gate_id in GATE_IDS:
        entry = state.entry(gate_id)
        if entry.status == "passed":
            continue
        gate, message = _FAILURE_LABELS[gate_id]
        failures.append(
            GateFailure(
                gate=gate,
                message=message,
                details=[check.message for check in entry.failed_checks],
            )
        )
    return failures


@dataclass(slots=True)
class AllGatesResult:
    all_passed: bool
    gate_a: GateEntry
    gate_b: GateEntry
    gate_c: GateEntry
    failures: list[GateFailure]

    @classmethod
    def from_state(cls, state: GateState) -> AllGatesResult:
        return cls(
            all_passed=state.all_passed,
            gate_a=state.gate_a,
            gate_b=state.gate_b,
            gate_c=state.gate_c,
            failures=collect_failures(state),
        )


def load_gate_state(store: ProjectStore) -> GateState | None:
    payload = store.read_json(GATES_DOCUMENT)
    if not isinstance(payload, dict):
        return None
    try:
        return GateState.from_dict(payload)
    except (KeyError, TypeError, ValueError, AttributeError):
        return None


def save_gate_state(store: ProjectStore, state: GateState) -> None:
    store.write_json(GATES_DOCUMENT, state.to_dict())
