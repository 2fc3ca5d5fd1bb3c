from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from taskgate.plan import Plan, decompose_feature, determine_task_order_mode
from taskgate.state.store import RUN_STATE_DOCUMENT, ProjectStore, TaskgateStateError, utcnow_iso

TaskStatus = Literal["backlog", "in_progress", "waiting_input", "done", "failed"]
RunStatus = Literal["idle", "running", "waiting_input", "completed"]
FileAction = Literal["created", "modified", "deleted"]
EscalationTrigger = Literal["T1", "T2", "T3", "T4", "T5", "T6", "T7"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"done", "failed"})
ACTIVE_STATUSES: frozenset[str] = frozenset({"in_progress", "waiting_input"})

ESCALATION_LABELS: dict[str, str] = {
    "T1": "Specification is ambiguous",
    "T2": "Specification is missing",
    "T3": "Multiple viable technical options",
    "T4": "Specification contradicts existing code",
    "T5": "Change affects other features",
    "T6": "Security or data-loss risk",
    "T7": "Circular feature dependency",
}


class InvalidTransitionError(TaskgateStateError):
    """Raised when a task transition is not legal from its current status."""


def _get(data: dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    if snake in data:
        return data[snake]
    return data.get(camel, default)


@dataclass(slots=True)
class ModifiedFile:
    path: str
    action: FileAction = "modified"

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "action": self.action}


@dataclass(slots=True)
class EscalationOption:
    id: int
    description: str
    impact: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "description": self.description, "impact": self.impact}


@dataclass(slots=True)
class Escalation:
    trigger_id: EscalationTrigger
    context: str
    question: str
    options: list[EscalationOption] = field(default_factory=list)
    recommendation: str = ""
    recommendation_reason: str = ""
    answer: str | None = None
    resolved_at: str | None = None

    @property
    def label(self) -> str:
        return ESCALATION_LABELS.get(self.trigger_id, self.trigger_id)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Escalation:
        return cls(
            trigger_id=_get(data, "trigger_id", "triggerId", "T1"),
            context=str(data.get("context", "")),
            question=str(data.get("question", "")),
            options=[
                EscalationOption(
                    id=int(item.get("id", index + 1)),
                    description=str(item.get("description", "")),
                    impact=str(item.get("impact", "")),
                )
                for index, item in enumerate(data.get("options") or [])
            ],
            recommendation=str(data.get("recommendation", "")),
            recommendation_reason=str(
                _get(data, "recommendation_reason", "recommendationReason", "")
            ),
            answer=data.get("answer"),
            resolved_at=_get(data, "resolved_at", "resolvedAt"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger_id": self.trigger_id,
            "context": self.context,
            "question": self.question,
            "options": [option.to_dict() for option in self.options],
            "recommendation": self.recommendation,
            "recommendation_reason": self.recommendation_reason,
            "answer": self.answer,
            "resolved_at": self.resolved_at,
        }


@dataclass(slots=True)
class TaskExecution:
    task_id: str
    feature_id: str
    kind: str
    name: str
    status: TaskStatus = "backlog"
    files: list[ModifiedFile] = field(default_factory=list)
    escalation: Escalation | None = None
    prompt: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    audit_score: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskExecution:
        escalation = data.get("escalation")
        return cls(
            task_id=str(_get(data, "task_id", "taskId")),
            feature_id=str(_get(data, "feature_id", "featureId")),
            kind=str(_get(data, "kind", "taskKind")),
            name=str(data.get("name", "")),
            status=data.get("status", "backlog"),
            files=[
                ModifiedFile(path=str(item["path"]), action=item.get("action", "modified"))
                for item in data.get("files") or []
                if isinstance(item, dict) and "path" in item
            ],
            escalation=Escalation.from_dict(escalation) if isinstance(escalation, dict) else None,
            prompt=data.get("prompt"),
            started_at=_get(data, "started_at", "startedAt"),
            completed_at=_get(data, "completed_at", "completedAt"),
            audit_score=_get(data, "audit_score", "auditScore"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "feature_id": self.feature_id,
            "kind": self.kind,
            "name": self.name,
            "status": self.status,
            "files": [item.to_dict() for item in self.files],
            "escalation": self.escalation.to_dict() if self.escalation else None,
            "prompt": self.prompt,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "audit_score": self.audit_score,
        }


@dataclass(slots=True)
class RunState:
    """Per-task lifecycle plus the single current-task pointer.

    All status changes go through the transition methods, which raise
    ``InvalidTransitionError`` for anything outside::

        backlog -> in_progress -> (waiting_input <-> in_progress) -> done | failed
        in_progress -> backlog                                  (skip)

    ``current_task_id`` is only ever set to a task that is ``in_progress``.
    """

    status: RunStatus = "idle"
    current_task_id: str | None = None
    tasks: list[TaskExecution] = field(default_factory=list)
    started_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunState:
        state = cls(
            status=data.get("status", "idle"),
            current_task_id=_get(data, "current_task_id", "currentTaskId"),
            tasks=[TaskExecution.from_dict(item) for item in data.get("tasks") or []],
            started_at=str(_get(data, "started_at", "startedAt", utcnow_iso())),
            updated_at=str(_get(data, "updated_at", "updatedAt", utcnow_iso())),
            completed_at=_get(data, "completed_at", "completedAt"),
        )
        current = state.find(state.current_task_id) if state.current_task_id else None
        if current is None or current.status != "in_progress":
            state.current_task_id = None
        return state

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "current_task_id": self.current_task_id,
            "tasks": [task.to_dict() for task in self.tasks],
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }

    def find(self, task_id: str) -> TaskExecution | None:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        return None

    def require(self, task_id: str) -> TaskExecution:
        task = self.find(task_id)
        if task is None:
            raise InvalidTransitionError(f"Task not found: {task_id}")
        return task

    def in_progress_tasks(self) -> list[TaskExecution]:
        return [task for task in self.tasks if task.status == "in_progress"]

    def _ensure_no_other_active(self, task_id: str) -> None:
        for task in self.in_progress_tasks():
            if task.task_id != task_id:
                raise InvalidTransitionError(
                    f"Task {task.task_id} is already in progress; finish or skip it first."
                )

    @staticmethod
    def _ensure_status(task: TaskExecution, allowed: set[str], action: str) -> None:
        if task.status not in allowed:
            raise InvalidTransitionError(
                f"Cannot {action} task {task.task_id} from status '{task.status}'."
            )

    def _touch(self) -> None:
        self.updated_at = utcnow_iso()

    def start(self, task_id: str) -> TaskExecution:
        task = self.require(task_id)
        self._ensure_status(task, {"backlog"}, "start")
        self._ensure_no_other_active(task_id)
        task.status = "in_progress"
        task.started_at = utcnow_iso()
        self.current_task_id = task_id
        self.status = "running"
        self._touch()
        return task

    def escalate(self, task_id: str, escalation: Escalation) -> TaskExecution:
        task = self.require(task_id)
        self._ensure_status(task, {"in_progress"}, "escalate")
        task.status = "waiting_input"
        task.escalation = escalation
        if self.current_task_id == task_id:
            self.current_task_id = None
        self.status = "waiting_input"
        self._touch()
        return task

    def resolve_escalation(self, task_id: str, answer: str) -> TaskExecution:
        task = self.require(task_id)
        self._ensure_status(task, {"waiting_input"}, "resolve escalation for")
        self._ensure_no_other_active(task_id)
        # The escalation record stays on the task for audit.
        if task.escalation is not None:
            task.escalation.answer = answer
            task.escalation.resolved_at = utcnow_iso()
        task.status = "in_progress"
        self.current_task_id = task_id
        self.status = "running"
        self._touch()
        return task

    def complete(
        self,
        task_id: str,
        files: list[ModifiedFile] | None = None,
        audit_score: int | None = None,
        *,
        force: bool = False,
    ) -> TaskExecution:
        task = self.require(task_id)
        allowed = {"in_progress", "waiting_input"}
        if force:
            allowed |= {"backlog", "failed"}
        self._ensure_status(task, allowed, "complete")
        task.status = "done"
        task.completed_at = utcnow_iso()
        task.files = list(files or [])
        task.audit_score = audit_score
        if self.current_task_id == task_id:
            self.current_task_id = None
        self.refresh_status()
        return task

    def fail(self, task_id: str) -> TaskExecution:
        task = self.require(task_id)
        self._ensure_status(task, set(ACTIVE_STATUSES), "fail")
        task.status = "failed"
        task.completed_at = utcnow_iso()
        if self.current_task_id == task_id:
            self.current_task_id = None
        self.refresh_status()
        return task

    def skip(self, task_id: str) -> TaskExecution:
        task = self.require(task_id)
        self._ensure_status(task, {"in_progress"}, "skip")
        task.status = "backlog"
        task.started_at = None
        if self.current_task_id == task_id:
            self.current_task_id = None
        self.status = "running"
        self._touch()
        return task

    def mark_done_from_tracker(self, task_id: str) -> bool:
        """Mark a task done because its tracker record is closed.

        Returns False when the task is unknown or already done; a done task
        keeps its original completion time.
        """
        task = self.find(task_id)
        if task is None or task.status == "done":
            return False
        task.status = "done"
        task.completed_at = utcnow_iso()
        if self.current_task_id == task_id:
            self.current_task_id = None
        self.refresh_status()
        return True

    @property
    def all_terminal(self) -> bool:
        return bool(self.tasks) and all(task.status in TERMINAL_STATUSES for task in self.tasks)

    def refresh_status(self) -> None:
        now = utcnow_iso()
        self.updated_at = now
        if self.all_terminal:
            if self.status != "completed":
                self.status = "completed"
                self.completed_at = now
        elif self.status in ("idle", "completed"):
            self.status = "running"
            self.completed_at = None


def calculate_progress(state: RunState) -> int:
    if not state.tasks:
        return 0
    done = sum(1 for task in state.tasks if task.status == "done")
    return round(done / len(state.tasks) * 100)


def count_by_status(state: RunState) -> dict[str, int]:
    counts = {status: 0 for status in ("backlog", "in_progress", "waiting_input", "done", "failed")}
    for task in state.tasks:
        counts[task.status] = counts.get(task.status, 0) + 1
    return counts


def get_next_pending_task(state: RunState) -> TaskExecution | None:
    for task in state.tasks:
        if task.status == "backlog":
            return task
    return None


def init_run_state_from_plan(
    plan: Plan,
    profile_type: str | None = None,
    existing: RunState | None = None,
) -> RunState:
    """Seed run state from a plan, merging into ``existing`` when given.

    Tasks already tracked keep their full execution record, new plan tasks are
    added as backlog in plan order, and tasks no longer in the plan are dropped.
    Features marked done in the plan seed their new tasks as done.
    """
    previous = {task.task_id: task for task in existing.tasks} if existing else {}
    state = existing or RunState()
    seeded: list[TaskExecution] = []
    for _, feature in plan.features():
        order_mode = determine_task_order_mode(profile_type, feature.type)
        for task in decompose_feature(feature, order_mode):
            kept = previous.get(task.id)
            if kept is not None:
                seeded.append(kept)
                continue
            execution = TaskExecution(
                task_id=task.id,
                feature_id=task.feature_id,
                kind=task.kind,
                name=task.name,
            )
            if feature.status == "done":
                execution.status = "done"
                execution.completed_at = utcnow_iso()
            seeded.append(execution)
    state.tasks = seeded
    current = state.find(state.current_task_id) if state.current_task_id else None
    if current is None or current.status != "in_progress":
        state.current_task_id = None
    if state.all_terminal or state.status == "completed":
        state.refresh_status()
    state.updated_at = utcnow_iso()
    return state


def load_run_state(store: ProjectStore) -> RunState | None:
    payload = store.read_json(RUN_STATE_DOCUMENT)
    if not isinstance(payload, dict):
        return None
    try:
        return RunState.from_dict(payload)
    except (KeyError, TypeError, ValueError, AttributeError):
        return None


def save_run_state(store: ProjectStore, state: RunState) -> None:
    store.write_json(RUN_STATE_DOCUMENT, state.to_dict())
