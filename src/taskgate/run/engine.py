from __future__ import annotations

import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Literal, Protocol

import structlog

from taskgate.config import TaskgateConfig
from taskgate.gates.engine import load_gate_result
from taskgate.plan import load_plan
from taskgate.profile import resolve_profile_type
from taskgate.run.escalation import EscalationPolicy, no_escalation
from taskgate.run.model import (
    Escalation,
    ModifiedFile,
    RunState,
    TaskExecution,
    calculate_progress,
    get_next_pending_task,
    init_run_state_from_plan,
    load_run_state,
    save_run_state,
)
from taskgate.run.prompts import generate_task_prompt
from taskgate.state.store import ProjectStore

if TYPE_CHECKING:
    from taskgate.tracker.engine import GitHubSync

logger = structlog.get_logger()

RunOutcome = Literal["completed", "skipped", "escalated", "failed", "dry_run", "idle"]

PREVIEW_LINES = 20
RULE = "━" * 38


class RunIO(Protocol):
    def print(self, message: str) -> None: ...

    async def ask(self, prompt: str) -> str: ...


@dataclass(slots=True)
class RunResult:
    task_id: str
    status: RunOutcome
    files: list[ModifiedFile] = field(default_factory=list)
    audit_score: int | None = None
    escalation: Escalation | None = None
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CompleteResult:
    progress: int = 0
    issue_closed: bool = False
    error: str | None = None


@dataclass(slots=True)
class BatchCompleteResult:
    completed: int = 0
    skipped: int = 0
    progress: int = 0
    issues_closed: int = 0
    error: str | None = None


GitRunner = Callable[[Path], str]


def _git_diff_name_status(project_dir: Path) -> str:
    for args in (["diff", "--name-status", "HEAD"], ["diff", "--name-status", "--cached"]):
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=project_dir,
                text=True,
                capture_output=True,
                timeout=5,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return ""
        if proc.returncode == 0:
            return proc.stdout
    return ""


def detect_modified_files(
    project_dir: Path, git: GitRunner = _git_diff_name_status
) -> list[ModifiedFile]:
    files: list[ModifiedFile] = []
    for line in git(project_dir).splitlines():
        parts = line.split("\t")
        if len(parts) < 2 or not parts[1].strip():
            continue
        code = parts[0].strip()
        action = {"A": "created", "D": "deleted"}.get(code, "modified")
        files.append(ModifiedFile(path=parts[-1].strip(), action=action))
    return files


class TaskRunner:
    """Drives the run state machine for one project directory."""

    def __init__(
        self,
        project_dir: Path,
        io: RunIO,
        *,
        config: TaskgateConfig | None = None,
        tracker: GitHubSync | None = None,
        escalation_policy: EscalationPolicy = no_escalation,
        detect_files: Callable[[Path], list[ModifiedFile]] = detect_modified_files,
    ) -> None:
        self.project_dir = project_dir.resolve()
        self.io = io
        self.config = config or TaskgateConfig.default()
        self.store = ProjectStore(self.project_dir, state_dir=self.config.project.state_dir)
        self.tracker = tracker
        self.escalation_policy = escalation_policy
        self.detect_files = detect_files

    def load_or_seed(self) -> RunState | None:
        """Return the persisted run state, seeding it from the plan when absent or unreadable."""
        state = load_run_state(self.store)
        if state is not None:
            return state
        plan = load_plan(self.store)
        if plan is None or not plan.waves:
            return None
        state = init_run_state_from_plan(plan, self._profile_type())
        save_run_state(self.store, state)
        logger.info("run_state_seeded", tasks=len(state.tasks))
        return state

    def reseed(self) -> RunState | None:
        """Merge the current plan into the existing run state."""
        plan = load_plan(self.store)
        if plan is None:
            return None
        state = init_run_state_from_plan(plan, self._profile_type(), load_run_state(self.store))
        save_run_state(self.store, state)
        return state

    def _profile_type(self) -> str:
        return resolve_profile_type(self.store, self.config)

    def _save(self, state: RunState) -> None:
        save_run_state(self.store, state)

    def _gate_errors(self) -> list[str]:
        result = load_gate_result(self.project_dir, self.config)
        if result is None:
            return ["Gates have not been checked. Run 'taskgate gate check' first."]
        errors: list[str] = []
        for failure in result.failures:
            errors.append(f"{failure.gate}: {failure.message}")
            errors.extend(f"  - {detail}" for detail in failure.details)
        return errors

    async def _close_issue(self, task_id: str) -> bool:
        if self.tracker is None:
            return False
        result = await self.tracker.close_task_issue(task_id)
        if not result.closed:
            logger.info("issue_not_closed", task_id=task_id, reason=result.error)
        return result.closed

    def _print_escalation(self, escalation: Escalation) -> None:
        self.io.print(RULE)
        self.io.print("  ESCALATION - Confirmation Required")
        self.io.print("")
        self.io.print(f"  Trigger: [{escalation.trigger_id}] {escalation.label}")
        self.io.print(f"  Context: {escalation.context}")
        self.io.print("")
        self.io.print(f"  Question: {escalation.question}")
        self.io.print("")
        if escalation.options:
            self.io.print("  Options:")
            for option in escalation.options:
                self.io.print(f"    {option.id}) {option.description}")
                self.io.print(f"       Impact: {option.impact}")
            self.io.print("")
        self.io.print(f"  Recommendation: {escalation.recommendation}")
        self.io.print(f"  Reason: {escalation.recommendation_reason}")
        self.io.print(RULE)

    async def run(self, task_id: str | None = None, *, dry_run: bool = False) -> RunResult:
        if self.config.run.enforce_gates and not dry_run:
            gate_errors = self._gate_errors()
            if gate_errors:
                return RunResult(task_id=task_id or "", status="failed", errors=gate_errors)

        state = self.load_or_seed()
        if state is None:
            return RunResult(
                task_id=task_id or "",
                status="failed",
                errors=["No implementation plan found. Generate plan.json first."],
            )

        self.io.print(RULE)
        self.io.print("  TASKGATE RUN")
        self.io.print(RULE)

        task: TaskExecution | None
        if task_id:
            task = state.find(task_id)
            if task is None:
                return RunResult(
                    task_id=task_id, status="failed", errors=[f"Task not found: {task_id}"]
                )
            if task.status == "done":
                return RunResult(
                    task_id=task_id, status="failed", errors=[f"Task already completed: {task_id}"]
                )
        else:
            task = next((item for item in state.tasks if item.status == "waiting_input"), None)
            if task is None:
                task = next((item for item in state.tasks if item.status == "in_progress"), None)
            if task is None:
                task = get_next_pending_task(state)

        if task is None:
            if state.all_terminal:
                self.io.print("  All tasks completed!")
                state.status = "completed"
                self._save(state)
            else:
                self.io.print("  No pending tasks available.")
            return RunResult(task_id="", status="idle")

        self.io.print(f"  Task: {task.task_id}")
        self.io.print(f"  Name: {task.name}")
        self.io.print(f"  Feature: {task.feature_id}")
        self.io.print("")

        if dry_run:
            return self._preview(task)

        if task.status == "waiting_input":
            return await self._resume_escalation(state, task)

        if task.status == "backlog":
            state.start(task.task_id)
            logger.info("task_started", task_id=task.task_id)
        elif task.status != "in_progress":
            return RunResult(
                task_id=task.task_id,
                status="failed",
                errors=[f"Task {task.task_id} cannot be run from status '{task.status}'."],
            )
        task.prompt = generate_task_prompt(task, self.config.run.audit_score)
        self._save(state)

        self.io.print("  Implementation Prompt:")
        self.io.print("  " + "─" * 34)
        for line in task.prompt.split("\n"):
            self.io.print(f"  {line}")
        self.io.print("  " + "─" * 34)
        self.io.print("")

        escalation = self.escalation_policy(task)
        if escalation is not None:
            state.escalate(task.task_id, escalation)
            self._save(state)
            logger.info("task_escalated", task_id=task.task_id, trigger=escalation.trigger_id)
            return await self._resume_escalation(state, task)

        return await self._finish_interactively(state, task)

    def _preview(self, task: TaskExecution) -> RunResult:
        self.io.print("  [DRY RUN] Would execute this task.")
        self.io.print("")
        lines = generate_task_prompt(task, self.config.run.audit_score).split("\n")
        self.io.print("  Generated Prompt:")
        self.io.print("  " + "-" * 34)
        for line in lines[:PREVIEW_LINES]:
            self.io.print(f"  {line}")
        if len(lines) > PREVIEW_LINES:
            self.io.print(f"  ... ({len(lines) - PREVIEW_LINES} more lines)")
        self.io.print("")
        return RunResult(task_id=task.task_id, status="dry_run")

    async def _resume_escalation(self, state: RunState, task: TaskExecution) -> RunResult:
        if task.escalation is None:
            return RunResult(task_id=task.task_id, status="failed", errors=["No escalation found"])
        self._print_escalation(task.escalation)
        answer = (await self.io.ask("\n  Select option (or type response): ")).strip()
        if not answer:
            self.io.print("  No answer given; task stays waiting for input.")
            return RunResult(task_id=task.task_id, status="escalated", escalation=task.escalation)
        state.resolve_escalation(task.task_id, answer)
        self._save(state)
        self.io.print(f'\n  Escalation resolved: "{answer}"')
        self.io.print("  Resuming task execution...")
        self.io.print("")
        return await self._finish_interactively(state, task)

    async def _finish_interactively(self, state: RunState, task: TaskExecution) -> RunResult:
        self.io.print("  Task is now IN_PROGRESS.")
        self.io.print("  Implement the task according to the prompt above,")
        self.io.print("  then confirm completion.")
        self.io.print("")
        answer = (await self.io.ask("  Mark as done? (done / skip / fail): ")).strip().lower()

        if answer in ("skip", "s"):
            state.skip(task.task_id)
            self._save(state)
            self.io.print(f"  Task {task.task_id} skipped (returned to backlog).")
            return RunResult(task_id=task.task_id, status="skipped", escalation=task.escalation)

        if answer in ("fail", "f"):
            state.fail(task.task_id)
            self._save(state)
            logger.info("task_failed", task_id=task.task_id)
            if self.tracker is not None:
                await self.tracker.label_task_issue(task.task_id, "failed")
            self.io.print(f"  Task {task.task_id} marked as failed.")
            return RunResult(task_id=task.task_id, status="failed", escalation=task.escalation)

        files = self.detect_files(self.project_dir)
        score = self.config.run.audit_score
        state.complete(task.task_id, files, score)
        self._save(state)
        logger.info("task_completed", task_id=task.task_id, files=len(files))

        if await self._close_issue(task.task_id):
            self.io.print(f"  GitHub: Issue closed for {task.task_id}")
        done = sum(1 for item in state.tasks if item.status == "done")
        self.io.print(f"  Task {task.task_id} completed")
        self.io.print(f"  Progress: {done}/{len(state.tasks)} tasks ({calculate_progress(state)}%)")
        return RunResult(
            task_id=task.task_id,
            status="completed",
            files=files,
            audit_score=score,
            escalation=task.escalation,
        )

    def escalate(self, task_id: str, escalation: Escalation) -> RunState:
        state = self.load_or_seed()
        if state is None:
            raise ValueError("No implementation plan found.")
        state.escalate(task_id, escalation)
        self._save(state)
        logger.info("task_escalated", task_id=task_id, trigger=escalation.trigger_id)
        return state

    async def complete_task(self, task_id: str) -> CompleteResult:
        """Mark a single task done without prompting."""
        state = self.load_or_seed()
        if state is None:
            return CompleteResult(error="No plan found. Generate plan.json first.")
        task = state.find(task_id)
        if task is None:
            return CompleteResult(error=f"Task not found: {task_id}")
        if task.status == "done":
            return CompleteResult(
                progress=calculate_progress(state), error=f"Task already completed: {task_id}"
            )
        files = self.detect_files(self.project_dir)
        state.complete(task_id, files, self.config.run.audit_score, force=True)
        self._save(state)
        logger.info("task_completed", task_id=task_id, mode="non_interactive")
        closed = await self._close_issue(task_id)
        return CompleteResult(progress=calculate_progress(state), issue_closed=closed)

    async def _complete_batch(
        self, state: RunState, tasks: list[TaskExecution]
    ) -> BatchCompleteResult:
        # Batch completion skips the one-active-task rule on purpose.
        result = BatchCompleteResult()
        completed: list[str] = []
        for task in tasks:
            if task.status == "done":
                result.skipped += 1
                continue
            state.complete(task.task_id, [], self.config.run.audit_score, force=True)
            completed.append(task.task_id)
        result.completed = len(completed)
        self._save(state)
        for task_id in completed:
            if await self._close_issue(task_id):
                result.issues_closed += 1
        result.progress = calculate_progress(state)
        return result

    async def complete_feature(self, feature_id: str) -> BatchCompleteResult:
        state = self.load_or_seed()
        if state is None:
            return BatchCompleteResult(error="No plan found.")
        tasks = [task for task in state.tasks if task.feature_id == feature_id]
        if not tasks:
            return BatchCompleteResult(error=f"No tasks found for feature: {feature_id}")
        return await self._complete_batch(state, tasks)

    async def complete_wave(self, wave_number: int) -> BatchCompleteResult:
        plan = load_plan(self.store)
        if plan is None or not plan.waves:
            return BatchCompleteResult(error="No plan found.")
        wave = plan.find_wave(wave_number)
        if wave is None:
            return BatchCompleteResult(error=f"Wave {wave_number} not found.")
        state = self.load_or_seed()
        if state is None:
            return BatchCompleteResult(error="No plan found.")
        feature_ids = {feature.id for feature in wave.features}
        tasks = [task for task in state.tasks if task.feature_id in feature_ids]
        if not tasks:
            return BatchCompleteResult(error=f"No tasks found for wave {wave_number}.")
        return await self._complete_batch(state, tasks)

