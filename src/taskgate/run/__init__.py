from taskgate.run.engine import BatchCompleteResult, CompleteResult, RunIO, RunResult, TaskRunner
from taskgate.run.escalation import circular_dependency_policy, create_escalation, no_escalation
from taskgate.run.model import (
    Escalation,
    InvalidTransitionError,
    RunState,
    TaskExecution,
    calculate_progress,
    init_run_state_from_plan,
)
from taskgate.run.prompts import generate_task_prompt

__all__ = [
    "BatchCompleteResult",
    "CompleteResult",
    "Escalation",
    "InvalidTransitionError",
    "RunIO",
    "RunResult",
    "RunState",
    "TaskExecution",
    "TaskRunner",
    "calculate_progress",
    "circular_dependency_policy",
    "create_escalation",
    "generate_task_prompt",
    "init_run_state_from_plan",
    "no_escalation",
]
