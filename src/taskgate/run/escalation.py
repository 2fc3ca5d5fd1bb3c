from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping

from taskgate.plan import Plan
from taskgate.run.model import Escalation, EscalationOption, EscalationTrigger, TaskExecution

EscalationPolicy = Callable[[TaskExecution], Escalation | None]


def create_escalation(
    trigger_id: EscalationTrigger,
    context: str,
    question: str,
    options: Iterable[Mapping[str, str]],
    recommendation: str,
    recommendation_reason: str,
) -> Escalation:
    """Build an escalation; options are numbered from 1 in the order given."""
    return Escalation(
        trigger_id=trigger_id,
        context=context,
        question=question,
        options=[
            EscalationOption(
                id=index,
                description=str(option.get("description", "")),
                impact=str(option.get("impact", "")),
            )
            for index, option in enumerate(options, start=1)
        ],
        recommendation=recommendation,
        recommendation_reason=recommendation_reason,
    )


def no_escalation(task: TaskExecution) -> Escalation | None:
    return None


def circular_dependency_policy(plan: Plan) -> EscalationPolicy:
    cycles: dict[str, list[str]] = {}
    for cycle in plan.circular_dependencies:
        for feature_id in cycle:
            cycles.setdefault(feature_id, cycle)

    def policy(task: TaskExecution) -> Escalation | None:
        cycle = cycles.get(task.feature_id)
        if cycle is None or task.escalation is not None:
            return None
        chain = " -> ".join([*cycle, cycle[0]])
        return create_escalation(
            "T7",
            f"Feature {task.feature_id} is part of a dependency cycle: {chain}",
            "How should the cycle be broken before implementing this task?",
            [
                {
                    "description": f"Implement {task.feature_id} first with stubbed dependencies",
                    "impact": "Dependent features need follow-up integration work",
                },
                {
                    "description": "Extract the shared part into a common feature",
                    "impact": "Plan must be regenerated",
                },
                {
                    "description": "Proceed as planned",
                    "impact": "Integration order is undefined",
                },
            ],
            "1",
            "Stubbing keeps the current wave moving without replanning.",
        )

    return policy
