from __future__ import annotations

from taskgate.run.model import TaskExecution

INSTRUCTIONS: dict[str, list[str]] = {
    "db": [
        "Create database schema/migration",
        "Define data types matching the SSOT data model (§4)",
        "Implement data access layer",
    ],
    "api": [
        "Implement API endpoint per SSOT (§5)",
        "Add request validation",
        "Add error handling per §9",
        "Add auth checks per §7",
    ],
    "ui": [
        "Create React component per SSOT (§6)",
        "Implement state management",
        "Add form validation",
        "Handle loading/error states",
    ],
    "integration": [
        "Wire API to UI components",
        "Test end-to-end data flow",
        "Verify state transitions",
    ],
    "test": [
        "Write unit tests for business logic",
        "Write integration tests for API",
        "Cover normal, abnormal, boundary cases (§3-E/F/G/H)",
    ],
    "review": [
        "Run adversarial code review",
        "Verify SSOT compliance",
        "Check all MUST requirements",
        "Identify edge cases and failure modes",
    ],
}

DEFINITION_OF_DONE: dict[str, list[str]] = {
    "db": [
        "Migration file created",
        "Table definition matches SSOT §4",
        "Indexes configured",
        "Seed data (if needed)",
        "Migration tested in dev",
    ],
    "api": [
        "Endpoints implemented per SSOT §5",
        "Request validation added",
        "Error handling per §9",
        "Auth checks per §7",
    ],
    "ui": [
        "Components implemented per SSOT §6",
        "State management working",
        "Form validation added",
        "Loading/error states handled",
    ],
    "integration": [
        "Frontend-backend connected",
        "E2E data flow verified",
        "State transitions correct",
    ],
    "test": [
        "Unit tests for business logic",
        "Integration tests for API",
        "Normal/abnormal/boundary cases covered",
    ],
    "review": [
        "Adversarial review completed",
        "SSOT compliance verified",
        "All MUST requirements met",
        "Edge cases identified",
    ],
}

COMMON_DONE = ["Code review passed", "All relevant tests pass"]

CONSTRAINTS = [
    "Follow the project's coding standards",
    "No untyped escape hatches in public interfaces",
    "No debug output in production code",
    "Handle all error cases",
]


def generate_task_prompt(task: TaskExecution, audit_score: int = 100) -> str:
    lines = [
        f"# Implementation Task: {task.task_id}",
        "",
        f"## Feature: {task.feature_id}",
        f"## Task: {task.name}",
        f"## Type: {task.kind}",
        "",
        "## Instructions",
        "",
    ]
    steps = INSTRUCTIONS.get(task.kind, ["Implement feature according to SSOT"])
    lines.extend(f"{index}. {step}" for index, step in enumerate(steps, start=1))
    lines.extend(["", "## Constraints"])
    lines.extend(f"- {item}" for item in CONSTRAINTS)
    lines.extend(
        [
            "",
            "## Acceptance Criteria",
            "- All MUST requirements from SSOT implemented",
            f"- Code audit score: {audit_score}/100",
            "- Tests pass with adequate coverage",
        ]
    )
    return "\n".join(lines)


def definition_of_done(kind: str) -> str:
    items = DEFINITION_OF_DONE.get(kind, []) + COMMON_DONE
    return "\n".join(f"- [ ] {item}" for item in items)
