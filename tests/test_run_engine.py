import asyncio
from dataclasses import dataclass
from pathlib import Path

from taskgate.config import TaskgateConfig
from taskgate.gates.engine import check_all_gates
from taskgate.plan import Plan
from taskgate.run.engine import TaskRunner, detect_modified_files
from taskgate.run.escalation import circular_dependency_policy
from taskgate.run.model import ModifiedFile, load_run_state
from taskgate.state.store import ProjectStore


class FakeIO:
    def __init__(self, answers: list[str] | None = None) -> None:
        self.answers = list(answers or [])
        self.lines: list[str] = []
        self.prompts: list[str] = []

    def print(self, message: str) -> None:
        self.lines.append(message)

    async def ask(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.answers.pop(0) if self.answers else ""

    @property
    def output(self) -> str:
        return "\n".join(self.lines)


@dataclass
class FakeCloseResult:
    closed: bool
    error: str | None = None


class FakeTracker:
    def __init__(self) -> None:
        self.closed: list[str] = []
        self.labels: list[tuple[str, str]] = []

    async def close_task_issue(self, task_id: str) -> FakeCloseResult:
        self.closed.append(task_id)
        return FakeCloseResult(closed=True)

    async def label_task_issue(self, task_id: str, label: str) -> bool:
        self.labels.append((task_id, label))
        return True


def _config() -> TaskgateConfig:
    config = TaskgateConfig.default()
    config.run.enforce_gates = False
    return config


def _runner(project_dir: Path, io: FakeIO, **kwargs) -> TaskRunner:
    kwargs.setdefault("detect_files", lambda _: [ModifiedFile("src/app.py", "modified")])
    return TaskRunner(project_dir, io, config=_config(), **kwargs)


def _state(project_dir: Path):
    return load_run_state(ProjectStore(project_dir))


def test_detect_modified_files_maps_status_codes(tmp_path: Path) -> None:
    output = "A\tsrc/new.py\nM\tsrc/app.py\nD\told.py\nR100\tsrc/a.py\tsrc/b.py\n\n"

    files = detect_modified_files(tmp_path, git=lambda _: output)

    assert [(item.path, item.action) for item in files] == [
        ("src/new.py", "created"),
        ("src/app.py", "modified"),
        ("old.py", "deleted"),
        ("src/b.py", "modified"),
    ]


def test_detect_modified_files_outside_repository_is_empty(tmp_path: Path) -> None:
    assert detect_modified_files(tmp_path, git=lambda _: "") == []


def test_run_without_plan_fails(tmp_path: Path) -> None:
    result = asyncio.run(_runner(tmp_path, FakeIO()).run())

    assert result.status == "failed"
    assert result.errors == ["No implementation plan found. Generate plan.json first."]


def test_run_refuses_when_gates_fail(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    check_all_gates(tmp_path)
    runner = TaskRunner(tmp_path, FakeIO(["done"]))

    result = asyncio.run(runner.run())

    assert result.status == "failed"
    assert result.errors[0] == "Gate A (Environment): Development environment is not ready"
    assert _state(tmp_path) is None


def test_run_refuses_when_gates_never_checked(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])

    result = asyncio.run(TaskRunner(tmp_path, FakeIO()).run())

    assert result.status == "failed"
    assert "taskgate gate check" in result.errors[0]


def test_dry_run_previews_without_state_change(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    io = FakeIO()

    result = asyncio.run(TaskRunner(tmp_path, io).run(dry_run=True))

    assert result.status == "dry_run"
    assert result.task_id == "F1-DB"
    assert "[DRY RUN] Would execute this task." in io.output
    assert "# Implementation Task: F1-DB" in io.output
    assert io.prompts == []
    state = _state(tmp_path)
    assert all(task.status == "backlog" for task in state.tasks)


def test_run_completes_next_task(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    io = FakeIO(["done"])

    result = asyncio.run(_runner(tmp_path, io).run())

    assert result.status == "completed"
    assert result.task_id == "F1-DB"
    assert result.audit_score == 100
    task = _state(tmp_path).find("F1-DB")
    assert task.status == "done"
    assert task.prompt.startswith("# Implementation Task: F1-DB")
    assert task.files[0].path == "src/app.py"
    assert "Progress: 1/6 tasks (17%)" in io.output


def test_run_skip_returns_task_to_backlog(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])

    result = asyncio.run(_runner(tmp_path, FakeIO(["s"])).run())

    assert result.status == "skipped"
    state = _state(tmp_path)
    assert state.find("F1-DB").status == "backlog"
    assert state.current_task_id is None


def test_run_fail_labels_tracker_issue(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    tracker = FakeTracker()

    result = asyncio.run(_runner(tmp_path, FakeIO(["fail"]), tracker=tracker).run())

    assert result.status == "failed"
    assert _state(tmp_path).find("F1-DB").status == "failed"
    assert tracker.labels == [("F1-DB", "failed")]
    assert tracker.closed == []


def test_run_specific_task_closes_issue(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    tracker = FakeTracker()

    result = asyncio.run(_runner(tmp_path, FakeIO(["done"]), tracker=tracker).run("F1-UI"))

    assert result.task_id == "F1-UI"
    assert tracker.closed == ["F1-UI"]


def test_run_rejects_completed_and_unknown_tasks(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    asyncio.run(_runner(tmp_path, FakeIO(["done"])).run())

    again = asyncio.run(_runner(tmp_path, FakeIO()).run("F1-DB"))
    missing = asyncio.run(_runner(tmp_path, FakeIO()).run("F9-DB"))

    assert again.errors == ["Task already completed: F1-DB"]
    assert missing.errors == ["Task not found: F9-DB"]


def test_escalation_waits_for_answer_then_resumes(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1", "F2"]], circular=[["F1", "F2"]])
    plan = Plan.from_dict({"waves": [], "circularDependencies": [["F1", "F2"]]})
    policy = circular_dependency_policy(plan)

    io = FakeIO([""])
    first = asyncio.run(_runner(tmp_path, io, escalation_policy=policy).run())

    assert first.status == "escalated"
    assert "[T7] Circular feature dependency" in io.output
    state = _state(tmp_path)
    assert state.status == "waiting_input"
    assert state.find("F1-DB").status == "waiting_input"
    assert state.current_task_id is None

    io = FakeIO(["1", "done"])
    second = asyncio.run(_runner(tmp_path, io, escalation_policy=policy).run())

    assert second.status == "completed"
    assert second.task_id == "F1-DB"
    task = _state(tmp_path).find("F1-DB")
    assert task.status == "done"
    assert task.escalation.answer == "1"
    assert 'Escalation resolved: "1"' in io.output


def test_complete_task_is_non_interactive(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    tracker = FakeTracker()
    io = FakeIO()

    result = asyncio.run(_runner(tmp_path, io, tracker=tracker).complete_task("F1-API"))

    assert result.error is None
    assert result.issue_closed is True
    assert result.progress == 17
    assert io.prompts == []
    assert _state(tmp_path).find("F1-API").status == "done"

    repeat = asyncio.run(_runner(tmp_path, io, tracker=tracker).complete_task("F1-API"))
    assert repeat.error == "Task already completed: F1-API"
    assert tracker.closed == ["F1-API"]


def test_complete_feature_counts_skipped_tasks(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1", "F2"]])
    tracker = FakeTracker()
    runner = _runner(tmp_path, FakeIO(), tracker=tracker)
    asyncio.run(runner.complete_task("F1-DB"))

    result = asyncio.run(runner.complete_feature("F1"))

    assert (result.completed, result.skipped) == (5, 1)
    assert result.progress == 50
    assert result.issues_closed == 5
    assert len(tracker.closed) == 6

    missing = asyncio.run(runner.complete_feature("F9"))
    assert missing.error == "No tasks found for feature: F9"


def test_complete_wave(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"], ["F2", "F3"]])
    runner = _runner(tmp_path, FakeIO())

    result = asyncio.run(runner.complete_wave(2))

    assert result.completed == 12
    assert result.progress == 67
    state = _state(tmp_path)
    assert all(task.status == "backlog" for task in state.tasks if task.feature_id == "F1")

    missing = asyncio.run(runner.complete_wave(7))
    assert missing.error == "Wave 7 not found."


def test_run_reports_all_tasks_completed(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    runner = _runner(tmp_path, FakeIO())
    asyncio.run(runner.complete_feature("F1"))
    io = FakeIO()

    result = asyncio.run(_runner(tmp_path, io).run())

    assert result.status == "idle"
    assert "All tasks completed!" in io.output
    assert _state(tmp_path).status == "completed"


def test_unparseable_run_state_is_reseeded_from_plan(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    (tmp_path / ".framework" / "run-state.json").write_text("{not json", encoding="utf-8")

    state = _runner(tmp_path, FakeIO()).load_or_seed()

    assert state is not None
    assert len(state.tasks) == 6
    assert _state(tmp_path).find("F1-DB").status == "backlog"


def test_wrong_shape_run_state_is_reseeded_on_run(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    (tmp_path / ".framework" / "run-state.json").write_text('{"tasks": ["oops"]}', encoding="utf-8")
    io = FakeIO(["done"])

    result = asyncio.run(_runner(tmp_path, io).run())

    assert result.status == "completed"
    assert result.task_id == "F1-DB"
    assert [task.task_id for task in _state(tmp_path).tasks][:2] == ["F1-DB", "F1-API"]


def test_seeding_falls_back_to_configured_profile(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]], profile=None)
    config = _config()
    config.project.default_profile = "api"

    state = TaskRunner(tmp_path, FakeIO(), config=config).load_or_seed()

    kinds = [task.kind for task in state.tasks]
    assert kinds == ["test", "db", "api", "ui", "integration", "review"]
