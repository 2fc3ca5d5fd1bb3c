import asyncio
import json
from collections.abc import Sequence
from pathlib import Path

import pytest

from taskgate.config import TaskgateConfig
from taskgate.plan import load_plan
from taskgate.run.model import load_run_state
from taskgate.state.store import ProjectStore
from taskgate.tracker.base import CommandExecutor, TrackerCommandError
from taskgate.tracker.engine import GitHubSync, extract_issue_number
from taskgate.tracker.model import load_sync_state, parse_repo_slug

REPO = "acme/shop"


class FakeGh(CommandExecutor):
    """In-memory stand-in for the gh CLI that hands out sequential issue numbers."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.next_issue = 1
        self.closed: set[int] = set()
        self.fail_titles: set[str] = set()
        self.status_field = True
        self.unlisted: set[int] = set()

    def _issue_creates(self) -> list[list[str]]:
        return [call for call in self.calls if call[:2] == ["issue", "create"]]

    async def run(self, args: Sequence[str]) -> str:
        args = list(args)
        self.calls.append(args)
        if args[:2] == ["issue", "create"]:
            title = args[args.index("--title") + 1]
            if title in self.fail_titles:
                raise TrackerCommandError(
                    "gh issue create failed", exit_code=1, stderr="validation failed"
                )
            number = self.next_issue
            self.next_issue += 1
            return f"https://github.com/{REPO}/issues/{number}"
        if args[:2] == ["issue", "list"]:
            return json.dumps(
                [
                    {
                        "number": number,
                        "title": f"issue {number}",
                        "state": "CLOSED" if number in self.closed else "OPEN",
                        "labels": [{"name": "feature"}],
                    }
                    for number in range(1, self.next_issue)
                    if number not in self.unlisted
                ]
            )
        if args[:2] == ["issue", "view"]:
            number = int(args[2])
            if number >= self.next_issue:
                raise TrackerCommandError(
                    "gh issue view failed", exit_code=1, stderr="Could not resolve to an issue"
                )
            return json.dumps({"state": "CLOSED" if number in self.closed else "OPEN"})
        if args[:2] == ["issue", "close"]:
            self.closed.add(int(args[2]))
            return ""
        if args[:2] == ["api", "graphql"]:
            query = args[3]
            if "user(login" in query:
                return json.dumps({"data": {"user": {"projectV2": {"id": "PVT_1"}}}})
            if "fields(first" in query:
                nodes = [{"id": "F_title", "name": "Title"}]
                if self.status_field:
                    nodes.append({"id": "F_status", "name": "Status"})
                return json.dumps({"data": {"node": {"fields": {"nodes": nodes}}}})
            return json.dumps({"data": {}})
        if args[:2] == ["project", "create"]:
            return json.dumps({"number": 4})
        return ""


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _sync(project_dir: Path, gh: FakeGh, sleep: RecordingSleep | None = None) -> GitHubSync:
    return GitHubSync(
        project_dir, gh, config=TaskgateConfig.default(), sleep=sleep or RecordingSleep()
    )


def _push(project_dir: Path, gh: FakeGh, **kwargs) -> object:
    sync = _sync(project_dir, gh, kwargs.pop("sleep", None))
    plan = load_plan(sync.store)
    return asyncio.run(sync.push_plan(plan, repo=REPO, **kwargs))


def test_extract_issue_number() -> None:
    assert extract_issue_number("https://github.com/acme/shop/issues/42\n") == 42
    with pytest.raises(ValueError, match="Could not extract issue number"):
        extract_issue_number("")


def test_parse_repo_slug() -> None:
    assert parse_repo_slug("git@github.com:acme/shop.git") == "acme/shop"
    assert parse_repo_slug("https://github.com/acme/shop.git\n") == "acme/shop"
    assert parse_repo_slug("https://github.com/acme/shop") == "acme/shop"
    assert parse_repo_slug("https://gitlab.com/acme/shop.git") is None


def test_push_creates_feature_and_task_issues(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    gh = FakeGh()
    sleep = RecordingSleep()

    result = _push(tmp_path, gh, sleep=sleep)

    assert result.created == 7
    assert result.skipped == 0
    assert result.errors == []
    creates = gh._issue_creates()
    assert creates[0][creates[0].index("--title") + 1] == "[F1] Feature F1"
    assert creates[1][creates[1].index("--title") + 1] == "[F1-DB] Feature F1 - Database"
    assert "Parent: #1" in creates[1][creates[1].index("--body") + 1]
    assert sleep.delays == [1.0] * 6

    state = load_sync_state(ProjectStore(tmp_path))
    assert state.repo == REPO
    assert state.feature_issues[0].parent_issue_number == 1
    assert [item.issue_number for item in state.feature_issues[0].task_issues] == [2, 3, 4, 5, 6, 7]


def test_second_push_is_idempotent(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    gh = FakeGh()
    _push(tmp_path, gh)
    sync_file = tmp_path / ".framework" / "github-sync.json"
    before = sync_file.read_bytes()

    result = _push(tmp_path, gh)

    assert result.created == 0
    assert result.skipped == 7
    assert sync_file.read_bytes() == before
    assert len(gh._issue_creates()) == 7


def test_interrupted_push_resumes_missing_tasks(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    gh = FakeGh()
    gh.fail_titles = {"[F1-UI] Feature F1 - UI"}

    first = _push(tmp_path, gh)

    assert first.created == 6
    assert first.errors == ["Failed to create issue for F1-UI: gh issue create failed"]

    gh.fail_titles = set()
    second = _push(tmp_path, gh)

    assert second.created == 1
    assert second.skipped == 5
    state = load_sync_state(ProjectStore(tmp_path))
    assert state.find_task_issue_number("F1-UI") == 7


def test_push_adds_issues_to_project_board(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    gh = FakeGh()

    _push(tmp_path, gh, project_number=3)

    adds = [call for call in gh.calls if call[:2] == ["project", "item-add"]]
    assert len(adds) == 7
    assert adds[0][2] == "3"
    assert load_sync_state(ProjectStore(tmp_path)).project_number == 3


def test_labels_are_created_once_per_repo(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1", "F2"]])
    gh = FakeGh()

    _push(tmp_path, gh)

    created = [call[2] for call in gh.calls if call[:2] == ["label", "create"]]
    assert len(created) == len(set(created))
    assert {"feature", "p1", "wave-1", "db", "test", "F1", "F2"} <= set(created)


def test_pull_marks_closed_tasks_done_without_regressing(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    gh = FakeGh()
    _push(tmp_path, gh)
    gh.closed = {2, 3}

    result = asyncio.run(_sync(tmp_path, gh).pull_status())

    assert result.errors == []
    assert result.updated == 2
    assert result.run_state_created is True
    assert result.tasks_marked_done == 2
    assert result.progress == 33
    store = ProjectStore(tmp_path)
    state = load_run_state(store)
    assert state.find("F1-DB").status == "done"
    completed_at = state.find("F1-DB").completed_at

    gh.closed = {2, 3, 4}
    again = asyncio.run(_sync(tmp_path, gh).pull_status())

    assert again.tasks_marked_done == 1
    state = load_run_state(store)
    assert state.find("F1-DB").completed_at == completed_at
    assert state.find("F1-UI").status == "done"


def test_pull_reopened_issue_keeps_done_task(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    gh = FakeGh()
    _push(tmp_path, gh)
    gh.closed = {2}
    asyncio.run(_sync(tmp_path, gh).pull_status())
    gh.closed = set()

    result = asyncio.run(_sync(tmp_path, gh).pull_status())

    assert result.updated == 1
    assert result.tasks_marked_done == 0
    assert load_run_state(ProjectStore(tmp_path)).find("F1-DB").status == "done"


def test_pull_looks_up_issues_missing_from_listing(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    gh = FakeGh()
    _push(tmp_path, gh)
    gh.closed = {2}
    gh.unlisted = {2, 3}

    result = asyncio.run(_sync(tmp_path, gh).pull_status())

    assert result.errors == []
    assert result.tasks_marked_done == 1
    views = [call[2] for call in gh.calls if call[:2] == ["issue", "view"]]
    assert views == ["2", "3"]
    assert load_run_state(ProjectStore(tmp_path)).find("F1-DB").status == "done"


def test_pull_reports_missing_issues(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    gh = FakeGh()
    _push(tmp_path, gh)
    gh.next_issue = 7

    result = asyncio.run(_sync(tmp_path, gh).pull_status())

    assert result.errors == ["#7 (F1-TEST) not found in GitHub"]


def test_pull_without_sync_state(tmp_path: Path) -> None:
    result = asyncio.run(_sync(tmp_path, FakeGh()).pull_status())

    assert result.errors == ["No GitHub sync state found. Run 'taskgate sync' first."]


def test_close_and_label_task_issue(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    gh = FakeGh()
    _push(tmp_path, gh)
    sync = _sync(tmp_path, gh)

    closed = asyncio.run(sync.close_task_issue("F1-API"))
    labelled = asyncio.run(sync.label_task_issue("F1-API", "failed"))
    missing = asyncio.run(sync.close_task_issue("F9-API"))

    assert closed.closed is True
    assert gh.closed == {3}
    assert load_sync_state(sync.store).find_task("F1-API").status == "closed"
    assert labelled is True
    assert ["issue", "edit", "3", "--repo", REPO, "--add-label", "failed"] in gh.calls
    assert missing.closed is False
    assert missing.error == "No issue mapping for F9-API"


def test_close_without_sync_state(tmp_path: Path) -> None:
    result = asyncio.run(_sync(tmp_path, FakeGh()).close_task_issue("F1-DB"))

    assert result.closed is False
    assert result.error == "No sync state"


def test_pull_leaves_run_state_alone_when_nothing_closed(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]])
    gh = FakeGh()
    _push(tmp_path, gh)
    seeded = asyncio.run(_sync(tmp_path, gh).pull_status())
    assert seeded.run_state_created is True
    run_file = tmp_path / ".framework" / "run-state.json"
    before = run_file.read_bytes()

    result = asyncio.run(_sync(tmp_path, gh).pull_status())

    assert result.run_state_created is False
    assert run_file.read_bytes() == before


def test_configure_project_board(tmp_path: Path) -> None:
    gh = FakeGh()
    sync = _sync(tmp_path, gh)

    asyncio.run(sync.configure_project_board(REPO, 4))

    mutation = gh.calls[-1]
    assert mutation[:2] == ["api", "graphql"]
    assert "updateProjectV2Field" in mutation[3]
    for column in ("Backlog", "Todo", "In Progress", "In Review", "Done"):
        assert f'name: "{column}"' in mutation[3]
    assert "fieldId=F_status" in mutation


def test_configure_project_board_without_status_field(tmp_path: Path) -> None:
    gh = FakeGh()
    gh.status_field = False

    with pytest.raises(TrackerCommandError, match="Status field not found"):
        asyncio.run(_sync(tmp_path, gh).configure_project_board(REPO, 4))


def test_create_project_board(tmp_path: Path) -> None:
    gh = FakeGh()

    number = asyncio.run(_sync(tmp_path, gh).create_project_board(REPO, "Shop"))

    assert number == 4
    assert gh.calls[-1][:5] == ["project", "create", "--owner", "acme", "--title"]


def test_pull_seeds_run_state_with_configured_default_profile(tmp_path: Path, write_plan) -> None:
    write_plan(tmp_path, [["F1"]], profile=None)
    gh = FakeGh()
    config = TaskgateConfig.default()
    config.project.default_profile = "api"
    sync = GitHubSync(tmp_path, gh, config=config, sleep=RecordingSleep())
    asyncio.run(sync.push_plan(load_plan(sync.store), repo=REPO))

    result = asyncio.run(sync.pull_status())

    assert result.run_state_created is True
    kinds = [task.kind for task in load_run_state(sync.store).tasks]
    assert kinds == ["test", "db", "api", "ui", "integration", "review"]
    creates = gh._issue_creates()
    assert creates[1][creates[1].index("--title") + 1] == "[F1-TEST] Feature F1 - Testing"


def test_list_projects_tolerates_bad_output(tmp_path: Path) -> None:
    class ProjectsGh(FakeGh):
        async def run(self, args: Sequence[str]) -> str:
            if list(args[:2]) == ["project", "list"]:
                return json.dumps({"projects": [{"number": 2, "title": "Shop"}]})
            return await super().run(args)

    projects = asyncio.run(_sync(tmp_path, ProjectsGh()).list_projects(REPO))
    assert projects == [{"number": 2, "title": "Shop"}]

    class BrokenGh(FakeGh):
        async def run(self, args: Sequence[str]) -> str:
            return "not json"

    assert asyncio.run(_sync(tmp_path, BrokenGh()).list_projects(REPO)) == []
