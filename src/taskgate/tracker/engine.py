from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from taskgate.config import TaskgateConfig
from taskgate.plan import (
    Feature,
    Plan,
    Task,
    decompose_feature,
    determine_task_order_mode,
    load_plan,
)
from taskgate.profile import resolve_profile_type
from taskgate.run.model import (
    calculate_progress,
    init_run_state_from_plan,
    load_run_state,
    save_run_state,
)
from taskgate.run.prompts import definition_of_done
from taskgate.state.store import ProjectStore, utcnow_iso
from taskgate.tracker.base import CommandExecutor, TrackerCommandError
from taskgate.tracker.model import (
    FeatureIssueMap,
    IssueState,
    SyncState,
    TaskIssueMap,
    detect_repo_slug,
    load_sync_state,
    save_sync_state,
)
from taskgate.tracker.resilient import ResilientExecutor, RetryPolicy, Sleep, TrackerEventHook

logger = structlog.get_logger()

ProgressCallback = Callable[[str], None]

BOARD_STATUS_OPTIONS: list[tuple[str, str]] = [
    ("Backlog", "GRAY"),
    ("Todo", "BLUE"),
    ("In Progress", "YELLOW"),
    ("In Review", "PURPLE"),
    ("Done", "GREEN"),
]

_ISSUE_URL = re.compile(r"/issues/(\d+)")


def extract_issue_number(output: str) -> int:
    """Pull the issue number out of the URL printed by ``gh issue create``."""
    match = _ISSUE_URL.search(output)
    if not match:
        raise ValueError(f"Could not extract issue number from gh output: {output}")
    return int(match.group(1))


@dataclass(slots=True)
class TrackerIssue:
    number: int
    title: str
    state: IssueState
    labels: list[str] = field(default_factory=list)

    @classmethod
    def from_gh(cls, data: dict[str, Any]) -> TrackerIssue:
        return cls(
            number=int(data["number"]),
            title=str(data.get("title", "")),
            state="closed" if str(data.get("state", "")).upper() == "CLOSED" else "open",
            labels=[
                str(item.get("name", ""))
                for item in data.get("labels") or []
                if isinstance(item, dict)
            ],
        )


@dataclass(slots=True)
class SyncResult:
    created: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    repo: str | None = None


@dataclass(slots=True)
class IssueStatusChange:
    task_id: str
    issue_number: int
    status: IssueState


@dataclass(slots=True)
class StatusSyncResult:
    updated: int = 0
    issues: list[IssueStatusChange] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    tasks_marked_done: int = 0
    run_state_created: bool = False
    progress: int = 0


@dataclass(slots=True)
class CloseResult:
    closed: bool
    error: str | None = None


class GitHubSync:
    """Pushes plan features and tasks to GitHub issues and pulls their status back.

    Every command goes through ``executor`` wrapped in a ``ResilientExecutor``,
    so rate-limited calls are retried with exponential backoff. ``sleep`` is used
    for both the backoff and the pause between issue creations.
    """

    def __init__(
        self,
        project_dir: Path,
        executor: CommandExecutor,
        *,
        config: TaskgateConfig | None = None,
        sleep: Sleep = asyncio.sleep,
        on_progress: ProgressCallback | None = None,
        event_hook: TrackerEventHook | None = None,
    ) -> None:
        self.project_dir = project_dir.resolve()
        self.config = config or TaskgateConfig.default()
        self.store = ProjectStore(self.project_dir, state_dir=self.config.project.state_dir)
        self.sleep = sleep
        self.on_progress = on_progress
        if isinstance(executor, ResilientExecutor):
            self.executor: CommandExecutor = executor
        else:
            self.executor = ResilientExecutor(
                executor,
                RetryPolicy(
                    max_attempts=self.config.sync.max_attempts,
                    backoff_base_seconds=self.config.sync.backoff_base_seconds,
                ),
                sleep=sleep,
                event_hook=event_hook,
            )
        self._label_cache: dict[str, set[str]] = {}
        self._created_this_run = False

    def _log(self, message: str) -> None:
        if self.on_progress:
            self.on_progress(message)

    async def _gh(self, *args: str) -> str:
        return await self.executor.run(list(args))

    async def is_available(self) -> bool:
        try:
            await self._gh("auth", "status")
        except TrackerCommandError:
            return False
        return True

    async def _pace(self) -> None:
        delay = self.config.sync.creation_delay_seconds
        if self._created_this_run and delay > 0:
            await self.sleep(delay)

    async def ensure_labels(self, repo: str, labels: list[str]) -> None:
        known = self._label_cache.setdefault(repo, set())
        for label in labels:
            if label in known:
                continue
            known.add(label)
            try:
                await self._gh("label", "create", label, "--repo", repo, "--force")
            except TrackerCommandError as exc:
                logger.warning("label_create_failed", repo=repo, label=label, error=str(exc))

    async def create_feature_issue(
        self, repo: str, feature: Feature, wave_number: int, tasks: list[Task]
    ) -> int:
        checklist = "\n".join(f"- [ ] {task.id}: {task.short_name}" for task in tasks)
        lines = [
            f"## Feature: {feature.id}",
            "",
            f"**Priority**: {feature.priority}",
            f"**Size**: {feature.size}",
            f"**Type**: {feature.type}",
        ]
        if feature.dependencies:
            lines.append(f"**Dependencies**: {', '.join(feature.dependencies)}")
        lines.extend(["", "## Tasks", "", checklist])
        labels = ["feature", feature.priority.lower(), f"wave-{wave_number}"]
        await self.ensure_labels(repo, labels)
        await self._pace()
        output = await self._gh(
            "issue",
            "create",
            "--repo",
            repo,
            "--title",
            f"[{feature.id}] {feature.name}",
            "--body",
            "\n".join(lines),
            "--label",
            ",".join(labels),
        )
        self._created_this_run = True
        return extract_issue_number(output)

    async def create_task_issue(
        self,
        repo: str,
        feature: Feature,
        task: Task,
        wave_number: int,
        parent_issue_number: int,
    ) -> int:
        lines = [
            f"## {task.id}: {task.short_name}",
            "",
            f"**Feature**: {feature.id} - {feature.name}",
            f"**SSOT Sections**: {', '.join(task.references)}",
            f"**Size**: {task.size}",
            "",
            "## Definition of Done",
            "",
            definition_of_done(task.kind),
            "",
            "## Dependencies",
            "",
            f"Blocked by: {', '.join(task.blocked_by)}" if task.blocked_by else "None",
        ]
        if task.blocks:
            lines.append(f"Blocks: {', '.join(task.blocks)}")
        lines.extend(["", f"Parent: #{parent_issue_number}"])
        labels = [task.kind, feature.priority.lower(), feature.id, f"wave-{wave_number}"]
        await self.ensure_labels(repo, labels)
        await self._pace()
        output = await self._gh(
            "issue",
            "create",
            "--repo",
            repo,
            "--title",
            f"[{task.id}] {feature.name} - {task.short_name}",
            "--body",
            "\n".join(lines),
            "--label",
            ",".join(labels),
        )
        self._created_this_run = True
        return extract_issue_number(output)

    def _save(self, state: SyncState) -> None:
        state.synced_at = utcnow_iso()
        save_sync_state(self.store, state)

    async def push_plan(
        self,
        plan: Plan,
        *,
        repo: str | None = None,
        project_number: int | None = None,
        profile_type: str | None = None,
    ) -> SyncResult:
        """Create missing feature and task issues for every feature in the plan.

        Features whose mapping already covers all of their tasks are skipped.
        Each created issue is recorded in ``github-sync.json`` right away, so an
        interrupted push resumes without creating duplicates.
        """
        result = SyncResult()
        repo = repo or detect_repo_slug(self.project_dir)
        if not repo:
            result.errors.append(
                "Could not detect GitHub repository. "
                "Ensure git remote 'origin' points to a GitHub repo."
            )
            return result
        result.repo = repo

        state = load_sync_state(self.store)
        dirty = False
        if state is None:
            state = SyncState(repo=repo)
            dirty = True
        elif state.repo != repo:
            state.repo = repo
            dirty = True
        if project_number is not None and state.project_number != project_number:
            state.project_number = project_number
            dirty = True
        board = state.project_number

        if profile_type is None:
            profile_type = resolve_profile_type(self.store, self.config)

        for wave, feature in plan.features():
            mode = determine_task_order_mode(profile_type, feature.type)
            tasks = decompose_feature(feature, mode)
            mapping = state.find_feature(feature.id)
            if mapping is not None and len(mapping.task_issues) >= len(tasks):
                result.skipped += 1 + len(mapping.task_issues)
                self._log(f"  [skip] {feature.id}: already synced")
                continue

            try:
                if mapping is None:
                    parent = await self.create_feature_issue(repo, feature, wave.number, tasks)
                    mapping = FeatureIssueMap(feature_id=feature.id, parent_issue_number=parent)
                    state.feature_issues.append(mapping)
                    self._save(state)
                    dirty = False
                    result.created += 1
                    self._log(f"  [created] {feature.id} -> #{parent}")
                    logger.info("issue_created", repo=repo, item=feature.id, issue=parent)
                    if board is not None:
                        await self.add_issue_to_project(repo, board, parent)
                else:
                    self._log(f"  [skip] {feature.id} parent: #{mapping.parent_issue_number}")
            except (TrackerCommandError, ValueError) as exc:
                result.errors.append(f"Failed to create issues for {feature.id}: {exc}")
                continue

            for task in tasks:
                if mapping.find_task(task.id) is not None:
                    result.skipped += 1
                    continue
                try:
                    number = await self.create_task_issue(
                        repo, feature, task, wave.number, mapping.parent_issue_number
                    )
                except (TrackerCommandError, ValueError) as exc:
                    result.errors.append(f"Failed to create issue for {task.id}: {exc}")
                    continue
                mapping.task_issues.append(TaskIssueMap(task_id=task.id, issue_number=number))
                self._save(state)
                dirty = False
                result.created += 1
                self._log(f"  [created] {task.id} -> #{number}")
                logger.info("issue_created", repo=repo, item=task.id, issue=number)
                if board is not None:
                    await self.add_issue_to_project(repo, board, number)

        if dirty:
            self._save(state)
        logger.info(
            "plan_pushed",
            repo=repo,
            created=result.created,
            skipped=result.skipped,
            errors=len(result.errors),
        )
        return result

    async def list_all_issues(self, repo: str) -> list[TrackerIssue]:
        output = await self._gh(
            "issue",
            "list",
            "--repo",
            repo,
            "--state",
            "all",
            "--json",
            "number,title,state,labels",
            "--limit",
            "1000",
        )
        data = json.loads(output or "[]")
        return [TrackerIssue.from_gh(item) for item in data]

    async def get_issue_state(self, repo: str, issue_number: int) -> IssueState | None:
        """Look up one issue directly; ``None`` when it does not exist."""
        try:
            output = await self._gh(
                "issue", "view", str(issue_number), "--repo", repo, "--json", "state"
            )
            data = json.loads(output or "{}")
        except (TrackerCommandError, ValueError) as exc:
            logger.debug("issue_view_failed", issue=issue_number, error=str(exc))
            return None
        if not isinstance(data, dict) or "state" not in data:
            return None
        return "closed" if str(data["state"]).upper() == "CLOSED" else "open"

    async def pull_status(self) -> StatusSyncResult:
        """Refresh mapped issue states and mark tasks of closed issues done.

        A task that is already done locally is never reopened or re-timestamped.
        Without a local run state one is seeded from the plan first.
        """
        result = StatusSyncResult()
        state = load_sync_state(self.store)
        if state is None:
            result.errors.append("No GitHub sync state found. Run 'taskgate sync' first.")
            return result

        try:
            issues = await self.list_all_issues(state.repo)
        except (TrackerCommandError, ValueError) as exc:
            result.errors.append(f"Failed to fetch issues: {exc}")
            return result
        states: dict[int, IssueState] = {issue.number: issue.state for issue in issues}

        for mapping in state.iter_tasks():
            issue_state = states.get(mapping.issue_number)
            if issue_state is None:
                # Listing is capped and newest-first; older issues need a direct lookup.
                issue_state = await self.get_issue_state(state.repo, mapping.issue_number)
            if issue_state is None:
                result.errors.append(
                    f"#{mapping.issue_number} ({mapping.task_id}) not found in GitHub"
                )
                continue
            if issue_state != mapping.status:
                mapping.status = issue_state
                result.updated += 1
                result.issues.append(
                    IssueStatusChange(
                        task_id=mapping.task_id,
                        issue_number=mapping.issue_number,
                        status=issue_state,
                    )
                )
        if result.updated:
            self._save(state)

        run_state = load_run_state(self.store)
        if run_state is None:
            plan = load_plan(self.store)
            if plan is None or not plan.waves:
                result.errors.append("No plan found; run state not updated.")
                return result
            profile_type = resolve_profile_type(self.store, self.config)
            run_state = init_run_state_from_plan(plan, profile_type)
            result.run_state_created = True

        for mapping in state.iter_tasks():
            if mapping.status == "closed" and run_state.mark_done_from_tracker(mapping.task_id):
                result.tasks_marked_done += 1

        if result.tasks_marked_done or result.run_state_created:
            save_run_state(self.store, run_state)
        result.progress = calculate_progress(run_state)
        logger.info(
            "status_pulled",
            updated=result.updated,
            tasks_marked_done=result.tasks_marked_done,
            errors=len(result.errors),
        )
        return result

    async def close_task_issue(self, task_id: str) -> CloseResult:
        state = load_sync_state(self.store)
        if state is None:
            return CloseResult(closed=False, error="No sync state")
        number = state.find_task_issue_number(task_id)
        if number is None:
            return CloseResult(closed=False, error=f"No issue mapping for {task_id}")
        try:
            await self._gh("issue", "close", str(number), "--repo", state.repo)
        except TrackerCommandError as exc:
            logger.warning("issue_close_failed", task_id=task_id, issue=number, error=str(exc))
            return CloseResult(closed=False, error=str(exc))
        if state.update_task_status(task_id, "closed"):
            self._save(state)
        return CloseResult(closed=True)

    async def label_task_issue(self, task_id: str, label: str) -> bool:
        state = load_sync_state(self.store)
        if state is None:
            return False
        number = state.find_task_issue_number(task_id)
        if number is None:
            return False
        await self.ensure_labels(state.repo, [label])
        try:
            await self._gh("issue", "edit", str(number), "--repo", state.repo, "--add-label", label)
        except TrackerCommandError as exc:
            logger.warning(
                "issue_label_failed", task_id=task_id, issue=number, label=label, error=str(exc)
            )
            return False
        return True

    async def has_project_scope(self) -> bool:
        try:
            await self._gh("project", "list", "--limit", "1")
        except TrackerCommandError:
            return False
        return True

    async def list_projects(self, repo: str) -> list[dict[str, Any]]:
        owner = repo.split("/")[0]
        try:
            output = await self._gh("project", "list", "--owner", owner, "--format", "json")
            data = json.loads(output or "{}")
        except (TrackerCommandError, ValueError):
            return []
        return list(data.get("projects") or [])

    async def create_project_board(self, repo: str, title: str) -> int | None:
        owner = repo.split("/")[0]
        try:
            output = await self._gh(
                "project", "create", "--owner", owner, "--title", title, "--format", "json"
            )
            return int(json.loads(output)["number"])
        except (TrackerCommandError, ValueError, KeyError, TypeError) as exc:
            logger.warning("project_create_failed", repo=repo, error=str(exc))
            return None

    async def add_issue_to_project(self, repo: str, project_number: int, issue_number: int) -> bool:
        owner = repo.split("/")[0]
        url = f"https://github.com/{repo}/issues/{issue_number}"
        try:
            await self._gh(
                "project", "item-add", str(project_number), "--owner", owner, "--url", url
            )
        except TrackerCommandError as exc:
            logger.warning(
                "project_item_add_failed",
                project=project_number,
                issue=issue_number,
                error=str(exc),
            )
            return False
        return True

    async def _graphql(self, query: str, **variables: str | int) -> dict[str, Any]:
        args = ["api", "graphql", "-f", f"query={query}"]
        for key, value in variables.items():
            flag = "-F" if isinstance(value, int) else "-f"
            args.extend([flag, f"{key}={value}"])
        output = await self._gh(*args)
        return json.loads(output or "{}")

    async def _project_id(self, owner: str, project_number: int) -> str | None:
        for owner_kind in ("user", "organization"):
            query = (
                f"query($owner: String!, $number: Int!) {{ {owner_kind}(login: $owner) "
                "{ projectV2(number: $number) { id } } }"
            )
            try:
                data = await self._graphql(query, owner=owner, number=project_number)
            except (TrackerCommandError, ValueError):
                continue
            node = ((data.get("data") or {}).get(owner_kind) or {}).get("projectV2") or {}
            if node.get("id"):
                return str(node["id"])
        return None

    async def configure_project_board(self, repo: str, project_number: int) -> None:
        """Set the board's Status column options to the task workflow columns."""
        owner = repo.split("/")[0]
        project_id = await self._project_id(owner, project_number)
        if project_id is None:
            raise TrackerCommandError(f"Project #{project_number} not found for {owner}")

        fields_query = (
            "query($id: ID!) { node(id: $id) { ... on ProjectV2 { fields(first: 50) { nodes { "
            "... on ProjectV2SingleSelectField { id name } } } } } }"
        )
        data = await self._graphql(fields_query, id=project_id)
        node = (data.get("data") or {}).get("node") or {}
        nodes = (node.get("fields") or {}).get("nodes") or []
        status_ids = [item.get("id") for item in nodes if item and item.get("name") == "Status"]
        field_id = status_ids[0] if status_ids else None
        if not field_id:
            raise TrackerCommandError("Status field not found")

        options = ", ".join(
            f'{{name: "{name}", color: {color}, description: ""}}'
            for name, color in BOARD_STATUS_OPTIONS
        )
        mutation = (
            "mutation($fieldId: ID!) { updateProjectV2Field(input: {fieldId: $fieldId, "
            f"singleSelectOptions: [{options}]}}) "
            "{ projectV2Field { ... on ProjectV2SingleSelectField { id } } } }"
        )
        await self._graphql(mutation, fieldId=str(field_id))
        logger.info("project_board_configured", repo=repo, project=project_number)
