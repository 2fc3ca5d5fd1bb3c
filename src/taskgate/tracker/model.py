from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from taskgate.state.store import SYNC_DOCUMENT, ProjectStore, utcnow_iso

IssueState = Literal["open", "closed"]

_SSH_REMOTE = re.compile(r"git@github\.com:([^/]+)/([^/]+?)(?:\.git)?/?$")
_HTTPS_REMOTE = re.compile(r"https?://(?:[^@/]+@)?github\.com/([^/]+)/([^/]+?)(?:\.git)?/?$")


@dataclass(slots=True)
class TaskIssueMap:
    task_id: str
    issue_number: int
    status: IssueState = "open"

    def to_dict(self) -> dict[str, Any]:
        return {"task_id": self.task_id, "issue_number": self.issue_number, "status": self.status}


@dataclass(slots=True)
class FeatureIssueMap:
    feature_id: str
    parent_issue_number: int
    task_issues: list[TaskIssueMap] = field(default_factory=list)

    def find_task(self, task_id: str) -> TaskIssueMap | None:
        for item in self.task_issues:
            if item.task_id == task_id:
                return item
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_id": self.feature_id,
            "parent_issue_number": self.parent_issue_number,
            "task_issues": [item.to_dict() for item in self.task_issues],
        }


@dataclass(slots=True)
class SyncState:
    repo: str
    synced_at: str = field(default_factory=utcnow_iso)
    feature_issues: list[FeatureIssueMap] = field(default_factory=list)
    project_number: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncState:
        features: list[FeatureIssueMap] = []
        for raw in data.get("feature_issues", data.get("featureIssues")) or []:
            tasks = [
                TaskIssueMap(
                    task_id=str(item.get("task_id", item.get("taskId"))),
                    issue_number=int(item.get("issue_number", item.get("issueNumber"))),
                    status="closed" if item.get("status") == "closed" else "open",
                )
                for item in raw.get("task_issues", raw.get("taskIssues")) or []
            ]
            features.append(
                FeatureIssueMap(
                    feature_id=str(raw.get("feature_id", raw.get("featureId"))),
                    parent_issue_number=int(
                        raw.get("parent_issue_number", raw.get("parentIssueNumber"))
                    ),
                    task_issues=tasks,
                )
            )
        project_number = data.get("project_number", data.get("projectNumber"))
        return cls(
            repo=str(data.get("repo", "")),
            synced_at=str(data.get("synced_at", data.get("syncedAt", utcnow_iso()))),
            feature_issues=features,
            project_number=int(project_number) if project_number is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "repo": self.repo,
            "synced_at": self.synced_at,
            "feature_issues": [item.to_dict() for item in self.feature_issues],
        }
        if self.project_number is not None:
            payload["project_number"] = self.project_number
        return payload

    def find_feature(self, feature_id: str) -> FeatureIssueMap | None:
        for item in self.feature_issues:
            if item.feature_id == feature_id:
                return item
        return None

    def find_task(self, task_id: str) -> TaskIssueMap | None:
        for feature in self.feature_issues:
            found = feature.find_task(task_id)
            if found is not None:
                return found
        return None

    def find_task_issue_number(self, task_id: str) -> int | None:
        found = self.find_task(task_id)
        return found.issue_number if found else None

    def update_task_status(self, task_id: str, status: IssueState) -> bool:
        found = self.find_task(task_id)
        if found is None or found.status == status:
            return False
        found.status = status
        return True

    def iter_tasks(self) -> list[TaskIssueMap]:
        return [task for feature in self.feature_issues for task in feature.task_issues]


def parse_repo_slug(remote_url: str) -> str | None:
    """Turn an SSH or HTTPS GitHub remote URL into ``owner/repo``."""
    remote_url = remote_url.strip()
    for pattern in (_SSH_REMOTE, _HTTPS_REMOTE):
        match = pattern.match(remote_url)
        if match:
            return f"{match.group(1)}/{match.group(2)}"
    return None


def detect_repo_slug(project_dir: Path) -> str | None:
    try:
        proc = subprocess.run(
            ["git", "-C", str(project_dir), "remote", "get-url", "origin"],
            text=True,
            capture_output=True,
            timeout=10,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None
    if proc.returncode != 0:
        return None
    return parse_repo_slug(proc.stdout)


def load_sync_state(store: ProjectStore) -> SyncState | None:
    payload = store.read_json(SYNC_DOCUMENT)
    if not isinstance(payload, dict):
        return None
    try:
        return SyncState.from_dict(payload)
    except (KeyError, TypeError, ValueError, AttributeError):
        return None


def save_sync_state(store: ProjectStore, state: SyncState) -> None:
    store.write_json(SYNC_DOCUMENT, state.to_dict())
