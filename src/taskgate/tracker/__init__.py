from taskgate.tracker.base import (
    CommandExecutor,
    TrackerCommandError,
    TrackerRateLimitError,
    TrackerTimeoutError,
)
from taskgate.tracker.engine import GitHubSync, StatusSyncResult, SyncResult, extract_issue_number
from taskgate.tracker.gh import GhCliExecutor
from taskgate.tracker.model import SyncState, detect_repo_slug, parse_repo_slug
from taskgate.tracker.resilient import ResilientExecutor, RetryPolicy

__all__ = [
    "CommandExecutor",
    "GhCliExecutor",
    "GitHubSync",
    "ResilientExecutor",
    "RetryPolicy",
    "StatusSyncResult",
    "SyncResult",
    "SyncState",
    "TrackerCommandError",
    "TrackerRateLimitError",
    "TrackerTimeoutError",
    "detect_repo_slug",
    "extract_issue_number",
    "parse_repo_slug",
]
