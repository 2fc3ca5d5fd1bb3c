from __future__ import annotations

from pathlib import Path
from typing import Any

from taskgate.config import TaskgateConfig
from taskgate.gates.model import load_gate_state
from taskgate.plan import load_plan
from taskgate.profile import resolve_profile_type
from taskgate.run.model import calculate_progress, count_by_status, load_run_state
from taskgate.state.store import ProjectStore
from taskgate.tracker.model import load_sync_state


def build_status(project_dir: Path, config: TaskgateConfig | None = None) -> dict[str, Any]:
    """Read-only snapshot of gates, plan, run progress and tracker sync."""
    config = config or TaskgateConfig.default()
    store = ProjectStore(project_dir, state_dir=config.project.state_dir)

    payload: dict[str, Any] = {
        "project_dir": str(store.project_dir),
        "profile": resolve_profile_type(store, config),
        "gates": None,
        "plan": None,
        "run": None,
        "sync": None,
    }

    gates = load_gate_state(store)
    if gates is not None:
        payload["gates"] = {
            "A": gates.gate_a.status,
            "B": gates.gate_b.status,
            "C": gates.gate_c.status,
            "all_passed": gates.all_passed,
            "updated_at": gates.updated_at,
        }

    plan = load_plan(store)
    if plan is not None:
        payload["plan"] = {
            "status": plan.status,
            "waves": len(plan.waves),
            "features": plan.total_features,
        }

    run_state = load_run_state(store)
    if run_state is not None:
        payload["run"] = {
            "status": run_state.status,
            "current_task_id": run_state.current_task_id,
            "tasks": len(run_state.tasks),
            "progress": calculate_progress(run_state),
            "by_status": count_by_status(run_state),
        }

    sync = load_sync_state(store)
    if sync is not None:
        tasks = sync.iter_tasks()
        payload["sync"] = {
            "repo": sync.repo,
            "synced_at": sync.synced_at,
            "features": len(sync.feature_issues),
            "task_issues": len(tasks),
            "closed": sum(1 for task in tasks if task.status == "closed"),
            "project_number": sync.project_number,
        }
    return payload
