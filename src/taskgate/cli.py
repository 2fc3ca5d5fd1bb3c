from __future__ import annotations

import asyncio
import json
from pathlib import Path

import click

from taskgate.config import TaskgateConfig, load_config, save_config
from taskgate.gates.engine import check_all_gates, check_single_gate, load_gate_result, reset_gates
from taskgate.gates.model import AllGatesResult, GateId
from taskgate.logging_config import setup_logging
from taskgate.plan import determine_task_order_mode, load_plan, task_order
from taskgate.profile import KNOWN_PROFILES, resolve_profile_type
from taskgate.run.engine import TaskRunner
from taskgate.run.escalation import circular_dependency_policy, create_escalation, no_escalation
from taskgate.run.model import ESCALATION_LABELS, calculate_progress, count_by_status
from taskgate.state.store import (
    PROJECT_DOCUMENT,
    SYNC_DOCUMENT,
    ProjectStore,
    TaskgateStateError,
    utcnow_iso,
)
from taskgate.status import build_status
from taskgate.tracker.base import TrackerCommandError
from taskgate.tracker.engine import GitHubSync
from taskgate.tracker.gh import GhCliExecutor
from taskgate.tracker.model import detect_repo_slug

CONFIG_OPTION_DEFAULT = "taskgate.toml"


def _resolve_config_path(project_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_dir / config_path
    return config_path.resolve()


def _load(config_value: str) -> tuple[Path, TaskgateConfig]:
    project_dir = Path.cwd().resolve()
    return project_dir, load_config(_resolve_config_path(project_dir, config_value))


def _store(project_dir: Path, config: TaskgateConfig) -> ProjectStore:
    return ProjectStore(project_dir, state_dir=config.project.state_dir)


def _build_tracker(
    project_dir: Path, config: TaskgateConfig, *, verbose: bool = False
) -> GitHubSync:
    executor = GhCliExecutor(
        binary=config.sync.gh_binary,
        working_directory=project_dir,
        timeout_seconds=config.sync.command_timeout_seconds,
    )
    return GitHubSync(
        project_dir,
        executor,
        config=config,
        on_progress=click.echo if verbose else None,
    )


class ClickRunIO:
    def print(self, message: str) -> None:
        click.echo(message)

    async def ask(self, prompt: str) -> str:
        return click.prompt(prompt, default="", show_default=False, prompt_suffix="")


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
)
@click.option("--log-json", is_flag=True, default=False, help="Emit log lines as JSON on stderr.")
def cli(log_level: str, log_json: bool) -> None:
    """Gate, decompose, run and sync implementation tasks."""
    setup_logging(json_output=log_json, log_level=log_level)


@cli.command("init")
@click.option("--profile", type=click.Choice(sorted(KNOWN_PROFILES)), default=None)
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def init_command(profile: str | None, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(project_dir, config_value)
    config = load_config(config_path)
    if profile:
        config.project.default_profile = profile  # type: ignore[assignment]
    save_config(config_path, config)

    store = _store(project_dir, config)
    store.state_dir.mkdir(parents=True, exist_ok=True)
    if not store.exists(PROJECT_DOCUMENT):
        store.write_json(
            PROJECT_DOCUMENT,
            {"profile_type": config.project.default_profile, "created_at": utcnow_iso()},
        )

    click.echo(f"Initialized taskgate in {project_dir}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Profile: {resolve_profile_type(store, config)}")


@cli.group("gate")
def gate_group() -> None:
    """Pre-implementation gate checks."""


def _report_gates(result: AllGatesResult, gate_ids: tuple[GateId, ...]) -> None:
    entries = {"A": result.gate_a, "B": result.gate_b, "C": result.gate_c}
    failed_lines: list[str] = []
    for gate_id in gate_ids:
        click.echo(f"Gate {gate_id}: {entries[gate_id].status}")
        for check in entries[gate_id].failed_checks:
            failed_lines.append(f"FAILED [Gate {gate_id}] {check.name}: {check.message}")
    for line in failed_lines:
        click.echo(line)
    if any(entries[gate_id].status != "passed" for gate_id in gate_ids):
        raise click.ClickException(f"{len(failed_lines)} gate check(s) failed.")
    click.echo("All checked gates passed.")


def _run_gate_check(config_value: str, gate_id: GateId | None) -> None:
    project_dir, config = _load(config_value)
    try:
        if gate_id is None:
            result = check_all_gates(project_dir, config)
        else:
            result = check_single_gate(project_dir, gate_id, config)
    except TaskgateStateError as exc:
        raise click.ClickException(str(exc)) from exc
    _report_gates(result, ("A", "B", "C") if gate_id is None else (gate_id,))


@gate_group.command("check")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def gate_check_command(config_value: str) -> None:
    """Check all three gates."""
    _run_gate_check(config_value, None)


@gate_group.command("check-a")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def gate_check_a_command(config_value: str) -> None:
    """Check the environment gate only."""
    _run_gate_check(config_value, "A")


@gate_group.command("check-b")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def gate_check_b_command(config_value: str) -> None:
    """Check the planning gate only."""
    _run_gate_check(config_value, "B")


@gate_group.command("check-c")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def gate_check_c_command(config_value: str) -> None:
    """Check the specification gate only."""
    _run_gate_check(config_value, "C")


@gate_group.command("status")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def gate_status_command(config_value: str) -> None:
    project_dir, config = _load(config_value)
    result = load_gate_result(project_dir, config)
    if result is None:
        click.echo("Gates have not been checked yet.")
        return
    for gate_id, entry in (("A", result.gate_a), ("B", result.gate_b), ("C", result.gate_c)):
        click.echo(f"Gate {gate_id}: {entry.status} (checked {entry.checked_at})")
    for failure in result.failures:
        click.echo(f"{failure.gate}: {failure.message}")
        for detail in failure.details:
            click.echo(f"  - {detail}")
    click.echo(f"All passed: {'yes' if result.all_passed else 'no'}")


@gate_group.command("reset")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def gate_reset_command(config_value: str) -> None:
    project_dir, config = _load(config_value)
    reset_gates(project_dir, config)
    click.echo("All gates reset to pending.")


@cli.group("plan")
def plan_group() -> None:
    """Inspect the implementation plan."""


@plan_group.command("status")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def plan_status_command(config_value: str) -> None:
    project_dir, config = _load(config_value)
    store = _store(project_dir, config)
    plan = load_plan(store)
    if plan is None:
        raise click.ClickException("No plan found. Generate plan.json first.")
    profile_type = resolve_profile_type(store, config)
    click.echo(
        f"Plan: {len(plan.waves)} waves, {plan.total_features} features, status={plan.status}"
    )
    for wave in plan.waves:
        title = f" {wave.title}" if wave.title else ""
        click.echo(f"Wave {wave.number}:{title} ({len(wave.features)} features)")
        for feature in wave.features:
            mode = determine_task_order_mode(profile_type, feature.type)
            order = " > ".join(task_order(mode))
            sizing = f"[{feature.priority}/{feature.size}]"
            click.echo(f"  {feature.id} {feature.name} {sizing} {mode}: {order}")
    if plan.circular_dependencies:
        for cycle in plan.circular_dependencies:
            click.echo(f"Circular dependency: {' -> '.join(cycle)}")


@plan_group.command("seed")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def plan_seed_command(config_value: str) -> None:
    """Merge the current plan into the run state."""
    project_dir, config = _load(config_value)
    runner = TaskRunner(project_dir, ClickRunIO(), config=config)
    state = runner.reseed()
    if state is None:
        raise click.ClickException("No plan found. Generate plan.json first.")
    click.echo(f"Run state has {len(state.tasks)} tasks ({calculate_progress(state)}% done).")


def _print_run_status(runner: TaskRunner) -> None:
    state = runner.load_or_seed()
    if state is None:
        raise click.ClickException("No plan found. Generate plan.json first.")
    counts = count_by_status(state)
    click.echo(f"Run: {state.status}, progress {calculate_progress(state)}%")
    click.echo(f"Current task: {state.current_task_id or '-'}")
    click.echo(", ".join(f"{name}={count}" for name, count in counts.items()))


@cli.command("run")
@click.argument("target", required=False)
@click.option("--dry-run", is_flag=True, default=False, help="Preview the next task's prompt.")
@click.option(
    "--complete", "complete_task", is_flag=True, default=False, help="Mark TARGET task done."
)
@click.option(
    "--complete-feature",
    is_flag=True,
    default=False,
    help="Mark every task of feature TARGET done.",
)
@click.option(
    "--complete-wave", is_flag=True, default=False, help="Mark every task of wave TARGET done."
)
@click.option("--status", "show_status", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def run_command(
    target: str | None,
    dry_run: bool,
    complete_task: bool,
    complete_feature: bool,
    complete_wave: bool,
    show_status: bool,
    config_value: str,
) -> None:
    project_dir, config = _load(config_value)
    store = _store(project_dir, config)
    tracker = _build_tracker(project_dir, config) if store.exists(SYNC_DOCUMENT) else None
    plan = load_plan(store)
    policy = no_escalation
    if plan is not None and plan.circular_dependencies:
        policy = circular_dependency_policy(plan)
    runner = TaskRunner(
        project_dir, ClickRunIO(), config=config, tracker=tracker, escalation_policy=policy
    )

    if show_status:
        _print_run_status(runner)
        return

    if sum([complete_task, complete_feature, complete_wave]) > 1:
        raise click.UsageError("Use only one of --complete, --complete-feature, --complete-wave.")
    if (complete_task or complete_feature or complete_wave) and not target:
        raise click.UsageError(
            "TARGET is required with --complete, --complete-feature or --complete-wave."
        )

    try:
        if complete_task:
            single = asyncio.run(runner.complete_task(target))
            if single.error:
                raise click.ClickException(single.error)
            click.echo(f"Task {target} completed. Progress: {single.progress}%")
            if single.issue_closed:
                click.echo(f"GitHub: Issue closed for {target}")
            return

        if complete_feature or complete_wave:
            if complete_wave:
                try:
                    wave_number = int(target)
                except ValueError as exc:
                    raise click.UsageError(f"Wave number must be an integer: {target}") from exc
                batch = asyncio.run(runner.complete_wave(wave_number))
            else:
                batch = asyncio.run(runner.complete_feature(target))
            if batch.error:
                raise click.ClickException(batch.error)
            click.echo(
                f"Completed {batch.completed} tasks, skipped {batch.skipped} already done. "
                f"Progress: {batch.progress}%"
            )
            if batch.issues_closed:
                click.echo(f"GitHub: {batch.issues_closed} issues closed")
            return

        result = asyncio.run(runner.run(target, dry_run=dry_run))
    except TaskgateStateError as exc:
        raise click.ClickException(str(exc)) from exc

    for error in result.errors:
        click.echo(error, err=True)
    if result.status == "failed" and result.errors:
        raise click.ClickException(result.errors[0])


@cli.command("escalate")
@click.argument("task_id")
@click.option("--trigger", type=click.Choice(sorted(ESCALATION_LABELS)), required=True)
@click.option("--context", "context_text", required=True)
@click.option("--question", required=True)
@click.option(
    "--option",
    "options",
    multiple=True,
    help="Option as 'description::impact'; repeat for each option.",
)
@click.option("--recommend", "recommendation", default="")
@click.option("--reason", "reason", default="")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def escalate_command(
    task_id: str,
    trigger: str,
    context_text: str,
    question: str,
    options: tuple[str, ...],
    recommendation: str,
    reason: str,
    config_value: str,
) -> None:
    """Suspend an in-progress task until a human answers a question."""
    project_dir, config = _load(config_value)
    parsed = []
    for raw in options:
        description, _, impact = raw.partition("::")
        parsed.append({"description": description.strip(), "impact": impact.strip()})
    escalation = create_escalation(
        trigger,  # type: ignore[arg-type]
        context_text,
        question,
        parsed,
        recommendation,
        reason,
    )
    runner = TaskRunner(project_dir, ClickRunIO(), config=config)
    try:
        runner.escalate(task_id, escalation)
    except (TaskgateStateError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Task {task_id} is waiting for input ([{trigger}] {ESCALATION_LABELS[trigger]}).")


@cli.command("sync")
@click.option(
    "--repo", default=None, help="owner/repo; detected from git remote 'origin' by default."
)
@click.option(
    "--project", "project_number", type=int, default=None, help="Project board to add issues to."
)
@click.option(
    "--create-project", "project_title", default=None, help="Create a board with this title."
)
@click.option(
    "--pull", is_flag=True, default=False, help="Pull issue status back instead of pushing."
)
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def sync_command(
    repo: str | None,
    project_number: int | None,
    project_title: str | None,
    pull: bool,
    config_value: str,
) -> None:
    project_dir, config = _load(config_value)
    tracker = _build_tracker(project_dir, config, verbose=True)

    async def _main() -> list[str]:
        if not await tracker.is_available():
            click.echo(
                "Warning: gh CLI not available or not authenticated; GitHub sync skipped.",
                err=True,
            )
            return []

        if pull:
            pulled = await tracker.pull_status()
            click.echo(f"Issues updated: {pulled.updated}")
            click.echo(f"Tasks marked done: {pulled.tasks_marked_done}")
            click.echo(f"Progress: {pulled.progress}%")
            return pulled.errors

        plan = load_plan(_store(project_dir, config))
        if plan is None:
            return ["No plan found. Generate plan.json first."]

        board = project_number
        if project_title:
            target_repo = repo or detect_repo_slug(project_dir)
            if not target_repo:
                return ["Could not detect GitHub repository for the project board."]
            if not await tracker.has_project_scope():
                click.echo(
                    "Warning: gh token lacks the 'project' scope; board not created.", err=True
                )
            else:
                projects = await tracker.list_projects(target_repo)
                matches = [item for item in projects if item.get("title") == project_title]
                existing = matches[0] if matches else None
                if existing is not None:
                    board = int(existing["number"])
                    click.echo(f"Using existing project board #{board}")
                else:
                    board = await tracker.create_project_board(target_repo, project_title)
                    if board is not None:
                        click.echo(f"Created project board #{board}")
                        try:
                            await tracker.configure_project_board(target_repo, board)
                        except (TrackerCommandError, ValueError) as exc:
                            click.echo(
                                f"Warning: could not configure board columns: {exc}", err=True
                            )

        pushed = await tracker.push_plan(plan, repo=repo, project_number=board)
        click.echo(f"Created: {pushed.created}, skipped: {pushed.skipped}")
        return pushed.errors

    try:
        errors = asyncio.run(_main())
    except TaskgateStateError as exc:
        raise click.ClickException(str(exc)) from exc
    for error in errors:
        click.echo(f"ERROR {error}", err=True)
    if errors:
        raise click.ClickException(f"{len(errors)} sync error(s).")


@cli.command("status")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def status_command(config_value: str) -> None:
    project_dir, config = _load(config_value)
    click.echo(json.dumps(build_status(project_dir, config), ensure_ascii=False, indent=2))
