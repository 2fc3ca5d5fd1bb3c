from __future__ import annotations

import re
from pathlib import Path

import structlog

from taskgate.config import TaskgateConfig
from taskgate.gates.model import (
    AllGatesResult,
    GateCheck,
    GateId,
    GateState,
    SpecCheck,
    load_gate_state,
    save_gate_state,
)
from taskgate.gates.sections import SECTION_IDS, section_is_placeholder, section_present
from taskgate.plan import load_plan
from taskgate.profile import (
    BOUNDARY_WAIVED_PROFILES,
    SPEC_EXEMPT_PROFILES,
    resolve_profile_type,
)
from taskgate.state.store import PROJECT_DOCUMENT, ProjectStore

logger = structlog.get_logger()

NON_SPEC_FILE_PATTERN = re.compile(
    r"^(REPORT|GUIDE|ANALYSIS|CHECKLIST|PROGRESS|RULES|WORKFLOW|TEMPLATE|INDEX|VISION"
    r"|DEPLOYMENT|SSOT-[0-5]_)",
    re.IGNORECASE,
)
SKIP_DIR_PATTERN = re.compile(
    r"^(_non_ssot|_archived|_archived_progress|reports|drafts|phase0_)",
    re.IGNORECASE,
)
SKIPPED_FILE_NAMES = frozenset({"readme.md", "_index.md", "_template.md", "customization_log.md"})


def _store(project_dir: Path, config: TaskgateConfig) -> ProjectStore:
    return ProjectStore(project_dir, state_dir=config.project.state_dir)


def _any_exists(project_dir: Path, candidates: list[str]) -> str | None:
    for candidate in candidates:
        if (project_dir / candidate).exists():
            return candidate
    return None


def _any_of_check(
    project_dir: Path, candidates: list[str], name: str, fail_message: str
) -> GateCheck:
    found = _any_exists(project_dir, candidates)
    if found is None:
        return GateCheck(name=name, passed=False, message=fail_message)
    return GateCheck(name=name, passed=True, message=f"{name}: found {found}")


def check_gate_a(project_dir: Path, config: TaskgateConfig | None = None) -> list[GateCheck]:
    """Environment readiness: every check is a plain existence test."""
    config = config or TaskgateConfig.default()
    gates = config.gates
    state_dir = config.project.state_dir
    checks = [
        _any_of_check(
            project_dir,
            gates.manifest_files,
            "Dependency manifest",
            f"No dependency manifest found ({', '.join(gates.manifest_files)}).",
        ),
        _any_of_check(
            project_dir,
            gates.dependency_markers,
            "Dependencies installed",
            f"No installed-dependencies marker found ({', '.join(gates.dependency_markers)}).",
        ),
        _any_of_check(
            project_dir,
            gates.env_files,
            "Environment config",
            f"{' or '.join(gates.env_files)} not found. Create environment config.",
        ),
        _any_of_check(
            project_dir,
            gates.container_files,
            "Container config",
            f"{gates.container_files[0] if gates.container_files else 'Container config'} "
            "not found. Backing services may not be available.",
        ),
        _any_of_check(
            project_dir,
            gates.ci_paths,
            "CI configuration",
            f"{', '.join(gates.ci_paths)} not found. Set up CI first.",
        ),
    ]
    state_path = project_dir / state_dir
    if state_path.is_dir():
        checks.append(
            GateCheck(
                name=f"State directory ({state_dir}/)",
                passed=True,
                message=f"{state_dir}/: found",
            )
        )
    else:
        checks.append(
            GateCheck(
                name=f"State directory ({state_dir}/)",
                passed=False,
                message=f"{state_dir}/ not found. Run 'taskgate init'.",
            )
        )
    return checks


def check_gate_b(project_dir: Path, config: TaskgateConfig | None = None) -> list[GateCheck]:
    config = config or TaskgateConfig.default()
    store = _store(project_dir, config)
    checks: list[GateCheck] = []

    plan = load_plan(store)
    if plan is None:
        checks.append(
            GateCheck(
                name="Implementation plan (plan.json)",
                passed=False,
                message="No plan found. Generate plan.json first.",
            )
        )
        checks.append(
            GateCheck(
                name="Plan contains features",
                passed=False,
                message="Cannot check features: no plan exists.",
            )
        )
    else:
        checks.append(
            GateCheck(
                name="Implementation plan (plan.json)",
                passed=True,
                message=f"Plan found: {len(plan.waves)} waves, status={plan.status}",
            )
        )
        total = plan.total_features
        checks.append(
            GateCheck(
                name="Plan contains features",
                passed=total > 0,
                message=(
                    f"{total} features across {len(plan.waves)} waves"
                    if total > 0
                    else "Plan has no features. Regenerate plan.json."
                ),
            )
        )

    has_project = store.exists(PROJECT_DOCUMENT)
    checks.append(
        GateCheck(
            name="Project profile configured (project.json)",
            passed=has_project,
            message=(
                "Project profile found"
                if has_project
                else "No project profile. Run 'taskgate init'."
            ),
        )
    )
    return checks


def _collect_spec_files(directory: Path, min_lines: int, result: list[Path]) -> None:
    for entry in sorted(directory.iterdir()):
        if entry.is_dir():
            if SKIP_DIR_PATTERN.match(entry.name) or entry.name.startswith(("_", ".")):
                continue
            _collect_spec_files(entry, min_lines, result)
            continue
        if not entry.name.endswith(".md") or entry.name.startswith(("_", ".")):
            continue
        if entry.name.lower() in SKIPPED_FILE_NAMES or NON_SPEC_FILE_PATTERN.match(entry.name):
            continue
        try:
            content = entry.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        # Stub documents are not specs yet.
        if len(content.split("\n")) < min_lines:
            continue
        result.append(entry)


def find_spec_files(project_dir: Path, config: TaskgateConfig | None = None) -> list[Path]:
    config = config or TaskgateConfig.default()
    files: list[Path] = []
    for relative in config.gates.spec_dirs:
        directory = project_dir / relative
        if directory.is_dir():
            _collect_spec_files(directory, config.gates.min_spec_lines, files)
    return files


def required_sections(profile_type: str | None) -> list[str]:
    if profile_type in BOUNDARY_WAIVED_PROFILES:
        return [section for section in SECTION_IDS if section != "§3-F"]
    return list(SECTION_IDS)


def check_gate_c(project_dir: Path, config: TaskgateConfig | None = None) -> list[GateCheck]:
    config = config or TaskgateConfig.default()
    profile_type = resolve_profile_type(_store(project_dir, config), config)

    if profile_type in SPEC_EXEMPT_PROFILES:
        return [
            SpecCheck(
                name=f"Gate C (profile: {profile_type})",
                passed=True,
                message=(
                    f"Profile '{profile_type}' does not require feature spec completeness. "
                    "Gate C auto-passed."
                ),
            )
        ]

    spec_files = find_spec_files(project_dir, config)
    if not spec_files:
        return [
            SpecCheck(
                name="SSOT files found",
                passed=False,
                message="No SSOT feature spec files found. Create feature specifications first.",
            )
        ]

    sections = required_sections(profile_type)
    checks: list[GateCheck] = []
    for path in spec_files:
        relative = path.relative_to(project_dir).as_posix()
        text = path.read_text(encoding="utf-8")
        missing = [section for section in sections if not section_present(text, section)]
        for section in sections:
            if section in missing:
                continue
            if section_is_placeholder(text, section, config.gates.placeholders):
                missing.append(f"{section}(empty)")
        passed = not missing
        checks.append(
            SpecCheck(
                name=relative,
                passed=passed,
                message=(
                    f"{relative}: All required sections present"
                    if passed
                    else f"{relative}: Missing {', '.join(missing)}"
                ),
                file_path=relative,
                missing_sections=missing,
            )
        )
    return checks


_GATE_CHECKS = {
    "A": check_gate_a,
    "B": check_gate_b,
    "C": check_gate_c,
}


def _evaluate(state: GateState, gate_id: GateId, project_dir: Path, config: TaskgateConfig) -> None:
    checks = _GATE_CHECKS[gate_id](project_dir, config)
    entry = state.update_gate(gate_id, checks)
    logger.info(
        "gate_evaluated",
        gate=gate_id,
        status=entry.status,
        failed=len(entry.failed_checks),
        total=len(checks),
    )


def check_all_gates(project_dir: Path, config: TaskgateConfig | None = None) -> AllGatesResult:
    config = config or TaskgateConfig.default()
    project_dir = project_dir.resolve()
    store = _store(project_dir, config)
    state = load_gate_state(store) or GateState()
    for gate_id in ("A", "B", "C"):
        _evaluate(state, gate_id, project_dir, config)
    save_gate_state(store, state)
    return AllGatesResult.from_state(state)


def check_single_gate(
    project_dir: Path,
    gate_id: GateId,
    config: TaskgateConfig | None = None,
) -> AllGatesResult:
    """Re-evaluate one gate; the other persisted entries are left untouched."""
    if gate_id not in _GATE_CHECKS:
        raise ValueError(f"Unknown gate: {gate_id}")
    config = config or TaskgateConfig.default()
    project_dir = project_dir.resolve()
    store = _store(project_dir, config)
    state = load_gate_state(store) or GateState()
    _evaluate(state, gate_id, project_dir, config)
    save_gate_state(store, state)
    return AllGatesResult.from_state(state)


def load_gate_result(
    project_dir: Path, config: TaskgateConfig | None = None
) -> AllGatesResult | None:
    config = config or TaskgateConfig.default()
    state = load_gate_state(_store(project_dir, config))
    if state is None:
        return None
    return AllGatesResult.from_state(state)


def reset_gates(project_dir: Path, config: TaskgateConfig | None = None) -> GateState:
    config = config or TaskgateConfig.default()
    store = _store(project_dir, config)
    state = load_gate_state(store) or GateState()
    state.reset()
    save_gate_state(store, state)
    logger.info("gates_reset")
    return state
