from __future__ import annotations

from typing import get_args

from taskgate.config import ProfileName, TaskgateConfig
from taskgate.state.store import PROJECT_DOCUMENT, ProjectStore

KNOWN_PROFILES: frozenset[str] = frozenset(get_args(ProfileName))

# Test-first ordering is mandatory for every feature of these profiles.
TDD_PROFILES: frozenset[str] = frozenset({"api", "cli"})

# Static-content profiles carry no feature specs, so Gate C passes without scanning.
SPEC_EXEMPT_PROFILES: frozenset[str] = frozenset({"lp", "hp"})

# Boundary-value section is optional for these profiles.
BOUNDARY_WAIVED_PROFILES: frozenset[str] = frozenset({"api", "cli"})

# Feature types whose contract/core layer is change-sensitive.
TDD_FEATURE_TYPES: frozenset[str] = frozenset({"common"})


def load_profile_type(store: ProjectStore) -> str | None:
    payload = store.read_json(PROJECT_DOCUMENT)
    if not isinstance(payload, dict):
        return None
    value = payload.get("profileType", payload.get("profile_type"))
    if isinstance(value, str) and value in KNOWN_PROFILES:
        return value
    return None


def resolve_profile_type(store: ProjectStore, config: TaskgateConfig) -> str:
    """Profile recorded in project.json, else the configured default."""
    return load_profile_type(store) or config.project.default_profile
