from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

ProfileName = Literal["app", "lp", "hp", "api", "cli"]


@dataclass(slots=True)
class ProjectConfig:
    state_dir: str = ".framework"
    default_profile: ProfileName = "app"


@dataclass(slots=True)
class GatesConfig:
    manifest_files: list[str] = field(
        default_factory=lambda: ["package.json", "pyproject.toml"]
    )
    dependency_markers: list[str] = field(default_factory=lambda: ["node_modules", ".venv"])
    env_files: list[str] = field(default_factory=lambda: [".env", ".env.example"])
    ci_paths: list[str] = field(default_factory=lambda: [".github/workflows"])
    container_files: list[str] = field(
        default_factory=lambda: [
            "docker-compose.yml",
            "docker-compose.yaml",
            "compose.yml",
            "compose.yaml",
        ]
    )
    spec_dirs: list[str] = field(
        default_factory=lambda: [
            "docs/design/features",
            "docs/common-features",
            "docs/project-features",
            "docs/ssot",
            "docs/03_ssot",
        ]
    )
    min_spec_lines: int = 10
    placeholders: list[str] = field(
        default_factory=lambda: ["tbd", "todo", "[要確認]", "未定", "（未記入）", "n/a"]
    )


@dataclass(slots=True)
class SyncConfig:
    gh_binary: str = "gh"
    creation_delay_seconds: float = 1.0
    backoff_base_seconds: float = 2.0
    max_attempts: int = 5
    command_timeout_seconds: float = 60.0


@dataclass(slots=True)
class RunConfig:
    enforce_gates: bool = True
    audit_score: int = 100


@dataclass(slots=True)
class TaskgateConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    gates: GatesConfig = field(default_factory=GatesConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    run: RunConfig = field(default_factory=RunConfig)

    @classmethod
    def default(cls) -> TaskgateConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TaskgateConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            gates=GatesConfig(**data.get("gates", {})),
            sync=SyncConfig(**data.get("sync", {})),
            run=RunConfig(**data.get("run", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "state_dir": self.project.state_dir,
                "default_profile": self.project.default_profile,
            },
            "gates": {
                "manifest_files": list(self.gates.manifest_files),
                "dependency_markers": list(self.gates.dependency_markers),
                "env_files": list(self.gates.env_files),
                "ci_paths": list(self.gates.ci_paths),
                "container_files": list(self.gates.container_files),
                "spec_dirs": list(self.gates.spec_dirs),
                "min_spec_lines": self.gates.min_spec_lines,
                "placeholders": list(self.gates.placeholders),
            },
            "sync": {
                "gh_binary": self.sync.gh_binary,
                "creation_delay_seconds": self.sync.creation_delay_seconds,
                "backoff_base_seconds": self.sync.backoff_base_seconds,
                "max_attempts": self.sync.max_attempts,
                "command_timeout_seconds": self.sync.command_timeout_seconds,
            },
            "run": {
                "enforce_gates": self.run.enforce_gates,
                "audit_score": self.run.audit_score,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TaskgateConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "gates", "sync", "run"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TaskgateConfig:
    if not path.exists():
        return TaskgateConfig.default()
    return TaskgateConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: TaskgateConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
