from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from pfm.reroute import QA_REROUTE_MODES, QaRerouteMode

BackendName = Literal["tmux", "direct"]
RunModeName = Literal["auto", "classic", "teams"]
RUN_MODES = ("auto", "classic", "teams")


@dataclass(slots=True)
class StackConfig:
    verify: str = ""
    security: str = ""


def _default_stacks() -> dict[str, StackConfig]:
    return {
        "rails": StackConfig(verify="bundle exec rspec", security="bundle exec brakeman -q"),
        "react_native": StackConfig(verify="npm test", security="npm audit"),
        "cli_node": StackConfig(verify="npm test", security="npm audit"),
        "cli_ruby": StackConfig(verify="bundle exec rspec", security="bundle exec brakeman -q"),
        "rust": StackConfig(verify="cargo test", security="cargo audit"),
        "python": StackConfig(verify="pytest -q", security="pip-audit"),
    }


@dataclass(slots=True)
class ProjectConfig:
    default_stack: str = "rails"


@dataclass(slots=True)
class OrchestrationConfig:
    poll_interval_seconds: float = 5.0
    timeout_seconds: float = 1800.0
    max_reroutes: int = 5
    qa_reroute: QaRerouteMode = "strict"
    default_mode: RunModeName = "classic"

    def __post_init__(self) -> None:
        if self.qa_reroute not in QA_REROUTE_MODES:
            raise ValueError(
                f"Unknown orchestration.qa_reroute: {self.qa_reroute!r} (use strict or qa_only)"
            )
        if self.default_mode not in RUN_MODES:
            raise ValueError(
                f"Unknown orchestration.default_mode: {self.default_mode!r} "
                "(use auto, classic or teams)"
            )


@dataclass(slots=True)
class AgentConfig:
    binary: str = "claude"
    session_prefix: str = "pfm"
    backend_order: list[BackendName] = field(default_factory=lambda: ["tmux", "direct"])
    probe_retries: int = 1
    probe_backoff_seconds: float = 0.5


@dataclass(slots=True)
class PfmConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    stacks: dict[str, StackConfig] = field(default_factory=_default_stacks)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)

    @classmethod
    def default(cls) -> PfmConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PfmConfig:
        stacks_data = data.get("stacks")
        stacks = (
            {name: StackConfig(**values) for name, values in stacks_data.items()}
            if isinstance(stacks_data, dict)
            else _default_stacks()
        )
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            stacks=stacks,
            orchestration=OrchestrationConfig(**data.get("orchestration", {})),
            agent=AgentConfig(**data.get("agent", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "default_stack": self.project.default_stack,
            },
            "orchestration": {
                "poll_interval_seconds": self.orchestration.poll_interval_seconds,
                "timeout_seconds": self.orchestration.timeout_seconds,
                "max_reroutes": self.orchestration.max_reroutes,
                "qa_reroute": self.orchestration.qa_reroute,
                "default_mode": self.orchestration.default_mode,
            },
            "agent": {
                "binary": self.agent.binary,
                "session_prefix": self.agent.session_prefix,
                "backend_order": list(self.agent.backend_order),
                "probe_retries": self.agent.probe_retries,
                "probe_backoff_seconds": self.agent.probe_backoff_seconds,
            },
            "stacks": {
                name: {"verify": stack.verify, "security": stack.security}
                for name, stack in self.stacks.items()
            },
        }

    def stack(self, name: str) -> StackConfig:
        try:
            return self.stacks[name]
        except KeyError as exc:
            known = ", ".join(sorted(self.stacks))
            raise ValueError(f"Unknown stack: {name} (known: {known})") from exc


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


def dumps_toml(config: PfmConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["project", "orchestration", "agent"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for name, values in data["stacks"].items():
        lines.append(f"[stacks.{name}]")
        for key, value in values.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def config_path(repo_root: Path) -> Path:
    return repo_root / ".pfm" / "config.toml"


def load_config(path: Path) -> PfmConfig:
    if not path.exists():
        return PfmConfig.default()
    try:
        return PfmConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))
    except (tomllib.TOMLDecodeError, TypeError) as exc:
        raise ValueError(f"Invalid config {path}: {exc}") from exc


def save_config(path: Path, config: PfmConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
