from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from pfm.config import PfmConfig, config_path, load_config, save_config
from pfm.gates import GATE_ORDER, gate_to_role
from pfm.state import Commands, StateStore, ValidationError, WorkItem

ROLE_DUTIES: dict[str, tuple[str, str]] = {
    "prd": (
        "Write the product requirements and acceptance criteria for the work item.",
        "Requirements and acceptance criteria are written down.",
    ),
    "plan": (
        "Turn the requirements into an implementation plan and a task breakdown.",
        "The plan and task list cover every acceptance criterion.",
    ),
    "env": (
        "Prepare the working environment: branch, dependencies and services.",
        "The verify command can run in the working directory.",
    ),
    "tests": (
        "Write failing tests that capture the acceptance criteria.",
        "New tests exist and fail for the right reason.",
    ),
    "impl": (
        "Implement the plan until the tests pass. Fix whatever a reroute sent back.",
        "The verify and security commands succeed.",
    ),
    "review_security": (
        "Review the change for correctness and security. Request changes when needed.",
        "The review verdict is recorded as pass or changes_requested.",
    ),
    "qa": (
        "Exercise the change end to end against the acceptance criteria.",
        "Every acceptance criterion is confirmed or a failure is documented.",
    ),
    "git": (
        "Tidy the history, push the branch and open the pull request.",
        "The branch is pushed and the pull request link is in the handoff.",
    ),
}


@dataclass(slots=True)
class InitReport:
    created: list[Path]
    existing: list[Path]


def render_role_spec(gate: str) -> str:
    role = gate_to_role(gate)
    purpose, stop = ROLE_DUTIES[gate]
    return "\n".join(
        [
            f"# Role: {role}",
            "",
            "## Purpose",
            purpose,
            "",
            "## Gate Owned",
            f"`{gate}`",
            "",
            "## Actions",
            "1. Read state.json and the newest handoff note.",
            "2. Do the work described above.",
            "3. Log every command and its output in runlog.md.",
            f"4. Set gate `{gate}` in state.json to its outcome.",
            f"5. Write a handoff note named `<TIMESTAMP>-{role}.md`.",
            "",
            "## Stop Condition",
            f"- {stop}",
            f"- Gate `{gate}` is settled.",
            "- Handoff note written.",
            "",
        ]
    )


def init_project(repo_root: Path) -> InitReport:
    """Create the ``.pfm`` layout, default config and role specs that are missing."""
    pfm_dir = repo_root / ".pfm"
    created: list[Path] = []
    existing: list[Path] = []
    for directory in (pfm_dir, pfm_dir / "roles", pfm_dir / "work"):
        directory.mkdir(parents=True, exist_ok=True)

    path = config_path(repo_root)
    if path.exists():
        existing.append(path)
    else:
        save_config(path, PfmConfig.default())
        created.append(path)

    for gate in GATE_ORDER:
        role_path = pfm_dir / "roles" / f"{gate_to_role(gate)}.md"
        if role_path.exists():
            existing.append(role_path)
            continue
        role_path.write_text(render_role_spec(gate), encoding="utf-8")
        created.append(role_path)
    return InitReport(created=created, existing=existing)


def derive_work_id(title: str) -> str:
    cleaned = re.sub(r"[^0-9A-Za-z ]", "", title)
    short = "-".join(cleaned.split()[:3]).lower()
    return f"FEAT-{short or 'work'}"


def detect_stack(repo_root: Path) -> str | None:
    has_gemfile = (repo_root / "Gemfile").exists()
    package_json = repo_root / "package.json"
    rails_markers = ("config/routes.rb", "bin/rails", "config/application.rb")
    if has_gemfile and any((repo_root / marker).exists() for marker in rails_markers):
        return "rails"
    if package_json.exists():
        content = package_json.read_text(encoding="utf-8", errors="replace")
        return "react_native" if "react-native" in content else "cli_node"
    if has_gemfile:
        return "cli_ruby"
    if (repo_root / "Cargo.toml").exists():
        return "rust"
    if (repo_root / "pyproject.toml").exists() or (repo_root / "setup.py").exists():
        return "python"
    return None


def detect_repo_name(repo_root: Path) -> str:
    try:
        completed = subprocess.run(
            ["git", "remote", "get-url", "origin"],
            cwd=repo_root,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError:
        completed = None
    if completed is not None and completed.returncode == 0 and completed.stdout.strip():
        url = completed.stdout.strip().rstrip("/")
        name = url.rsplit("/", 1)[-1].rsplit(":", 1)[-1]
        return name.removesuffix(".git")
    return repo_root.name or "unknown"


@dataclass(slots=True)
class NewWorkItem:
    item: WorkItem
    stack: str
    stack_source: str


def create_work_item(
    store: StateStore,
    title: str,
    *,
    work_id: str | None = None,
    stack: str | None = None,
    config: PfmConfig | None = None,
) -> NewWorkItem:
    """Create and persist a work item, picking verify/security commands by stack."""
    if not store.pfm_dir.exists():
        raise FileNotFoundError(f"{store.pfm_dir} not found; run `pfm init` first.")
    config = config or load_config(config_path(store.repo_root))
    detected = detect_stack(store.repo_root)
    if stack:
        stack_name, source = stack, "specified"
    elif detected:
        stack_name, source = detected, "detected"
    else:
        stack_name, source = config.project.default_stack, "default"
    stack_config = config.stack(stack_name)

    item = WorkItem.new(
        work_id or derive_work_id(title),
        title,
        repo=detect_repo_name(store.repo_root),
        commands=Commands(verify=stack_config.verify, security=stack_config.security),
    )
    created = store.create(item)
    return NewWorkItem(item=created, stack=stack_name, stack_source=source)


def list_work_items(store: StateStore) -> list[tuple[str, WorkItem | None]]:
    """Return every work item; unreadable records come back as ``None``."""
    items: list[tuple[str, WorkItem | None]] = []
    for work_id in store.list_ids():
        try:
            items.append((work_id, store.load(work_id)))
        except ValidationError:
            items.append((work_id, None))
    return items
