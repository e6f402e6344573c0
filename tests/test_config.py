import tomllib
from pathlib import Path

import pytest

from pfm import __version__
from pfm.config import PfmConfig, StackConfig, config_path, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    path = config_path(tmp_path)
    config = PfmConfig.default()
    config.project.default_stack = "python"
    config.orchestration.poll_interval_seconds = 2.5
    config.orchestration.timeout_seconds = 0.0
    config.orchestration.max_reroutes = 3
    config.orchestration.qa_reroute = "qa_only"
    config.agent.backend_order = ["direct"]
    config.agent.probe_retries = 2
    config.stacks["go"] = StackConfig(verify="go test ./...", security="govulncheck ./...")

    save_config(path, config)
    loaded = load_config(path)

    assert path == tmp_path / ".pfm" / "config.toml"
    assert loaded.project.default_stack == "python"
    assert loaded.orchestration.poll_interval_seconds == 2.5
    assert loaded.orchestration.timeout_seconds == 0.0
    assert loaded.orchestration.max_reroutes == 3
    assert loaded.orchestration.qa_reroute == "qa_only"
    assert loaded.agent.backend_order == ["direct"]
    assert loaded.agent.probe_retries == 2
    assert loaded.stack("go").verify == "go test ./..."
    assert loaded.stack("rails").security == "bundle exec brakeman -q"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    config = load_config(config_path(tmp_path))

    assert config.project.default_stack == "rails"
    assert config.orchestration.poll_interval_seconds == 5.0
    assert config.orchestration.timeout_seconds == 1800.0
    assert config.agent.backend_order == ["tmux", "direct"]
    assert set(config.stacks) == {"rails", "react_native", "cli_node", "cli_ruby", "rust", "python"}


def test_toml_dump_is_valid_and_keeps_floats() -> None:
    rendered = dumps_toml(PfmConfig.default())
    parsed = tomllib.loads(rendered)

    assert "[stacks.rails]" in rendered
    assert isinstance(parsed["orchestration"]["poll_interval_seconds"], float)
    assert isinstance(parsed["agent"]["probe_backoff_seconds"], float)
    assert parsed["agent"]["backend_order"] == ["tmux", "direct"]
    assert parsed["stacks"]["python"]["verify"] == "pytest -q"


def test_unknown_stack_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown stack: cobol"):
        PfmConfig.default().stack("cobol")


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]


def test_unknown_qa_reroute_mode_is_rejected_on_load(tmp_path: Path) -> None:
    path = config_path(tmp_path)
    path.parent.mkdir(parents=True)
    path.write_text('[orchestration]\nqa_reroute = "Strict"\n', encoding="utf-8")

    with pytest.raises(ValueError, match="qa_reroute"):
        load_config(path)


@pytest.mark.parametrize(
    "text",
    [
        "[orchestration\npoll_interval_seconds = 1.0\n",
        "[orchestration]\npoll_every = 1.0\n",
    ],
)
def test_malformed_config_raises_value_error(tmp_path: Path, text: str) -> None:
    path = config_path(tmp_path)
    path.parent.mkdir(parents=True)
    path.write_text(text, encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid config"):
        load_config(path)
