import tomllib
from pathlib import Path

from orchestra import __version__
from orchestra.config import OrchestraConfig, dumps_toml, load_config, save_config
from orchestra.monitor import NullMonitor


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "orchestra.toml"
    config = OrchestraConfig.default()
    config.scheduler.max_concurrency = 5
    config.scheduler.use_isolated_workspaces = False
    config.retry.max_retries = 1
    config.retry.backoff_seconds = 0.5
    config.stuck.thinking_timeout_seconds = 240.0
    config.executor.backend = "process"
    config.executor.command = ["sh", "-c", "{instruction}"]
    config.workspace.keep_branches = False
    config.state.dir = "state"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded == config
    assert loaded.executor.command == ["sh", "-c", "{instruction}"]
    assert loaded.retry.backoff_seconds == 0.5


def test_missing_config_file_gives_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config == OrchestraConfig.default()
    assert config.executor.backend == "claude"
    assert config.stuck.idle_timeout_seconds == 120.0


def test_partial_config_keeps_other_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "orchestra.toml"
    config_path.write_text('[executor]\nbackend = "codex"\n', encoding="utf-8")

    config = load_config(config_path)

    assert config.executor.backend == "codex"
    assert config.scheduler.max_concurrency == 3
    assert config.workspace.branch_prefix == "orchestra/"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(OrchestraConfig.default())

    for section in ("scheduler", "retry", "stuck", "executor", "workspace", "state"):
        assert f"[{section}]" in rendered
    assert "max_concurrency = 3" in rendered
    assert "idle_timeout_seconds = 120.0" in rendered
    assert "warning_threshold = 0.75" in rendered
    assert "use_isolated_workspaces = true" in rendered
    assert "command = []" in rendered
    assert tomllib.loads(rendered)["executor"]["backend"] == "claude"


def test_run_config_clamps_values() -> None:
    config = OrchestraConfig.default()
    config.scheduler.max_concurrency = 0
    config.retry.max_retries = -2
    config.retry.check_interval_seconds = 0
    config.stuck.warning_threshold = 2.0
    monitor = NullMonitor()

    run_config = config.to_run_config(monitor)

    assert run_config.max_concurrency == 1
    assert run_config.monitor is monitor
    assert run_config.retry.max_retries == 0
    assert run_config.retry.check_interval_seconds == 0.01
    assert run_config.thresholds.warning_threshold == 1.0
    assert run_config.thresholds.tool_timeout_seconds == 300.0


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
