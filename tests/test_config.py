from pathlib import Path

from tfnav.config import build_options_from_config, get_env_config


def test_defaults(monkeypatch) -> None:
    for name in ("IGNORE_PATTERNS", "EXPAND_MODULES", "WORKER_THRESHOLD", "STATE_PATH"):
        monkeypatch.delenv(name, raising=False)

    config = get_env_config()
    assert config["ignore_patterns"] == ["**/.terraform/**"]
    assert config["expand_modules"] is False
    assert config["worker_threshold"] == 500
    assert config["state_path"] == Path(".tfnav")


def test_overrides(monkeypatch) -> None:
    monkeypatch.setenv("IGNORE_PATTERNS", "examples/**, test/**")
    monkeypatch.setenv("INCLUDE_DATA_SOURCES", "false")
    monkeypatch.setenv("EXPAND_MODULES", "TRUE")
    monkeypatch.setenv("WATCHER_DEBOUNCE_SECONDS", "1.5")

    config = get_env_config()
    assert config["ignore_patterns"] == ["examples/**", "test/**"]
    assert config["watcher_debounce"] == 1.5

    options = build_options_from_config(config)
    assert options.include_data_sources is False
    assert options.expand_modules is True
    assert options.continue_on_error is True
