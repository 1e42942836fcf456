from __future__ import annotations

from pathlib import Path

import pytest

from game_designer.__main__ import main, parse_args
from game_designer.settings import DEFAULT_ORACLE_MODEL, DesignerSettings

_ENV_NAMES = (
    "DESIGNER_STATE_ROOT",
    "DESIGNER_ORACLE_MODEL",
    "DESIGNER_ORACLE_BASE_URL",
    "DESIGNER_ORACLE_TIMEOUT_SECONDS",
    "DESIGNER_ORACLE_MAX_RETRIES",
    "DESIGNER_ORACLE_TEMPERATURE",
    "DESIGNER_ORACLE_MAX_TOKENS",
    "DESIGNER_ORACLE_OUTPUT_METHOD",
    "DESIGNER_CONTEXT_WINDOW",
    "DESIGNER_EXPAND_BRIEF",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = DesignerSettings.from_env()

    assert settings.state_root == "state_store"
    assert settings.oracle_model == DEFAULT_ORACLE_MODEL
    assert settings.oracle_base_url == "https://openrouter.ai/api/v1"
    assert settings.oracle_timeout_seconds == 120.0
    assert settings.oracle_max_retries == 0
    assert settings.oracle_output_method == "json_mode"
    assert settings.context_window == 0
    assert settings.expand_brief is True


def test_from_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DESIGNER_STATE_ROOT", " /tmp/designer ")
    monkeypatch.setenv("DESIGNER_ORACLE_BASE_URL", "http://localhost:11434/v1/")
    monkeypatch.setenv("DESIGNER_ORACLE_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("DESIGNER_ORACLE_OUTPUT_METHOD", "JSON_SCHEMA")
    monkeypatch.setenv("DESIGNER_CONTEXT_WINDOW", "40")
    monkeypatch.setenv("DESIGNER_EXPAND_BRIEF", "off")

    settings = DesignerSettings.from_env()

    assert settings.state_root_path() == Path("/tmp/designer")
    assert settings.oracle_base_url == "http://localhost:11434/v1"
    assert settings.oracle_timeout_seconds == 30.0
    assert settings.oracle_output_method == "json_schema"
    assert settings.context_window == 40
    assert settings.expand_brief is False


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("DESIGNER_ORACLE_TIMEOUT_SECONDS", "0"),
        ("DESIGNER_ORACLE_TIMEOUT_SECONDS", "soon"),
        ("DESIGNER_ORACLE_MAX_RETRIES", "-1"),
        ("DESIGNER_ORACLE_TEMPERATURE", "3"),
        ("DESIGNER_ORACLE_OUTPUT_METHOD", "xml"),
        ("DESIGNER_ORACLE_BASE_URL", "openrouter.ai"),
        ("DESIGNER_CONTEXT_WINDOW", "-5"),
        ("DESIGNER_EXPAND_BRIEF", "maybe"),
        ("DESIGNER_STATE_ROOT", "  "),
    ],
)
def test_invalid_values_fail_fast(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        DesignerSettings.from_env()


def test_relative_state_root_resolves_against_base(tmp_path: Path) -> None:
    assert DesignerSettings().state_root_path(tmp_path) == tmp_path / "state_store"


def test_cli_help_lists_every_tool(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["test", "--tool", "help"]) == 0

    output = capsys.readouterr().out
    for name in ("designNew", "designOverview", "nextFeature", "featureReview", "reviewReply", "featureAsk"):
        assert name in output


def test_cli_parses_transport_subcommands() -> None:
    http = parse_args(["http", "--port", "9000"])
    stdio = parse_args(["stdio", "--debug"])

    assert (http.command, http.host, http.port) == ("http", "127.0.0.1", 9000)
    assert (stdio.command, stdio.debug, stdio.log_dir) == ("stdio", True, Path("logs"))


def test_cli_fails_without_api_key(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.setattr("game_designer.__main__.load_dotenv", lambda *args, **kwargs: False)

    assert main(["test", "--tool", "designOverview", "--session-name", "demo"]) == 1
