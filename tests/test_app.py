"""Tests covering the command-line bootstrap helpers."""

from __future__ import annotations

import io
import json
from pathlib import Path
from typing import Any

import pytest

from materialsearch import app
from materialsearch.config import Settings, SettingsStore


def test_coerce_cli_overrides_types() -> None:
    overrides = app._coerce_cli_overrides(
        [
            "max_turns=8",
            "turn_timeout_seconds=45",
            "compaction_enabled=no",
            "base_url=null",
            "default_model= gpt-5 ",
            'pricing_overrides={"gpt-5": {"input": 1, "output": 2}}',
        ]
    )

    assert overrides == {
        "max_turns": 8,
        "turn_timeout_seconds": 45.0,
        "compaction_enabled": False,
        "base_url": None,
        "default_model": "gpt-5",
        "pricing_overrides": {"gpt-5": {"input": 1, "output": 2}},
    }


@pytest.mark.parametrize(
    "entry",
    ["max_turns", "=5", "theme=dark", "compaction_enabled=maybe", "max_turns=lots", "pricing_overrides={"],
)
def test_coerce_cli_overrides_rejects_bad_entries(entry: str) -> None:
    with pytest.raises(ValueError):
        app._coerce_cli_overrides([entry])


def test_dump_settings_redacts_secret(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MATERIALSEARCH_MODEL", "gpt-5")
    store = SettingsStore(tmp_path / "settings.json")
    buffer = io.StringIO()

    app._dump_settings(Settings(api_key="sk-abcdef"), store, overrides={"max_turns": 2}, stream=buffer)

    payload = json.loads(buffer.getvalue())
    assert payload["settings"]["api_key"] == "sk*****ef"
    assert payload["meta"] == {
        "path": str(tmp_path / "settings.json"),
        "cli_overrides": ["max_turns"],
        "environment_variables": ["MATERIALSEARCH_MODEL"],
    }


def test_main_dump_settings_does_not_serve(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    served: list[Any] = []
    monkeypatch.setattr(app, "configure_logging", lambda debug=False, force=False: None)
    monkeypatch.setattr(app.uvicorn, "run", lambda *args, **kwargs: served.append((args, kwargs)))

    code = app.main(["--settings-path", str(tmp_path / "s.json"), "--set", "max_turns=4", "--dump-settings"])

    assert code == 0
    assert served == []
    assert json.loads(capsys.readouterr().out)["settings"]["max_turns"] == 4
    assert not (tmp_path / "s.json").exists()


def test_main_persists_overrides_and_serves(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    served: list[dict[str, Any]] = []
    monkeypatch.setattr(app, "configure_logging", lambda debug=False, force=False: None)
    monkeypatch.setattr(app.uvicorn, "run", lambda application, **kwargs: served.append(kwargs))
    settings_path = tmp_path / "s.json"

    code = app.main(["--settings-path", str(settings_path), "--port", "9000", "--set", "default_model=gpt-5"])

    assert code == 0
    assert served == [{"host": "127.0.0.1", "port": 9000, "log_config": None}]
    assert SettingsStore(settings_path).load().default_model == "gpt-5"


def test_main_reports_bad_override(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setattr(app, "configure_logging", lambda debug=False, force=False: None)

    assert app.main(["--set", "nonsense"]) == 2
    assert "KEY=VALUE" in capsys.readouterr().err


def test_load_settings_falls_back_on_os_error(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "settings.json")

    def broken_load(**_: Any) -> Settings:
        raise PermissionError("denied")

    monkeypatch.setattr(store, "load", broken_load)

    assert app.load_settings(store=store) == Settings()
