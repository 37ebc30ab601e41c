"""Tests for the command-line entry point."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from bookloom import app
from bookloom.services.settings import Settings, SettingsStore

from helpers import ScriptedGeneration, Turn, envelope

DOCUMENT = "The rain had not stopped.\n\nMara counted the buckets.\n\n\n\nNobody answered the door.\n"


class _FakeClient:
    """Stands in for AIClient; replays scripted turns."""

    instances: list["_FakeClient"] = []
    turns: list = []
    logging_calls: list = []

    def __init__(self, settings) -> None:
        self.settings = settings
        self.generate = ScriptedGeneration(type(self).turns)
        self.closed = False
        type(self).instances.append(self)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_client(monkeypatch: pytest.MonkeyPatch):
    _FakeClient.instances = []
    _FakeClient.turns = []
    monkeypatch.setattr(app, "AIClient", _FakeClient)
    _FakeClient.logging_calls = []
    monkeypatch.setattr(
        app, "configure_logging", lambda debug=False, **kwargs: _FakeClient.logging_calls.append((debug, kwargs))
    )
    return _FakeClient


@pytest.fixture
def settings_path(tmp_path: Path) -> Path:
    return tmp_path / "settings.json"


def _happy_path(**texts: str) -> list[str]:
    return [envelope("planning"), envelope("working", **texts), envelope("review"), envelope("end")]


# =============================================================================
# Helpers
# =============================================================================


class TestReadUnits:
    def test_splits_on_blank_lines(self) -> None:
        units = app.read_units(DOCUMENT)

        assert [unit.id for unit in units] == ["p1", "p2", "p3"]
        assert units[2].text == "Nobody answered the door."

    def test_keeps_single_newlines(self) -> None:
        units = app.read_units("line one\nline two\n\n  \n\nnext")

        assert [unit.text for unit in units] == ["line one\nline two", "next"]


class TestCliOverrides:
    def test_coerces_types(self) -> None:
        overrides = app._coerce_cli_overrides(
            [
                "model=gpt-4o",
                "debug_logging=yes",
                "request_timeout=2.5",
                "task.chunk_size=1200",
                'metadata={"team": "books"}',
            ]
        )

        assert overrides == {
            "model": "gpt-4o",
            "debug_logging": True,
            "request_timeout": 2.5,
            "task.chunk_size": 1200,
            "metadata": {"team": "books"},
        }

    @pytest.mark.parametrize("entry", ["model", "unknown=1", "task=1", "task.unknown=3", "=x"])
    def test_rejects_bad_entries(self, entry: str) -> None:
        with pytest.raises(ValueError):
            app._coerce_cli_overrides([entry])

    def test_rejects_bad_bool(self) -> None:
        with pytest.raises(ValueError, match="boolean"):
            app._coerce_cli_overrides(["debug_logging=maybe"])

    def test_runner_config_from_task_settings(self) -> None:
        settings = Settings()
        settings.task.max_turns = 9

        config = app.build_runner_config(settings.task, target_language="German")

        assert config.loop.max_turns == 9
        assert config.chunk_size == 8000
        assert config.target_language == "German"
        assert config.tool_limits["list_terms"] == 3


# =============================================================================
# main()
# =============================================================================


class TestMain:
    def test_dump_settings_redacts_api_key(self, fake_client, settings_path: Path, capsys) -> None:
        SettingsStore(settings_path).save(Settings(api_key="sk-abcdef123456"))

        code = app.main(["--settings-path", str(settings_path), "--set", "model=gpt-4o", "dump-settings"])

        output = json.loads(capsys.readouterr().out)
        assert code == app.EXIT_OK
        assert output["settings"]["api_key"] == "sk***********56"
        assert output["settings"]["model"] == "gpt-4o"
        assert output["meta"]["cli_overrides"] == ["model"]
        assert output["meta"]["secret_backend"] == "fernet"

    def test_invalid_override_is_usage_error(self, fake_client, settings_path: Path) -> None:
        code = app.main(["--settings-path", str(settings_path), "--set", "bogus=1", "dump-settings"])

        assert code == app.EXIT_USAGE

    def test_run_writes_result_and_transcript(self, fake_client, settings_path: Path, tmp_path: Path) -> None:
        fake_client.turns = _happy_path(p1="Uno", p2="Dos", p3="Tres")
        source = tmp_path / "chapter.txt"
        source.write_text(DOCUMENT, encoding="utf-8")
        output = tmp_path / "out" / "result.json"
        transcript = tmp_path / "turns.jsonl"

        code = app.main(
            [
                "--settings-path",
                str(settings_path),
                "run",
                str(source),
                "--target-language",
                "Spanish",
                "--output",
                str(output),
                "--transcript",
                str(transcript),
            ]
        )

        assert code == app.EXIT_OK
        result = json.loads(output.read_text(encoding="utf-8"))
        assert result["outcome"] == "success"
        assert result["results"] == {"p1": "Uno", "p2": "Dos", "p3": "Tres"}
        assert len(transcript.read_text(encoding="utf-8").splitlines()) == 4
        client = fake_client.instances[0]
        assert client.closed
        assert "into Spanish" in client.generate.requests[0].messages[0].content

    def test_resume_skips_processed_units(self, fake_client, settings_path: Path, tmp_path: Path) -> None:
        fake_client.turns = _happy_path(p3="Tres")
        source = tmp_path / "chapter.txt"
        source.write_text(DOCUMENT, encoding="utf-8")
        previous = tmp_path / "previous.json"
        previous.write_text(json.dumps({"results": {"p1": "Uno", "p2": "Dos"}, "title": "Lluvia"}), encoding="utf-8")
        output = tmp_path / "result.json"

        code = app.main(
            [
                "--settings-path",
                str(settings_path),
                "run",
                str(source),
                "--title",
                "Rain",
                "--resume",
                str(previous),
                "--output",
                str(output),
            ]
        )

        result = json.loads(output.read_text(encoding="utf-8"))
        assert code == app.EXIT_OK
        assert result["results"] == {"p1": "Uno", "p2": "Dos", "p3": "Tres"}
        assert result["title"] == "Lluvia"
        first_prompt = fake_client.instances[0].generate.requests[0].messages[1].content
        assert "Rain" not in first_prompt
        assert "p1" not in first_prompt

    def test_fatal_outcome_exit_code(self, fake_client, settings_path: Path, tmp_path: Path, capsys) -> None:
        fake_client.turns = [Turn(error=RuntimeError("endpoint down"))]
        source = tmp_path / "chapter.txt"
        source.write_text(DOCUMENT, encoding="utf-8")

        code = app.main(["--settings-path", str(settings_path), "run", str(source)])

        result = json.loads(capsys.readouterr().out)
        assert code == app.EXIT_FATAL
        assert result["outcome"] == "fatal-error"
        assert result["failure"]["error_code"] == "generation_failed"

    def test_missing_input_is_usage_error(self, fake_client, settings_path: Path, tmp_path: Path) -> None:
        code = app.main(["--settings-path", str(settings_path), "run", str(tmp_path / "missing.txt")])

        assert code == app.EXIT_USAGE

    def test_trace_turns_reaches_logging_setup(self, fake_client, settings_path: Path) -> None:
        code = app.main(["--settings-path", str(settings_path), "--trace-turns", "dump-settings"])

        assert code == app.EXIT_OK
        assert fake_client.logging_calls == [(False, {"level": None, "trace_turns": True})]
