"""Tests for the operator CLI."""

import json
from unittest.mock import patch

import pytest

from hitl_broker import cli
from hitl_broker.cli import build_parser, main, select_dir


@pytest.fixture(autouse=True)
def _quiet_logging():
    with patch("hitl_broker.cli.configure_logging"):
        yield


def test_select_dir_flag_wins():
    assert select_dir("positional", "flag") == "flag"
    assert select_dir("positional", None) == "positional"
    assert select_dir("  ", "  ") is None


class TestParser:
    def test_watch_options(self):
        args = build_parser().parse_args(
            ["watch", "some-dir", "--timeout", "30", "--auto-approve", "--log", "audit.jsonl", "--poll-ms", "500"]
        )
        assert args.dir_arg == "some-dir"
        assert args.timeout == 30
        assert args.auto_approve is True
        assert args.log == "audit.jsonl"
        assert args.poll_ms == 500

    def test_runtime_chat_defaults(self):
        args = build_parser().parse_args(["runtime-chat", "http://rt", "svc-a"])
        assert args.stream is True
        assert args.run_id is None
        assert args.events_limit == 200

    def test_runtime_chat_no_stream(self):
        args = build_parser().parse_args(["runtime-chat", "http://rt", "svc-a", "--no-stream", "--run-id", "r1"])
        assert args.stream is False
        assert args.run_id == "r1"

    def test_serve_defaults(self):
        args = build_parser().parse_args(["serve"])
        assert args.port == 7842


class TestLocalCommands:
    def test_list_answer_cancel(self, hitl_dir, capsys):
        (hitl_dir / "review-step-3.question").write_text(
            json.dumps({"key": "review-step-3", "question": "Ship it?", "timestamp": 1708608000000})
        )

        assert main(["list", "--dir", str(hitl_dir)]) == 0
        out = capsys.readouterr().out
        assert f"Handshake directory: {hitl_dir}" in out
        assert "review-step-3" in out and "Ship it?" in out

        assert main(["answer", "review-step-3", "yes", "--dir", str(hitl_dir)]) == 0
        assert "Wrote answer:" in capsys.readouterr().out
        assert json.loads((hitl_dir / "review-step-3.answer").read_text())["response"] == "yes"

        main(["list", str(hitl_dir)])
        assert "No pending questions." in capsys.readouterr().out

        assert main(["cancel", "review-step-3", "--dir", str(hitl_dir)]) == 0
        assert "Cancelled: review-step-3" in capsys.readouterr().out

        main(["cancel", "review-step-3", "--dir", str(hitl_dir)])
        assert "No question found: review-step-3" in capsys.readouterr().out

    def test_configuration_error_exits_1(self, capsys):
        assert main(["runtime-agents", "  "]) == 1
        assert "runtime url is required" in capsys.readouterr().err

    def test_serve_builds_app_and_runs_uvicorn(self, hitl_dir, capsys):
        with patch("uvicorn.run") as run:
            assert main(["serve", "--dir", str(hitl_dir), "--port", "9999", "--token", "t"]) == 0
        app = run.call_args.args[0]
        assert app.state.token == "t"
        assert run.call_args.kwargs["port"] == 9999
        out = capsys.readouterr().out
        assert "http://localhost:9999" in out
        assert "Token auth enabled" in out


def test_module_exposes_main():
    assert callable(cli.main)
