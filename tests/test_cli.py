"""Tests for the command line entry point, run against the mock provider."""

import json

import pytest

from wallet_pnl.cli import build_parser, main


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "cli.db"))
    monkeypatch.setenv("DATA_PROVIDER", "mock")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    return tmp_path


def _run(capsys, *argv) -> dict:
    with pytest.raises(SystemExit) as exc:
        main(list(argv))
    assert exc.value.code == 0
    return json.loads(capsys.readouterr().out)


class TestParser:
    def test_lag_window_parsed(self):
        args = build_parser().parse_args(["lag", "--from", "2025-01-15T14:00:00Z", "--to", "1736953200"])
        assert args.start.hour == 14
        assert args.end.hour == 15

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCommands:
    def test_add_wallet_then_sync(self, workdir, capsys):
        added = _run(capsys, "add-wallet", "0x" + "C" * 40, "--alias", "whale")
        assert added["address"] == "0x" + "c" * 40

        result = _run(capsys, "sync")
        assert result["trades"]["totalNew"] == 20
        assert result["positions"]["totalParked"] == 0
        assert result["snapshots"]["totalCreated"] == 1

        again = _run(capsys, "sync")
        assert again["trades"]["totalNew"] == 0

        status = _run(capsys, "status")
        assert status["jobs"]["full_sync"]["lastError"] is None

    def test_lag_on_empty_database(self, workdir, capsys):
        report = _run(capsys, "lag")
        assert report["stats"]["total"] == 0
        assert report["lagData"] == []

    def test_bad_config_exits_with_error(self, workdir, monkeypatch):
        monkeypatch.setenv("DATA_PROVIDER", "carrier-pigeon")
        with pytest.raises(SystemExit) as exc:
            main(["status"])
        assert exc.value.code != 0
