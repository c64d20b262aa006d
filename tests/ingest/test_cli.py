"""Tests for the hlsingest command-line interface."""

import json

import pytest

from hlsingest import cli


@pytest.fixture
def run_cli(tmp_path, storage_service, pipeline_config, capsys):
    """Invoke the CLI against a throwaway SQLite database; returns (code, payload)."""
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"

    def run(*argv: str):
        capsys.readouterr()
        code = cli.main(
            ["--database-url", database_url, "--log-level", "WARNING", *argv],
            storage=storage_service,
            config=pipeline_config,
        )
        return code, json.loads(capsys.readouterr().out)

    code, _ = run("init-db")
    assert code == cli.EXIT_OK
    return run


class TestCli:

    def test_submit_and_status(self, run_cli) -> None:
        code, submitted = run_cli("submit", "--asset-id", "A1", "--source", "/media/a.mp4", "--ladder", "720p,360p")
        assert code == cli.EXIT_OK
        assert submitted["status"] == "QUEUED"
        assert submitted["requested_ladder"] == ["360p", "720p"]

        code, status = run_cli("status", "--asset-id", "A1")
        assert code == cli.EXIT_OK
        assert status["asset_id"] == "A1"

    def test_duplicate_submit(self, run_cli) -> None:
        run_cli("submit", "--asset-id", "A1", "--source", "/media/a.mp4")

        code, payload = run_cli("submit", "--asset-id", "A1", "--source", "/media/b.mp4")

        assert code == cli.EXIT_ALREADY_EXISTS
        assert payload["error_kind"] == "AssetAlreadyExists"

    def test_invalid_request(self, run_cli) -> None:
        code, payload = run_cli("submit", "--asset-id", "bad id", "--source", "/media/a.mp4")

        assert code == cli.EXIT_INVALID
        assert payload["error_kind"] == "InvalidRequest"

    def test_unknown_asset(self, run_cli) -> None:
        code, payload = run_cli("status", "--asset-id", "missing")

        assert code == cli.EXIT_UNKNOWN
        assert payload["error_kind"] == "UnknownAsset"

    def test_delete_busy_then_cancelled(self, run_cli) -> None:
        run_cli("submit", "--asset-id", "A1", "--source", "/media/a.mp4")

        busy_code, _ = run_cli("delete", "--asset-id", "A1")
        _, cancelled = run_cli("cancel", "--asset-id", "A1")
        code, deleted = run_cli("delete", "--asset-id", "A1")

        assert busy_code == cli.EXIT_BUSY
        assert cancelled["status"] == "CANCELLED"
        assert code == cli.EXIT_OK
        assert deleted == {"asset_id": "A1", "deleted": True}

    def test_stats(self, run_cli) -> None:
        run_cli("submit", "--asset-id", "A1", "--source", "/media/a.mp4")

        code, stats = run_cli("stats")

        assert code == cli.EXIT_OK
        assert stats["total"] == 1
        assert stats["by_status"]["QUEUED"] == 1


class TestParser:

    def test_ladder_is_split_on_commas(self) -> None:
        args = cli.build_parser().parse_args(["submit", "--asset-id", "A1", "--source", "s", "--ladder", "360p,720p"])

        assert cli._parse_ladder(args.ladder) == ["360p", "720p"]
        assert cli._parse_ladder(None) is None

    def test_command_is_required(self) -> None:
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])

    @pytest.mark.parametrize("command", ["status", "cancel", "delete", "retry"])
    def test_asset_commands_take_asset_id_option(self, command) -> None:
        args = cli.build_parser().parse_args([command, "--asset-id", "A1"])

        assert args.asset_id == "A1"

    @pytest.mark.parametrize("command", ["status", "cancel", "delete", "retry"])
    def test_positional_asset_id_is_rejected(self, command) -> None:
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([command, "A1"])
