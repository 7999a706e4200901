"""Operator console: commands run against the test database."""

from decimal import Decimal
from uuid import uuid4

import pytest

from scripts.stockctl import main
from stock_kernel.models.item import Item


@pytest.fixture
def cli_env(monkeypatch, engine, database_url):
    """Point the console at the per-test database through the environment."""
    monkeypatch.delenv("STOCK_CONFIG_FILE", raising=False)
    monkeypatch.setenv("STOCK_DATABASE_URL", database_url)


class TestVerifyLedger:
    def test_consistent_ledger_exits_zero(self, cli_env, stocked_item, capsys):
        assert main(["verify-ledger"]) == 0
        assert "Checked 1 item(s); 0 mismatch(es)." in capsys.readouterr().out

    def test_drift_exits_one_and_names_item(
        self, cli_env, stocked_item, session_factory, capsys
    ):
        with session_factory() as s:
            s.get(Item, stocked_item.id).stock_quantity = Decimal("3")
            s.commit()

        assert main(["verify-ledger"]) == 1
        out = capsys.readouterr().out
        assert "1 mismatch(es)" in out
        assert "WIDGET" in out


class TestSyncStatus:
    def test_counts_pending_entries(self, cli_env, stocked_item, capsys):
        assert main(["sync-status"]) == 0
        out = capsys.readouterr().out
        assert "Sync log:" in out
        pending_line = next(line for line in out.splitlines() if line.strip().startswith("pending "))
        assert pending_line.split()[-1] == "1"

    def test_retry_unknown_entry_fails(self, cli_env, capsys):
        assert main(["retry", str(uuid4())]) == 1
        assert "Sync log not found" in capsys.readouterr().err


class TestArguments:
    def test_invalid_config_exits_two(self, cli_env, tmp_path, capsys):
        bad = tmp_path / "bad.yaml"
        bad.write_text("sync:\n  max_workers: 0\n")
        assert main(["--config", str(bad), "sync-status"]) == 2
        assert "sync.max_workers" in capsys.readouterr().err

    def test_missing_config_exits_two(self, cli_env, tmp_path):
        assert main(["--config", str(tmp_path / "absent.yaml"), "sync-status"]) == 2

    def test_command_is_required(self):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 2

    def test_retry_requires_uuid(self):
        with pytest.raises(SystemExit):
            main(["retry", "not-a-uuid"])
