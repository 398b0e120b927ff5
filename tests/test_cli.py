from pathlib import Path

import pandas as pd
import pytest

from estate_ledger import __version__
from estate_ledger.cli import main
from estate_ledger.db import DatabaseConfig, load_snapshot
from estate_ledger.models import RECORD_KINDS, record_to_mapping


def _export_csv(snapshot, directory: Path) -> None:
    """Write one <kind>.csv per non-empty collection of ``snapshot``."""
    directory.mkdir(parents=True, exist_ok=True)
    for kind in RECORD_KINDS:
        records = getattr(snapshot, kind)
        if records:
            df = pd.DataFrame([record_to_mapping(r) for r in records])
            df.to_csv(directory / f"{kind}.csv", index=False)


@pytest.fixture
def workspace(tmp_path, rental_snapshot):
    """A config file, a CSV snapshot directory and an (empty) database path."""
    _export_csv(rental_snapshot, tmp_path / "snapshot")
    config = tmp_path / "estate_ledger_config.toml"
    config.write_text(
        """
[data]
snapshot_dir = "snapshot"

[database]
path = "db/ledger.sqlite"

[logging]
level = "WARNING"
""",
        encoding="utf-8",
    )
    return tmp_path


def _cli(workspace: Path, *args: str) -> None:
    main(["--config", str(workspace / "estate_ledger_config.toml"), *args])


def test_version(capsys) -> None:
    main(["--version"])
    assert __version__ in capsys.readouterr().out


def test_import_then_balances(workspace, capsys) -> None:
    _cli(workspace, "import", "--notes", "first load")
    out = capsys.readouterr().out
    assert "Imported batch #1" in out
    assert "transactions" in out

    _cli(workspace, "balances", "rental_income")
    out = capsys.readouterr().out
    assert "Alice" in out
    assert "Total balance: 650.00 USD" in out


def test_ledger_and_kpi(workspace, capsys) -> None:
    _cli(workspace, "import")
    capsys.readouterr()

    _cli(workspace, "ledger", "rental_income", "owner-1", "--sort-dir", "asc")
    out = capsys.readouterr().out
    assert out.index("Rental Income") < out.index("Owner Payout")
    assert "Entries: 3 | Balance: 650.00 USD" in out

    _cli(workspace, "kpi", "security_deposit_held", "occupied_units")
    out = capsys.readouterr().out
    assert "Security Liability" in out
    assert "920.0" in out
    assert "Occupied Units" in out


def test_pay_owner_is_persisted(workspace, capsys) -> None:
    _cli(workspace, "import")
    _cli(
        workspace,
        "pay-owner",
        "--contact", "owner-1",
        "--amount", "150",
        "--account", "acc-bank",
        "--date", "2025-02-01",
        "--reference", "r1",
    )
    out = capsys.readouterr().out
    assert "Owner Payout to Alice (Ref: r1)" in out

    stored = load_snapshot(
        DatabaseConfig(engine="sqlite", path=workspace / "db" / "ledger.sqlite")
    )
    assert len(stored.transactions) == 6

    _cli(workspace, "balances", "rental_income")
    assert "Total balance: 500.00 USD" in capsys.readouterr().out


def test_pay_owner_over_balance_is_an_error(workspace) -> None:
    _cli(workspace, "import")

    with pytest.raises(SystemExit) as excinfo:
        _cli(
            workspace,
            "pay-owner",
            "--contact", "owner-1",
            "--amount", "5000",
            "--account", "acc-bank",
        )
    assert str(excinfo.value).startswith("Error: ")
    assert "exceeds balance due" in str(excinfo.value)


def test_pay_broker_batch(workspace, capsys) -> None:
    _cli(workspace, "import")
    _cli(
        workspace,
        "pay-broker",
        "--broker", "broker-1",
        "--account", "acc-bank",
        "--allocate", "ra-1=400",
        "--allocate", "ra-2=100",
    )
    out = capsys.readouterr().out
    assert "Broker Commission for Unit 101" in out
    assert "Total paid: 500.00" in out

    _cli(workspace, "commissions", "broker-1", "--context", "rental")
    out = capsys.readouterr().out
    assert "Unit 102" in out
    assert "150.0" in out


def test_invalid_allocation(workspace) -> None:
    _cli(workspace, "import")
    with pytest.raises(SystemExit, match="Expected AGREEMENT_ID=AMOUNT"):
        _cli(
            workspace,
            "pay-broker",
            "--broker", "broker-1",
            "--account", "acc-bank",
            "--allocate", "ra-1",
        )


def test_check_on_clean_data(workspace, capsys) -> None:
    _cli(workspace, "import")
    _cli(workspace, "check")
    assert "No data-quality issue found." in capsys.readouterr().out


def test_snapshot_dir_mode_is_read_only(workspace, capsys) -> None:
    snapshot_dir = str(workspace / "snapshot")

    _cli(workspace, "--snapshot-dir", snapshot_dir, "balances", "security_deposit")
    assert "Total balance: 1000.00 USD" in capsys.readouterr().out

    with pytest.raises(SystemExit) as excinfo:
        _cli(
            workspace,
            "--snapshot-dir", snapshot_dir,
            "pay-owner",
            "--contact", "owner-1",
            "--amount", "1",
            "--account", "acc-bank",
        )
    assert excinfo.value.code == 2


def test_empty_database_warning(workspace, capsys) -> None:
    _cli(workspace, "kpi", "total_balance")
    out = capsys.readouterr().out
    assert "Warning: database is empty" in out
    assert "No KPI computed." not in out
