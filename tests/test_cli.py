"""
Tests for the CLI interface.
"""

import json
from datetime import datetime
from decimal import Decimal

import pytest
import yaml
from typer.testing import CliRunner

from cloud_quota.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, app
from cloud_quota.core.quota_types import BACKUP_OBJECT, RUNNING_VM
from cloud_quota.storage.models import UsageEntry, UsageRecord
from cloud_quota.storage.quota_repository import QuotaUsageWriter
from cloud_quota.storage.repository import UsageEntryStore, UsageRecordStore
from cloud_quota.storage.tariff_repository import QuotaTariffStore

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path, db_path):
    """Configuration pointing the CLI at the test database."""
    path = tmp_path / "quota.yaml"
    path.write_text(yaml.dump({
        "database": {"path": db_path},
        "aggregation": {"workers": 2},
        "logging": {"level": "ERROR"}
    }), encoding="utf-8")
    return str(path)


def _invoke(config_file, *args):
    return runner.invoke(app, ["--config", config_file, *args])


def _create_vm_tariff(config_file, value="0.05"):
    return _invoke(
        config_file, "tariff-create",
        "--name", "vm", "--usage-type", "RUNNING_VM", "--value", value, "--start", "2024-01-01"
    )


class TestCLI:
    """Test CLI commands."""

    def test_init_command(self, tmp_path):
        path = tmp_path / "init.yaml"
        path.write_text(yaml.dump({"database": {"path": str(tmp_path / "new.db")}}), encoding="utf-8")

        result = runner.invoke(app, ["--config", str(path), "init"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert (tmp_path / "new.db").exists()

    def test_invalid_config_fails(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.dump({"budget": {"daily": 1}}), encoding="utf-8")

        result = runner.invoke(app, ["--config", str(path), "init"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid configuration" in result.output

    def test_tariff_create_and_list(self, config_file, db_path):
        result = _create_vm_tariff(config_file)

        assert result.exit_code == EXIT_CODE_PASS
        assert "Created" in result.output
        tariff = QuotaTariffStore(db_path).find_by_name("vm")
        assert tariff.usage_type == RUNNING_VM
        assert tariff.currency_value == Decimal("0.05")
        assert tariff.effective_from == datetime(2024, 1, 1)

        result = _invoke(config_file, "tariff-list", "--usage-type", "1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Quota tariffs" in result.output

    @pytest.mark.parametrize("args", [
        ["--usage-type", "UNKNOWN", "--value", "1"],
        ["--usage-type", "999", "--value", "1"],
        ["--usage-type", "RUNNING_VM", "--value", "cheap"],
        ["--usage-type", "RUNNING_VM", "--value", "1", "--execute-on", "3"],
        ["--usage-type", "RUNNING_VM", "--value", "1", "--period", "WEEKLY"],
        ["--usage-type", "RUNNING_VM", "--value", "1", "--rule", "value.protectedSize > 0"],
    ])
    def test_tariff_create_rejects_invalid_input(self, config_file, args):
        result = _invoke(config_file, "tariff-create", "--name", "vm", *args)

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error" in result.output

    def test_tariff_update_creates_new_version(self, config_file, db_path):
        _create_vm_tariff(config_file)

        result = _invoke(config_file, "tariff-update", "--name", "vm", "--value", "1", "--start", "2024-02-01")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Updated" in result.output
        store = QuotaTariffStore(db_path)
        current = store.find_by_name("vm")
        assert current.version == 2
        assert current.currency_value == Decimal("1")
        assert len(store.list_tariffs(name="vm", include_removed=True)) == 2

    def test_tariff_update_unknown_name_fails(self, config_file):
        result = _invoke(config_file, "tariff-update", "--name", "missing", "--value", "1")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "no active quota tariff" in result.output

    def test_variables_command(self):
        result = runner.invoke(app, ["variables", "account.name == 'admin' && value.osName", "-u", "RUNNING_VM"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "account.name" in result.output
        assert "value.osName" in result.output

    def test_variables_command_flags_unknown_variables(self):
        result = runner.invoke(app, ["variables", "value.protectedSize > 0", "-u", "RUNNING_VM"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown preset variables: value.protectedSize" in result.output

    def test_variables_command_rejects_invalid_rule(self):
        result = runner.invoke(app, ["variables", "account.name =="])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error" in result.output

    def test_preset_variables_command(self):
        result = runner.invoke(app, ["preset-variables", "--usage-type", "BACKUP_OBJECT"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Preset variables" in result.output

    def test_parse_command(self, config_file, db_path):
        UsageRecordStore(db_path).persist(UsageRecord(
            resource_id=40,
            resource_type=BACKUP_OBJECT,
            account_id=1,
            domain_id=2,
            zone_id=3,
            created_at=datetime(2024, 3, 1, 0, 0),
            removed_at=datetime(2024, 3, 1, 1, 0),
            quantity=100
        ))

        result = _invoke(config_file, "parse", "--account", "1", "--start", "2024-03-01", "--end", "2024-03-02")

        assert result.exit_code == EXIT_CODE_PASS
        entries = UsageEntryStore(db_path).list_entries(account_id=1)
        assert [entry.usage_display for entry in entries] == ["1.000000 Hrs"]

    def test_aggregate_command(self, config_file, db_path):
        _create_vm_tariff(config_file)
        UsageEntryStore(db_path).persist_entry(UsageEntry(
            account_id=1,
            domain_id=2,
            zone_id=3,
            usage_type=RUNNING_VM,
            description="Running VM",
            usage_display="2.500000 Hrs",
            raw_usage=2.5,
            start_date=datetime(2024, 3, 1),
            end_date=datetime(2024, 3, 2),
            interval_start=datetime(2024, 3, 1, 8, 0),
            interval_end=datetime(2024, 3, 1, 10, 30)
        ))

        result = _invoke(config_file, "aggregate", "--start", "2024-03-01", "--end", "2024-03-02")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Total quota used: 0.12500000" in result.output
        assert QuotaUsageWriter(db_path).get_period_summary(1)["total_quota_used"] == Decimal("0.125")

    def test_aggregate_rejects_empty_window(self, config_file):
        result = _invoke(config_file, "aggregate", "--start", "2024-03-02", "--end", "2024-03-01")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Aggregation window" in result.output

    def test_quote_command(self, config_file, tmp_path):
        _create_vm_tariff(config_file)
        resources = tmp_path / "resources.json"
        resources.write_text(json.dumps([{"usageType": "RUNNING_VM", "volumeToQuote": 24, "id": "web"}]))

        result = _invoke(config_file, "quote", str(resources))

        assert result.exit_code == EXIT_CODE_PASS
        assert "1.20000000" in result.output

    def test_quote_command_missing_file(self, config_file, tmp_path):
        result = _invoke(config_file, "quote", str(tmp_path / "missing.json"))

        assert result.exit_code == EXIT_CODE_FAIL
