"""
CLI interface for cloud-quota.

Provides command-line access to parsing, tariff management, aggregation and
quoting.
"""

import sqlite3
import sys
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cloud_quota.config.loader import QuotaConfig, load_quota_config
from cloud_quota.config.log_setup import configure_logging
from cloud_quota.core.activation_rule import ActivationRuleEvaluator, extract_variables, find_unknown_variables
from cloud_quota.core.aggregation import QuotaAggregationEngine
from cloud_quota.core.errors import QuotaError, ValidationError
from cloud_quota.core.preset_variables import PresetVariableBuilder, list_preset_variables
from cloud_quota.core.quota_types import ProcessingPeriod, QuotaType, get_quota_type, get_quota_type_by_name
from cloud_quota.core.quoting import ResourceQuoter, load_resources_to_quote
from cloud_quota.core.tariff import QuotaTariff
from cloud_quota.parsers import create_parsers, parse_all
from cloud_quota.storage.db import utc_now
from cloud_quota.storage.inventory_repository import InventoryRepository
from cloud_quota.storage.quota_repository import QuotaUsageWriter
from cloud_quota.storage.repository import UsageEntryStore, UsageRecordStore, initialize_schema
from cloud_quota.storage.tariff_repository import QuotaTariffStore

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]

_HANDLED_ERRORS = (QuotaError, ValueError, sqlite3.Error, FileNotFoundError, yaml.YAMLError)


def _config(ctx: typer.Context) -> QuotaConfig:
    return ctx.obj or QuotaConfig.default()


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {escape(message)}")
    sys.exit(EXIT_CODE_FAIL)


def _resolve_usage_type(usage_type: str) -> QuotaType:
    """Look up a usage type by code or by name."""
    if usage_type.strip().isdigit():
        quota_type = get_quota_type(int(usage_type))
        if quota_type is None:
            raise ValidationError(f"Usage type [{usage_type}] does not exist.")
        return quota_type
    return get_quota_type_by_name(usage_type)


def _parse_value(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise ValidationError(f"Invalid tariff value [{value}].")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    )
):
    """cloud-quota CLI."""
    try:
        quota_config = load_quota_config(config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        _fail(f"Invalid configuration: {e}")
    configure_logging(quota_config.logging.level, quota_config.logging.json)
    ctx.obj = quota_config

    if ctx.invoked_subcommand is None:
        console.print("cloud-quota - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the quota database."""
    try:
        initialize_schema(_config(ctx).database.path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        _fail(f"Error initializing database: {e}")


@app.command()
def parse(
    ctx: typer.Context,
    account: int = typer.Option(..., "--account", "-a", help="Account whose usage is parsed"),
    start: datetime = typer.Option(..., "--start", "-s", formats=DATE_FORMATS, help="Start of the window"),
    end: Optional[datetime] = typer.Option(
        None, "--end", "-e", formats=DATE_FORMATS, help="End of the window (defaults to now)"
    )
):
    """Parse raw usage records of an account into usage entries."""
    db_path = _config(ctx).database.path
    try:
        parsers = create_parsers(UsageRecordStore(db_path), UsageEntryStore(db_path))
        failed = parse_all(parsers, account, start, end)
    except _HANDLED_ERRORS as e:
        _fail(str(e))

    if failed:
        _fail(f"Parsers failed: {', '.join(failed)}")
    console.print(f"[green]✓[/] Usage of account {account} parsed")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def aggregate(
    ctx: typer.Context,
    start: datetime = typer.Option(..., "--start", "-s", formats=DATE_FORMATS, help="Start of the window"),
    end: datetime = typer.Option(..., "--end", "-e", formats=DATE_FORMATS, help="End of the window (exclusive)"),
    accounts: Optional[List[int]] = typer.Option(
        None, "--account", "-a", help="Account to aggregate; repeat for several (defaults to all)"
    ),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Number of worker threads")
):
    """Rate usage entries with the quota tariffs and store the quota usage."""
    quota_config = _config(ctx)
    db_path = quota_config.database.path
    try:
        engine = QuotaAggregationEngine(
            entry_store=UsageEntryStore(db_path),
            tariff_store=QuotaTariffStore(db_path),
            writer=QuotaUsageWriter(db_path),
            preset_builder=PresetVariableBuilder(InventoryRepository(db_path)),
            evaluator=ActivationRuleEvaluator(),
            rate_basis=quota_config.aggregation.rate_basis,
            disabled_accounts=quota_config.aggregation.disabled_accounts
        )
        report = engine.run(
            start,
            end,
            accounts=accounts or None,
            workers=workers or quota_config.aggregation.workers
        )
    except _HANDLED_ERRORS as e:
        _fail(str(e))

    table = Table(title="Quota aggregation")
    table.add_column("Account", justify="right")
    table.add_column("Period")
    table.add_column("Processing")
    table.add_column("Lines", justify="right")
    table.add_column("Quota used", justify="right")
    for period in report.periods:
        table.add_row(
            str(period.account_id),
            f"{period.start:%Y-%m-%d %H:%M} - {period.end:%Y-%m-%d %H:%M}",
            period.processing_period.value,
            str(len(period.usages)),
            str(period.quota_used)
        )
    console.print(table)
    console.print(f"Total quota used: {report.total_quota_used}")
    if report.skipped:
        console.print(f"[yellow]Quota disabled for accounts:[/] {report.skipped}")
    sys.exit(EXIT_CODE_PASS)


@app.command("tariff-create")
def tariff_create(
    ctx: typer.Context,
    name: str = typer.Option(..., "--name", "-n", help="Unique tariff name"),
    usage_type: str = typer.Option(..., "--usage-type", "-u", help="Usage type code or name"),
    value: str = typer.Option(..., "--value", "-v", help="Tariff value"),
    rule: Optional[str] = typer.Option(None, "--rule", "-r", help="Activation rule"),
    period: str = typer.Option("BY_ENTRY", "--period", "-p", help="Processing period (BY_ENTRY or MONTHLY)"),
    execute_on: Optional[int] = typer.Option(None, "--execute-on", help="Day of month for MONTHLY tariffs"),
    start: Optional[datetime] = typer.Option(None, "--start", formats=DATE_FORMATS, help="Effective from"),
    end: Optional[datetime] = typer.Option(None, "--end", formats=DATE_FORMATS, help="Effective until"),
    description: Optional[str] = typer.Option(None, "--description", help="Tariff description")
):
    """Create a quota tariff."""
    try:
        tariff = QuotaTariff(
            name=name,
            currency_value=_parse_value(value),
            usage_type=_resolve_usage_type(usage_type).code,
            activation_rule=rule,
            processing_period=ProcessingPeriod.from_string(period),
            execute_on=execute_on,
            effective_from=start,
            effective_to=end,
            description=description
        )
        created = QuotaTariffStore(_config(ctx).database.path).create_tariff(tariff)
    except _HANDLED_ERRORS as e:
        _fail(str(e))

    console.print(f"[green]✓[/] Created {created}")
    sys.exit(EXIT_CODE_PASS)


@app.command("tariff-update")
def tariff_update(
    ctx: typer.Context,
    name: str = typer.Option(..., "--name", "-n", help="Name of the tariff to update"),
    value: Optional[str] = typer.Option(None, "--value", "-v", help="New tariff value"),
    rule: Optional[str] = typer.Option(None, "--rule", "-r", help="New activation rule"),
    execute_on: Optional[int] = typer.Option(None, "--execute-on", help="New day of month for MONTHLY tariffs"),
    start: Optional[datetime] = typer.Option(
        None, "--start", formats=DATE_FORMATS, help="Effective from (defaults to now)"
    ),
    end: Optional[datetime] = typer.Option(None, "--end", formats=DATE_FORMATS, help="Effective until"),
    description: Optional[str] = typer.Option(None, "--description", help="New description")
):
    """Supersede the active version of a tariff with a new version."""
    store = QuotaTariffStore(_config(ctx).database.path)
    try:
        current = store.find_by_name(name)
        if current is None:
            raise ValidationError(f"There is no active quota tariff with name [{name}].")

        changes = {"effective_from": start or utc_now()}
        if value is not None:
            changes["currency_value"] = _parse_value(value)
        if rule is not None:
            changes["activation_rule"] = rule
        if execute_on is not None:
            changes["execute_on"] = execute_on
        if end is not None:
            changes["effective_to"] = end
        if description is not None:
            changes["description"] = description

        updated = store.supersede_tariff(current.id, current.new_version(**changes))
    except _HANDLED_ERRORS as e:
        _fail(str(e))

    console.print(f"[green]✓[/] Updated {updated}")
    sys.exit(EXIT_CODE_PASS)


@app.command("tariff-list")
def tariff_list(
    ctx: typer.Context,
    usage_type: Optional[str] = typer.Option(None, "--usage-type", "-u", help="Usage type code or name"),
    include_removed: bool = typer.Option(False, "--all", help="Include superseded and removed versions")
):
    """List quota tariffs."""
    try:
        code = _resolve_usage_type(usage_type).code if usage_type else None
        tariffs = QuotaTariffStore(_config(ctx).database.path).list_tariffs(
            usage_type=code, include_removed=include_removed
        )
    except _HANDLED_ERRORS as e:
        _fail(str(e))

    table = Table(title="Quota tariffs")
    table.add_column("Id", justify="right")
    table.add_column("Name")
    table.add_column("Version", justify="right")
    table.add_column("Usage type")
    table.add_column("Value", justify="right")
    table.add_column("Processing")
    table.add_column("Effective")
    table.add_column("Activation rule")
    for tariff in tariffs:
        effective_to = f"{tariff.effective_to:%Y-%m-%d %H:%M}" if tariff.effective_to else "…"
        table.add_row(
            str(tariff.id),
            tariff.name,
            str(tariff.version),
            tariff.usage_name or str(tariff.usage_type),
            str(tariff.currency_value),
            tariff.processing_period.value,
            f"{tariff.effective_from:%Y-%m-%d %H:%M} - {effective_to}",
            tariff.activation_rule or ""
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def variables(
    rule: str = typer.Argument(..., help="Activation rule to inspect"),
    usage_type: Optional[str] = typer.Option(None, "--usage-type", "-u", help="Usage type code or name")
):
    """List the preset variables an activation rule uses and flag unknown ones."""
    try:
        code = _resolve_usage_type(usage_type).code if usage_type else None
        used = sorted(extract_variables(rule))
        unknown = find_unknown_variables(rule, code)
    except _HANDLED_ERRORS as e:
        _fail(str(e))

    for variable in used:
        marker = "[red]✗[/]" if variable in unknown else "[green]✓[/]"
        console.print(f"{marker} {variable}")
    if unknown:
        _fail(f"Unknown preset variables: {', '.join(unknown)}")
    sys.exit(EXIT_CODE_PASS)


@app.command("preset-variables")
def preset_variables(
    usage_type: Optional[str] = typer.Option(None, "--usage-type", "-u", help="Usage type code or name")
):
    """List the preset variables available to activation rules."""
    try:
        code = _resolve_usage_type(usage_type).code if usage_type else None
    except _HANDLED_ERRORS as e:
        _fail(str(e))

    table = Table(title="Preset variables")
    table.add_column("Variable")
    table.add_column("Description")
    for path, description in list_preset_variables(code):
        table.add_row(path, description)
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def quote(
    ctx: typer.Context,
    resources_file: Path = typer.Argument(..., help="JSON file with the resources to quote")
):
    """Quote resources with the tariffs in force now."""
    quota_config = _config(ctx)
    try:
        resources = load_resources_to_quote(resources_file.read_text(encoding="utf-8"))
        quoter = ResourceQuoter(
            QuotaTariffStore(quota_config.database.path),
            rate_basis=quota_config.aggregation.rate_basis
        )
        results = quoter.quote_resources(resources)
    except (OSError,) + _HANDLED_ERRORS as e:
        _fail(str(e))

    table = Table(title="Resource quotes")
    table.add_column("Id")
    table.add_column("Usage type")
    table.add_column("Quote", justify="right")
    for result in results:
        table.add_row(result.id, result.resource_type, str(result.quote))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
