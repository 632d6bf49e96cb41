from __future__ import annotations

import asyncio
from datetime import date
import sys
from typing import Any

from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.table import Table
import typer

from spendsync.accounts.mappings import (
    AccountMappingService,
    MappingExistsError,
    SuggestedAccount,
)
from spendsync.adapters.db.facade import DB
from spendsync.config import SyncConfig, load_config_from_env
from spendsync.infra.clients.plaid import PlaidClient, PlaidClientError
from spendsync.rewards.calculator import RewardType
from spendsync.sync.orchestrator import (
    ConnectionNotFoundError,
    SyncInProgressError,
    SyncOrchestrator,
    SyncSummary,
    TransactionProvider,
)

# Load environment variables from .env
load_dotenv()

app = typer.Typer(
    help="spendsync: transaction sync and reward tracking CLI.",
    no_args_is_help=True,
)

console = Console()


def _load_config() -> SyncConfig:
    try:
        return load_config_from_env()
    except ValueError as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(1) from None


def _configure_logging(level: str) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        format="{time:YYYY-MM-DD HH:mm:ss} [{level}] {name}: {message}",
        level=level,
    )


def _build_provider(config: SyncConfig) -> TransactionProvider:
    return PlaidClient.from_env(timeout_seconds=config.fetch_timeout_seconds)


def _parse_date(value: str, option: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        typer.echo(f"{option} must be YYYY-MM-DD, got {value!r}", err=True)
        raise typer.Exit(1) from None


def _optional_date(value: str | None, option: str) -> date | None:
    return None if value is None else _parse_date(value, option)


def _parse_category_rewards(values: list[str] | None) -> dict[str, Any]:
    """Parse ``CATEGORY=TYPE:RATE`` pairs, e.g. ``Food & Dining=cashback:3``."""
    rewards: dict[str, Any] = {}
    for raw in values or []:
        category, sep, reward = raw.partition("=")
        kind, sep2, rate = reward.partition(":")
        try:
            if not sep or not sep2 or not category.strip():
                raise ValueError(raw)
            rewards[category.strip()] = {
                "type": RewardType(kind.strip().lower()).value,
                "rate": float(rate),
            }
        except ValueError:
            typer.echo(
                f"Invalid category reward {raw!r}, expected CATEGORY=TYPE:RATE",
                err=True,
            )
            raise typer.Exit(1) from None
    return rewards


def _cents(value: int | None) -> str:
    if value is None:
        return "-"
    return f"{value / 100:,.2f}"


def _print_summary(connection_id: str, summary: SyncSummary) -> None:
    table = Table(title=f"Sync {connection_id}")
    table.add_column("Status")
    table.add_column("Added", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Issues", justify="right")
    table.add_column("Sync log")
    table.add_row(
        summary.status
        if summary.failure_kind is None
        else f"{summary.status} ({summary.failure_kind})",
        str(summary.added),
        str(summary.updated),
        str(len(summary.errors)),
        summary.sync_log_id or "-",
    )
    console.print(table)
    for error in summary.errors:
        console.print(f"  - {error}")


@app.callback()
def main_callback() -> None:
    """Configure logging before any command runs."""
    _configure_logging(_load_config().log_level)


@app.command("init-db")
def init_db(url: str | None = None) -> None:
    """Create all tables in the configured database."""
    database_url = url or _load_config().database_url
    DB(database_url).create_schema()
    typer.echo(f"Initialized database at {database_url}")


@app.command("add-connection")
def add_connection(
    user: str = typer.Option(..., help="Owning user ID"),
    item_id: str = typer.Option(..., help="Plaid item ID"),
    access_token: str = typer.Option(..., help="Plaid access token for the item"),
    institution_id: str | None = typer.Option(None, help="Institution ID"),
    institution_name: str | None = typer.Option(None, help="Institution name"),
) -> None:
    """Register a linked Plaid item for a user."""
    db = DB(_load_config().database_url)
    connection = db.save_connection(
        user_id=user,
        item_id=item_id,
        access_token=access_token,
        institution_id=institution_id,
        institution_name=institution_name,
    )
    typer.echo(f"Saved connection {connection.connection_id}")


@app.command("add-card")
def add_card(
    user: str = typer.Option(..., help="Owning user ID"),
    name: str = typer.Option(..., help="Card name"),
    issuer: str = typer.Option("", help="Card issuer"),
    reward_type: str = typer.Option("cashback", help="cashback, points or miles"),
    reward_rate: float | None = typer.Option(
        None, help="Default reward rate as a fraction (0.01 = 1%)"
    ),
    category_reward: list[str] | None = typer.Option(  # noqa: B008
        None, help="Category override as CATEGORY=TYPE:RATE (repeatable)"
    ),
) -> None:
    """Add a credit card with its reward configuration."""
    try:
        kind = RewardType(reward_type.lower())
    except ValueError:
        typer.echo(f"Unknown reward type {reward_type!r}", err=True)
        raise typer.Exit(1) from None
    db = DB(_load_config().database_url)
    card = db.create_card(
        user_id=user,
        name=name,
        issuer=issuer,
        reward_type=kind.value,
        reward_rate=reward_rate,
        category_rewards=_parse_category_rewards(category_reward),
    )
    typer.echo(f"Added card {card.card_id}: {card.name}")


@app.command("add-bonus")
def add_bonus(
    card_id: int = typer.Option(..., help="Card to attach the bonus to"),
    title: str = typer.Option(..., help="Bonus title"),
    spending_required: float = typer.Option(..., help="Spend required in dollars"),
    category: str | None = typer.Option(None, help="Only count this category"),
    end_date: str | None = typer.Option(None, help="Deadline (YYYY-MM-DD)"),
) -> None:
    """Track a spend-based sign-up bonus on a card."""
    db = DB(_load_config().database_url)
    bonus = db.add_card_bonus(
        card_id=card_id,
        title=title,
        spending_required_cents=int(round(spending_required * 100)),
        category=category,
        end_date=_optional_date(end_date, "--end-date"),
    )
    typer.echo(f"Added bonus {bonus.bonus_id}: {bonus.title}")


@app.command("add-budget")
def add_budget(
    user: str = typer.Option(..., help="Owning user ID"),
    name: str = typer.Option(..., help="Budget name"),
    category: str = typer.Option(..., help="Internal category to track"),
    amount: float = typer.Option(..., help="Budget amount in dollars"),
    start_date: str = typer.Option(..., help="Period start (YYYY-MM-DD)"),
    end_date: str | None = typer.Option(None, help="Period end (YYYY-MM-DD)"),
    period: str = typer.Option("monthly", help="weekly, monthly, yearly or custom"),
) -> None:
    """Create a category budget."""
    start = _parse_date(start_date, "--start-date")
    end = _optional_date(end_date, "--end-date")
    db = DB(_load_config().database_url)
    try:
        budget = db.create_budget(
            user_id=user,
            name=name,
            category=category,
            amount_cents=int(round(amount * 100)),
            start_date=start,
            end_date=end,
            period=period,
        )
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    ending = f" through {budget.end_date}" if budget.end_date else ""
    typer.echo(f"Added budget {budget.budget_id}: {budget.name}{ending}")


@app.command("map-account")
def map_account(
    user: str = typer.Option(..., help="Owning user ID"),
    account_id: str = typer.Option(..., help="Plaid account ID"),
    card_id: int = typer.Option(..., help="Credit card to map the account to"),
    account_name: str = typer.Option("", help="Display name of the Plaid account"),
    institution_name: str | None = typer.Option(None, help="Institution name"),
) -> None:
    """Map a Plaid account to a credit card so its charges earn rewards."""
    service = AccountMappingService(DB(_load_config().database_url))
    try:
        mapping = service.create_mapping(
            user,
            provider_account_id=account_id,
            provider_account_name=account_name or account_id,
            credit_card_id=card_id,
            institution_name=institution_name,
        )
    except (LookupError, MappingExistsError) as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    typer.echo(
        f"Mapped {account_id} to {mapping.credit_card_name} "
        f"(mapping {mapping.mapping_id})"
    )


@app.command("unmap-account")
def unmap_account(
    user: str = typer.Option(..., help="Owning user ID"),
    mapping_id: int = typer.Option(..., help="Mapping to deactivate"),
) -> None:
    """Deactivate an account mapping."""
    service = AccountMappingService(DB(_load_config().database_url))
    if not service.deactivate_mapping(user, mapping_id):
        typer.echo(f"Mapping {mapping_id} not found", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deactivated mapping {mapping_id}")


@app.command("suggest-mappings")
def suggest_mappings(user: str = typer.Option(..., help="Owning user ID")) -> None:
    """Suggest card mappings for synced credit accounts."""
    db = DB(_load_config().database_url)
    accounts: list[SuggestedAccount] = []
    for connection in db.list_connections(user):
        for account in db.list_connection_accounts(connection.connection_id):
            accounts.append(
                SuggestedAccount(
                    account_id=account.account_id,
                    name=account.name,
                    type=account.type or "",
                    institution_name=connection.institution_name or "",
                )
            )
    suggestions = AccountMappingService(db).suggest_mappings(
        accounts, db.list_cards(user)
    )
    if not suggestions:
        typer.echo("No suggestions.")
        return

    table = Table(title="Suggested mappings")
    table.add_column("Account")
    table.add_column("Card")
    table.add_column("Confidence", justify="right")
    for suggestion in suggestions:
        table.add_row(
            f"{suggestion.provider_account_name} ({suggestion.provider_account_id})",
            f"{suggestion.credit_card_name} ({suggestion.credit_card_id})",
            f"{suggestion.confidence:.2f}",
        )
    console.print(table)


@app.command("sync")
def sync(
    user: str = typer.Option(..., help="Owning user ID"),
    connection_id: str = typer.Option(..., help="Connection to sync"),
    start_date: str | None = typer.Option(None, help="Window start (YYYY-MM-DD)"),
    end_date: str | None = typer.Option(None, help="Window end (YYYY-MM-DD)"),
) -> None:
    """Sync one connection and print the run summary."""
    config = _load_config()
    start = _optional_date(start_date, "--start-date")
    end = _optional_date(end_date, "--end-date")
    if (start is None) != (end is None):
        typer.echo("--start-date and --end-date must be given together", err=True)
        raise typer.Exit(1)

    try:
        provider = _build_provider(config)
    except PlaidClientError as e:
        typer.echo(f"Error initializing Plaid client: {e}", err=True)
        raise typer.Exit(1) from None

    orchestrator = SyncOrchestrator(DB(config.database_url), provider, config=config)
    date_range = (start, end) if start is not None and end is not None else None
    try:
        summary = asyncio.run(
            orchestrator.run_sync(user, connection_id, date_range=date_range)
        )
    except (ConnectionNotFoundError, SyncInProgressError, ValueError) as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None

    _print_summary(connection_id, summary)
    if summary.status == "failed":
        raise typer.Exit(1)


@app.command("sync-all")
def sync_all(user: str = typer.Option(..., help="Owning user ID")) -> None:
    """Sync every active connection of a user."""
    config = _load_config()
    try:
        provider = _build_provider(config)
    except PlaidClientError as e:
        typer.echo(f"Error initializing Plaid client: {e}", err=True)
        raise typer.Exit(1) from None

    orchestrator = SyncOrchestrator(DB(config.database_url), provider, config=config)
    summaries = asyncio.run(orchestrator.run_sync_all(user))
    if not summaries:
        typer.echo("No active connections.")
        return
    for connection_id, summary in summaries.items():
        _print_summary(connection_id, summary)


@app.command("history")
def history(
    user: str = typer.Option(..., help="Owning user ID"),
    limit: int = typer.Option(20, help="Number of runs to show"),
) -> None:
    """Show recent sync runs, newest first."""
    db = DB(_load_config().database_url)
    logs = db.list_sync_logs(user, limit=limit)
    if not logs:
        typer.echo("No sync runs yet.")
        return

    table = Table(title="Sync history")
    table.add_column("Started")
    table.add_column("Connection")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Added", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Issues", justify="right")
    for log in logs:
        status = log.status
        if log.failure_kind:
            status = f"{status} ({log.failure_kind})"
        table.add_row(
            log.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            log.connection_id,
            log.sync_type,
            status,
            str(log.transactions_added),
            str(log.transactions_updated),
            str(len(log.errors or [])),
        )
    console.print(table)


@app.command("transactions")
def transactions(
    user: str = typer.Option(..., help="Owning user ID"),
    category: str | None = typer.Option(None, help="Filter by internal category"),
    limit: int = typer.Option(50, help="Maximum rows to show"),
) -> None:
    """List stored transactions, newest first."""
    db = DB(_load_config().database_url)
    rows = db.list_transactions(user, category=category, limit=limit)
    if not rows:
        typer.echo("No transactions.")
        return

    table = Table(title="Transactions")
    table.add_column("Date")
    table.add_column("Name")
    table.add_column("Category")
    table.add_column("Amount", justify="right")
    table.add_column("Pending")
    for txn in rows:
        table.add_row(
            txn.posted_at.isoformat(),
            txn.merchant_name or txn.name,
            txn.internal_category,
            _cents(txn.amount_cents),
            "yes" if txn.pending else "",
        )
    console.print(table)


@app.command("summary")
def summary(
    user: str = typer.Option(..., help="Owning user ID"),
    start_date: str | None = typer.Option(None, help="Period start (YYYY-MM-DD)"),
    end_date: str | None = typer.Option(None, help="Period end (YYYY-MM-DD)"),
) -> None:
    """Show income, expenses and spend per category."""
    db = DB(_load_config().database_url)
    result = db.summarize_transactions(
        user,
        start_date=_optional_date(start_date, "--start-date"),
        end_date=_optional_date(end_date, "--end-date"),
    )
    typer.echo(f"Transactions: {result.total_transactions}")
    typer.echo(f"Income: {_cents(result.income_cents)}")
    typer.echo(f"Expenses: {_cents(result.expenses_cents)}")
    typer.echo(f"Net: {_cents(result.net_cents)}")

    table = Table(title="By category")
    table.add_column("Category")
    table.add_column("Amount", justify="right")
    for category, cents in sorted(
        result.category_breakdown.items(), key=lambda item: item[1], reverse=True
    ):
        table.add_row(category, _cents(cents))
    console.print(table)


def main() -> None:
    app()
