from __future__ import annotations

import calendar
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, TypeVar

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from spendsync.adapters.db.models import (
    AccountMapping,
    BankConnection,
    Base,
    Budget,
    BudgetApplication,
    CardBonus,
    ConnectionAccount,
    CreditCard,
    RewardEntry,
    SyncLog,
    Transaction,
)
from spendsync.models.transaction import ProviderAccount

M = TypeVar("M")

# Transaction fields the provider is allowed to change after creation.
MUTABLE_PROVIDER_FIELDS = (
    "amount_cents",
    "name",
    "merchant_name",
    "provider_categories",
    "pending",
    "location",
)

ACTIVE_SYNC_STATUSES = ("pending", "running")

BALANCE_FIELDS = {
    "cashback": "cash_back_balance",
    "points": "points_balance",
    "miles": "miles_balance",
}


def to_cents(amount: float | None) -> int | None:
    """Convert a provider dollar amount to integer cents."""
    if amount is None:
        return None
    return int(round(amount * 100))


BUDGET_PERIODS = ("weekly", "monthly", "yearly", "custom")


def _add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def _unknown_period(period: str) -> str:
    return f"Unknown budget period {period!r}, expected one of {BUDGET_PERIODS}"


def budget_period_end(start_date: date, period: str) -> date | None:
    """Last day covered by a budget period that starts on ``start_date``.

    ``custom`` budgets have no implied end and stay open until one is set.

    Raises:
        ValueError: If the period is not one of BUDGET_PERIODS
    """
    if period == "weekly":
        return start_date + timedelta(days=6)
    if period == "monthly":
        return _add_months(start_date, 1) - timedelta(days=1)
    if period == "yearly":
        return _add_months(start_date, 12) - timedelta(days=1)
    if period == "custom":
        return None
    raise ValueError(_unknown_period(period))


@dataclass
class TransactionSummary:
    total_transactions: int
    income_cents: int
    expenses_cents: int
    category_breakdown: dict[str, int] = field(default_factory=dict)

    @property
    def net_cents(self) -> int:
        return self.income_cents - self.expenses_cents


@dataclass
class BonusUpdate:
    """New progress values for one bonus, written by the propagator."""

    bonus_id: int
    status: str
    current_spending_cents: int
    spending_by_category: dict[str, int]
    date_completed: date | None


@dataclass
class RewardEntryData:
    transaction_id: int
    posted_at: date
    category: str
    amount_cents: int
    reward_type: str
    reward_earned: float
    description: str | None = None


class DB:
    """Database service layer providing ORM models and helper methods.

    Every read and write is scoped by ``user_id`` where the entity is
    user-owned; returned instances are detached from their session.
    """

    def __init__(self, url: str) -> None:
        """Initialize database connection.

        Args:
            url: Database URL (e.g., "sqlite:///spendsync.db")
        """
        self._url = url
        if url.startswith("sqlite") and ":memory:" in url:
            # One shared connection so every session sees the same in-memory DB.
            self._engine = create_engine(
                url,
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self._engine = create_engine(url, echo=False)
        self._session_factory = sessionmaker(
            bind=self._engine, class_=Session, expire_on_commit=False
        )

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self._engine)

    @staticmethod
    def _detach(session: Session, instances: Iterable[M]) -> list[M]:
        items = list(instances)
        for instance in items:
            session.expunge(instance)
        return items

    # Connections ---------------------------------------------------------

    def save_connection(
        self,
        *,
        user_id: str,
        item_id: str,
        access_token: str,
        institution_id: str | None = None,
        institution_name: str | None = None,
    ) -> BankConnection:
        """Save or update the connection for a provider item.

        Args:
            user_id: Owning user
            item_id: Provider item ID
            access_token: Provider access token
            institution_id: Optional institution ID
            institution_name: Optional institution name

        Returns:
            Created or updated BankConnection instance
        """
        with self.session() as session:  # type: Session
            connection = session.scalars(
                select(BankConnection).where(
                    BankConnection.user_id == user_id,
                    BankConnection.item_id == item_id,
                )
            ).first()
            if connection is None:
                connection = BankConnection(
                    user_id=user_id,
                    item_id=item_id,
                    access_token=access_token,
                    institution_id=institution_id,
                    institution_name=institution_name,
                    is_active=True,
                )
                session.add(connection)
            else:
                connection.access_token = access_token
                connection.institution_id = institution_id
                connection.institution_name = institution_name
                connection.is_active = True
                connection.updated_at = datetime.now()
            session.flush()
            session.refresh(connection)
            session.expunge(connection)
            return connection

    def get_connection(self, user_id: str, connection_id: str) -> BankConnection | None:
        with self.session() as session:  # type: Session
            connection = session.scalars(
                select(BankConnection).where(
                    BankConnection.connection_id == connection_id,
                    BankConnection.user_id == user_id,
                )
            ).first()
            if connection:
                session.expunge(connection)
            return connection

    def list_connections(
        self, user_id: str, *, active_only: bool = True
    ) -> list[BankConnection]:
        with self.session() as session:  # type: Session
            query = select(BankConnection).where(BankConnection.user_id == user_id)
            if active_only:
                query = query.where(BankConnection.is_active.is_(True))
            query = query.order_by(BankConnection.created_at.desc())
            return self._detach(session, session.scalars(query).all())

    def mark_connection_synced(self, connection_id: str, synced_at: datetime) -> None:
        """Stamp ``last_sync`` after a completed run."""
        with self.session() as session:  # type: Session
            connection = session.get(BankConnection, connection_id)
            if connection is None:
                raise ValueError(f"Connection {connection_id} not found")
            connection.last_sync = synced_at
            connection.last_error = None
            connection.updated_at = synced_at

    def replace_connection_accounts(
        self, connection_id: str, accounts: Iterable[ProviderAccount]
    ) -> int:
        """Upsert the account snapshot for a connection.

        Returns:
            Number of accounts written
        """
        now = datetime.now()
        written = 0
        with self.session() as session:  # type: Session
            existing = {
                row.account_id: row
                for row in session.scalars(
                    select(ConnectionAccount).where(
                        ConnectionAccount.connection_id == connection_id
                    )
                )
            }
            for account in accounts:
                balances = account["balances"]
                row = existing.get(account["account_id"])
                if row is None:
                    row = ConnectionAccount(
                        connection_id=connection_id,
                        account_id=account["account_id"],
                        name=account["name"],
                    )
                    session.add(row)
                row.name = account["name"]
                row.official_name = account.get("official_name")
                row.type = account.get("type")
                row.subtype = account.get("subtype")
                row.mask = account.get("mask")
                row.available_cents = to_cents(balances.get("available"))
                row.current_cents = to_cents(balances.get("current"))
                row.limit_cents = to_cents(balances.get("limit"))
                row.currency = balances.get("iso_currency_code")
                row.updated_at = now
                written += 1
        return written

    def list_connection_accounts(self, connection_id: str) -> list[ConnectionAccount]:
        with self.session() as session:  # type: Session
            rows = session.scalars(
                select(ConnectionAccount)
                .where(ConnectionAccount.connection_id == connection_id)
                .order_by(ConnectionAccount.account_id)
            ).all()
            return self._detach(session, rows)

    # Transactions --------------------------------------------------------

    def get_transaction_by_provider_id(
        self, user_id: str, provider_transaction_id: str
    ) -> Transaction | None:
        """Get the canonical transaction for a provider ID.

        Args:
            user_id: Owning user
            provider_transaction_id: Provider transaction ID

        Returns:
            Transaction instance or None if not found
        """
        with self.session() as session:  # type: Session
            transaction = session.scalars(
                select(Transaction).where(
                    Transaction.user_id == user_id,
                    Transaction.provider_transaction_id == provider_transaction_id,
                )
            ).first()
            if transaction:
                session.expunge(transaction)
            return transaction

    def insert_transaction(self, data: dict[str, Any]) -> Transaction:
        """Insert a new canonical transaction.

        Args:
            data: Transaction data dictionary with fields:
                - user_id, connection_id, provider_transaction_id, account_id
                - posted_at, amount_cents, name, internal_category
                - merchant_name, provider_categories, category_confidence,
                  pending, location (optional)

        Returns:
            Created Transaction instance

        Raises:
            sqlalchemy.exc.IntegrityError: If the provider ID already exists
                for the user
        """
        with self.session() as session:  # type: Session
            transaction = Transaction(
                user_id=data["user_id"],
                connection_id=data["connection_id"],
                provider_transaction_id=data["provider_transaction_id"],
                account_id=data["account_id"],
                posted_at=data["posted_at"],
                amount_cents=data["amount_cents"],
                name=data.get("name") or "",
                merchant_name=data.get("merchant_name"),
                provider_categories=list(data.get("provider_categories") or []),
                internal_category=data["internal_category"],
                category_confidence=data.get("category_confidence", 0.0),
                pending=bool(data.get("pending", False)),
                location=data.get("location"),
                is_hidden=False,
                is_deleted=False,
                notes="",
                tags=[],
            )
            session.add(transaction)
            session.flush()
            session.refresh(transaction)
            session.expunge(transaction)
            return transaction

    def update_transaction_mutable(
        self,
        transaction_id: int,
        data: dict[str, Any],
    ) -> Transaction:
        """Update the provider-mutable fields of a transaction.

        Keys outside MUTABLE_PROVIDER_FIELDS are ignored, so user-owned
        fields (internal_category, is_hidden, notes, tags) survive re-syncs.

        Raises:
            ValueError: If the transaction does not exist
        """
        with self.session() as session:  # type: Session
            transaction = session.get(Transaction, transaction_id)
            if transaction is None:
                raise ValueError(f"Transaction {transaction_id} not found")

            for key, value in data.items():
                if key in MUTABLE_PROVIDER_FIELDS:
                    setattr(transaction, key, value)
            transaction.updated_at = datetime.now()

            session.flush()
            session.refresh(transaction)
            session.expunge(transaction)
            return transaction

    def list_transactions(
        self,
        user_id: str,
        *,
        connection_id: str | None = None,
        account_id: str | None = None,
        category: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        include_hidden: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Transaction]:
        """List a user's transactions, newest first. Deleted rows are never returned."""
        with self.session() as session:  # type: Session
            query = select(Transaction).where(
                Transaction.user_id == user_id, Transaction.is_deleted.is_(False)
            )
            if not include_hidden:
                query = query.where(Transaction.is_hidden.is_(False))
            if connection_id is not None:
                query = query.where(Transaction.connection_id == connection_id)
            if account_id is not None:
                query = query.where(Transaction.account_id == account_id)
            if category is not None:
                query = query.where(Transaction.internal_category == category)
            if start_date is not None:
                query = query.where(Transaction.posted_at >= start_date)
            if end_date is not None:
                query = query.where(Transaction.posted_at <= end_date)
            query = query.order_by(
                Transaction.posted_at.desc(), Transaction.transaction_id.desc()
            ).offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return self._detach(session, session.scalars(query).all())

    def summarize_transactions(
        self,
        user_id: str,
        *,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> TransactionSummary:
        """Income/expense totals and per-category spend.

        Negative amounts count as income and positive amounts as expenses,
        matching the provider sign convention.
        """
        transactions = self.list_transactions(
            user_id, start_date=start_date, end_date=end_date
        )
        summary = TransactionSummary(
            total_transactions=len(transactions), income_cents=0, expenses_cents=0
        )
        for txn in transactions:
            if txn.amount_cents < 0:
                summary.income_cents += -txn.amount_cents
            else:
                summary.expenses_cents += txn.amount_cents
            key = txn.internal_category or "Other"
            summary.category_breakdown[key] = summary.category_breakdown.get(
                key, 0
            ) + abs(txn.amount_cents)
        return summary

    def _update_user_field(
        self, user_id: str, transaction_id: int, **values: Any
    ) -> Transaction | None:
        with self.session() as session:  # type: Session
            transaction = session.get(Transaction, transaction_id)
            if transaction is None or transaction.user_id != user_id:
                return None
            for key, value in values.items():
                setattr(transaction, key, value)
            transaction.updated_at = datetime.now()
            session.flush()
            session.refresh(transaction)
            session.expunge(transaction)
            return transaction

    def update_transaction_category(
        self, user_id: str, transaction_id: int, category: str
    ) -> Transaction | None:
        """User edit of the internal category. Returns None if not owned."""
        return self._update_user_field(
            user_id, transaction_id, internal_category=category
        )

    def update_transaction_visibility(
        self, user_id: str, transaction_id: int, is_hidden: bool
    ) -> Transaction | None:
        return self._update_user_field(user_id, transaction_id, is_hidden=is_hidden)

    def mark_transaction_deleted(
        self, user_id: str, transaction_id: int
    ) -> Transaction | None:
        """Logically delete a transaction; rows referenced by rewards stay."""
        return self._update_user_field(user_id, transaction_id, is_deleted=True)

    # Account mappings ----------------------------------------------------

    def get_active_mapping(
        self, user_id: str, provider_account_id: str
    ) -> AccountMapping | None:
        with self.session() as session:  # type: Session
            mapping = session.scalars(
                select(AccountMapping).where(
                    AccountMapping.user_id == user_id,
                    AccountMapping.provider_account_id == provider_account_id,
                    AccountMapping.is_active.is_(True),
                )
            ).first()
            if mapping:
                session.expunge(mapping)
            return mapping

    def list_active_mappings(self, user_id: str) -> list[AccountMapping]:
        with self.session() as session:  # type: Session
            rows = session.scalars(
                select(AccountMapping)
                .where(
                    AccountMapping.user_id == user_id,
                    AccountMapping.is_active.is_(True),
                )
                .order_by(AccountMapping.mapping_id)
            ).all()
            return self._detach(session, rows)

    def insert_mapping(
        self,
        *,
        user_id: str,
        provider_account_id: str,
        provider_account_name: str,
        credit_card_id: int,
        credit_card_name: str,
        institution_name: str | None,
    ) -> AccountMapping:
        with self.session() as session:  # type: Session
            mapping = AccountMapping(
                user_id=user_id,
                provider_account_id=provider_account_id,
                provider_account_name=provider_account_name,
                credit_card_id=credit_card_id,
                credit_card_name=credit_card_name,
                institution_name=institution_name,
                is_active=True,
            )
            session.add(mapping)
            session.flush()
            session.refresh(mapping)
            session.expunge(mapping)
            return mapping

    def deactivate_mapping(self, user_id: str, mapping_id: int) -> bool:
        """Mark a mapping inactive. Returns False if it is not the user's."""
        with self.session() as session:  # type: Session
            mapping = session.get(AccountMapping, mapping_id)
            if mapping is None or mapping.user_id != user_id:
                return False
            mapping.is_active = False
            mapping.updated_at = datetime.now()
            return True

    # Credit cards --------------------------------------------------------

    def create_card(
        self,
        *,
        user_id: str,
        name: str,
        issuer: str = "",
        reward_type: str = "cashback",
        reward_rate: float | None = None,
        category_rewards: dict[str, Any] | None = None,
    ) -> CreditCard:
        with self.session() as session:  # type: Session
            card = CreditCard(
                user_id=user_id,
                name=name,
                issuer=issuer,
                reward_type=reward_type,
                reward_rate=reward_rate,
                category_rewards=dict(category_rewards or {}),
                cash_back_balance=0.0,
                points_balance=0.0,
                miles_balance=0.0,
            )
            session.add(card)
            session.flush()
            session.refresh(card)
            session.expunge(card)
            return card

    def add_card_bonus(
        self,
        *,
        card_id: int,
        title: str,
        spending_required_cents: int,
        category: str | None = None,
        end_date: date | None = None,
        auto_tracking: bool = True,
    ) -> CardBonus:
        with self.session() as session:  # type: Session
            bonus = CardBonus(
                card_id=card_id,
                title=title,
                spending_required_cents=spending_required_cents,
                current_spending_cents=0,
                spending_by_category={},
                category=category,
                status="not_started",
                auto_tracking=auto_tracking,
                end_date=end_date,
            )
            session.add(bonus)
            session.flush()
            session.refresh(bonus)
            session.expunge(bonus)
            return bonus

    def get_card(self, user_id: str, card_id: int) -> CreditCard | None:
        """Return a card with its bonuses loaded, or None if not the user's."""
        with self.session() as session:  # type: Session
            card = session.get(CreditCard, card_id)
            if card is None or card.user_id != user_id:
                return None
            # Load bonuses before detaching; expunge cascades to them.
            card.bonuses  # noqa: B018
            session.expunge(card)
            return card

    def list_cards(self, user_id: str) -> list[CreditCard]:
        with self.session() as session:  # type: Session
            cards = session.scalars(
                select(CreditCard)
                .where(CreditCard.user_id == user_id)
                .order_by(CreditCard.card_id)
            ).all()
            return self._detach(session, cards)

    def get_reward_entry(self, card_id: int, transaction_id: int) -> RewardEntry | None:
        with self.session() as session:  # type: Session
            entry = session.scalars(
                select(RewardEntry).where(
                    RewardEntry.card_id == card_id,
                    RewardEntry.transaction_id == transaction_id,
                )
            ).first()
            if entry:
                session.expunge(entry)
            return entry

    def list_reward_entries(self, user_id: str, card_id: int) -> list[RewardEntry]:
        with self.session() as session:  # type: Session
            rows = session.scalars(
                select(RewardEntry)
                .where(RewardEntry.user_id == user_id, RewardEntry.card_id == card_id)
                .order_by(RewardEntry.posted_at, RewardEntry.entry_id)
            ).all()
            return self._detach(session, rows)

    @staticmethod
    def _apply_bonus_updates(card: CreditCard, updates: Iterable[BonusUpdate]) -> None:
        by_id = {bonus.bonus_id: bonus for bonus in card.bonuses}
        for update in updates:
            bonus = by_id.get(update.bonus_id)
            if bonus is None:
                continue
            bonus.status = update.status
            bonus.current_spending_cents = update.current_spending_cents
            bonus.spending_by_category = dict(update.spending_by_category)
            bonus.date_completed = update.date_completed

    def save_bonus_updates(
        self, *, user_id: str, card_id: int, bonuses: Iterable[BonusUpdate]
    ) -> None:
        """Persist bonus progress for one card without touching rewards.

        Raises:
            ValueError: If the card does not belong to the user
        """
        with self.session() as session:  # type: Session
            card = session.get(CreditCard, card_id)
            if card is None or card.user_id != user_id:
                raise ValueError(f"Credit card {card_id} not found")
            self._apply_bonus_updates(card, bonuses)
            card.updated_at = datetime.now()

    def save_card_reward(
        self,
        *,
        user_id: str,
        card_id: int,
        balance_deltas: dict[str, float],
        bonuses: Iterable[BonusUpdate],
        entry: RewardEntryData,
    ) -> None:
        """Apply reward balance deltas, bonus progress and the reward entry.

        All writes for one transaction on one card land in a single session.

        Args:
            user_id: Owning user
            card_id: Card to update
            balance_deltas: Reward type -> amount to add to that balance
            bonuses: Bonus progress to persist
            entry: Reward history row to insert or overwrite

        Raises:
            ValueError: If the card does not belong to the user
        """
        now = datetime.now()
        with self.session() as session:  # type: Session
            card = session.get(CreditCard, card_id)
            if card is None or card.user_id != user_id:
                raise ValueError(f"Credit card {card_id} not found")

            for reward_type, delta in balance_deltas.items():
                attr = BALANCE_FIELDS.get(reward_type)
                if attr is None or not delta:
                    continue
                setattr(card, attr, round(getattr(card, attr) + delta, 2))

            self._apply_bonus_updates(card, bonuses)
            card.updated_at = now

            row = session.scalars(
                select(RewardEntry).where(
                    RewardEntry.card_id == card_id,
                    RewardEntry.transaction_id == entry.transaction_id,
                )
            ).first()
            if row is None:
                row = RewardEntry(
                    user_id=user_id,
                    card_id=card_id,
                    transaction_id=entry.transaction_id,
                )
                session.add(row)
            row.posted_at = entry.posted_at
            row.category = entry.category
            row.amount_cents = entry.amount_cents
            row.reward_type = entry.reward_type
            row.reward_earned = entry.reward_earned
            row.description = entry.description
            row.updated_at = now

    # Budgets -------------------------------------------------------------

    def create_budget(
        self,
        *,
        user_id: str,
        name: str,
        category: str,
        amount_cents: int,
        start_date: date,
        end_date: date | None = None,
        period: str = "monthly",
    ) -> Budget:
        """Create an active budget.

        Without an explicit ``end_date`` the budget stops covering spend at
        the end of its first period, see ``budget_period_end``.

        Raises:
            ValueError: If the period is unknown or ends before it starts
        """
        if period not in BUDGET_PERIODS:
            raise ValueError(_unknown_period(period))
        if end_date is None:
            end_date = budget_period_end(start_date, period)
        if end_date is not None and end_date < start_date:
            raise ValueError(f"Budget end {end_date} is before start {start_date}")
        with self.session() as session:  # type: Session
            budget = Budget(
                user_id=user_id,
                name=name,
                category=category,
                amount_cents=amount_cents,
                spent_cents=0,
                period=period,
                start_date=start_date,
                end_date=end_date,
                is_active=True,
            )
            session.add(budget)
            session.flush()
            session.refresh(budget)
            session.expunge(budget)
            return budget

    def get_budget(self, user_id: str, budget_id: int) -> Budget | None:
        with self.session() as session:  # type: Session
            budget = session.get(Budget, budget_id)
            if budget is None or budget.user_id != user_id:
                return None
            session.expunge(budget)
            return budget

    def list_active_budgets(self, user_id: str) -> list[Budget]:
        with self.session() as session:  # type: Session
            rows = session.scalars(
                select(Budget)
                .where(Budget.user_id == user_id, Budget.is_active.is_(True))
                .order_by(Budget.budget_id)
            ).all()
            return self._detach(session, rows)

    def get_budget_application(self, budget_id: int, transaction_id: int) -> int | None:
        """Cents of a transaction already applied to a budget, if any."""
        with self.session() as session:  # type: Session
            row = session.get(BudgetApplication, (budget_id, transaction_id))
            return None if row is None else row.applied_cents

    def apply_budget_spend(
        self, *, budget_id: int, transaction_id: int, applied_cents: int
    ) -> int:
        """Move a budget's spend so the transaction counts ``applied_cents``.

        Returns:
            The delta added to ``spent_cents``
        """
        with self.session() as session:  # type: Session
            budget = session.get(Budget, budget_id)
            if budget is None:
                raise ValueError(f"Budget {budget_id} not found")
            row = session.get(BudgetApplication, (budget_id, transaction_id))
            previous = 0 if row is None else row.applied_cents
            delta = applied_cents - previous
            if row is None:
                row = BudgetApplication(
                    budget_id=budget_id,
                    transaction_id=transaction_id,
                    applied_cents=applied_cents,
                )
                session.add(row)
            else:
                row.applied_cents = applied_cents
            if delta:
                budget.spent_cents += delta
                budget.updated_at = datetime.now()
            return delta

    # Sync logs -----------------------------------------------------------

    @staticmethod
    def _new_sync_log(
        *, user_id: str, connection_id: str, sync_type: str, started_at: datetime
    ) -> SyncLog:
        return SyncLog(
            user_id=user_id,
            connection_id=connection_id,
            sync_type=sync_type,
            status="pending",
            started_at=started_at,
            transactions_added=0,
            transactions_updated=0,
            errors=[],
        )

    def insert_sync_log(
        self,
        *,
        user_id: str,
        connection_id: str,
        sync_type: str,
        started_at: datetime,
    ) -> SyncLog:
        with self.session() as session:  # type: Session
            sync_log = self._new_sync_log(
                user_id=user_id,
                connection_id=connection_id,
                sync_type=sync_type,
                started_at=started_at,
            )
            session.add(sync_log)
            session.flush()
            session.refresh(sync_log)
            session.expunge(sync_log)
            return sync_log

    def claim_sync_log(
        self,
        *,
        user_id: str,
        connection_id: str,
        sync_type: str,
        started_at: datetime,
        stale_before: datetime,
    ) -> SyncLog | None:
        """Open a sync log unless the connection already has a live run.

        Pending or running logs started before ``stale_before`` belong to a
        process that died mid-run; they are closed as failed so they stop
        blocking the connection.

        Returns:
            The new pending SyncLog, or None if another run holds the connection
        """
        with self.session() as session:  # type: Session
            active = session.scalars(
                select(SyncLog).where(
                    SyncLog.connection_id == connection_id,
                    SyncLog.status.in_(ACTIVE_SYNC_STATUSES),
                )
            ).all()
            for other in active:
                if other.started_at >= stale_before:
                    return None
            for other in active:
                other.status = "failed"
                other.failure_kind = "unexpected"
                other.errors = ["abandoned: no progress before the stale cutoff"]
                other.completed_at = started_at

            sync_log = self._new_sync_log(
                user_id=user_id,
                connection_id=connection_id,
                sync_type=sync_type,
                started_at=started_at,
            )
            session.add(sync_log)
            session.flush()
            session.refresh(sync_log)
            session.expunge(sync_log)
            return sync_log

    def get_sync_log(self, sync_log_id: str) -> SyncLog | None:
        with self.session() as session:  # type: Session
            sync_log = session.get(SyncLog, sync_log_id)
            if sync_log:
                session.expunge(sync_log)
            return sync_log

    def update_sync_log(self, sync_log_id: str, **values: Any) -> SyncLog:
        with self.session() as session:  # type: Session
            sync_log = session.get(SyncLog, sync_log_id)
            if sync_log is None:
                raise ValueError(f"Sync log {sync_log_id} not found")
            for key, value in values.items():
                setattr(sync_log, key, value)
            session.flush()
            session.refresh(sync_log)
            session.expunge(sync_log)
            return sync_log

    def list_sync_logs(self, user_id: str, *, limit: int = 20) -> list[SyncLog]:
        """Most recent sync runs for a user, newest first."""
        with self.session() as session:  # type: Session
            rows = session.scalars(
                select(SyncLog)
                .where(SyncLog.user_id == user_id)
                .order_by(SyncLog.started_at.desc())
                .limit(limit)
            ).all()
            return self._detach(session, rows)
