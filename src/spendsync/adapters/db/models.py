from __future__ import annotations

from datetime import date, datetime
from typing import Any
import uuid

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    Date,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def new_id() -> str:
    """Opaque string identifier for connections and sync logs."""
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class BankConnection(Base):
    """A linked provider item (one login at one institution)."""

    __tablename__ = "bank_connections"

    connection_id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    item_id: Mapped[str] = mapped_column(String, nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    institution_id: Mapped[str | None] = mapped_column(String, nullable=True)
    institution_name: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("TRUE")
    )
    last_sync: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    # Relationships
    accounts: Mapped[list[ConnectionAccount]] = relationship(
        "ConnectionAccount", back_populates="connection", cascade="all, delete-orphan"
    )


class ConnectionAccount(Base):
    """Last-known snapshot of a provider account under a connection."""

    __tablename__ = "connection_accounts"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "account_id", name="uq_connection_accounts_account"
        ),
    )

    connection_account_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    connection_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("bank_connections.connection_id", ondelete="CASCADE"),
        nullable=False,
    )
    account_id: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    official_name: Mapped[str | None] = mapped_column(String, nullable=True)
    type: Mapped[str | None] = mapped_column(String, nullable=True)
    subtype: Mapped[str | None] = mapped_column(String, nullable=True)
    mask: Mapped[str | None] = mapped_column(String, nullable=True)
    available_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    limit_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    # Relationships
    connection: Mapped[BankConnection] = relationship(
        "BankConnection", back_populates="accounts"
    )


class Transaction(Base):
    """Canonical transaction, unique per (user, provider transaction id)."""

    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "provider_transaction_id",
            name="uq_transactions_user_provider_id",
        ),
    )

    transaction_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    connection_id: Mapped[str] = mapped_column(String, nullable=False)
    provider_transaction_id: Mapped[str] = mapped_column(String, nullable=False)
    account_id: Mapped[str] = mapped_column(String, nullable=False)
    posted_at: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    merchant_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_categories: Mapped[list[str]] = mapped_column(
        JSON, nullable=False, default=list
    )
    internal_category: Mapped[str] = mapped_column(String, nullable=False)
    category_confidence: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0
    )
    pending: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE")
    )
    location: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_hidden: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE")
    )
    is_deleted: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE")
    )
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class AccountMapping(Base):
    """Links a provider account to an internal credit card."""

    __tablename__ = "account_mappings"
    __table_args__ = (
        Index(
            "uq_account_mappings_active_account",
            "user_id",
            "provider_account_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    mapping_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    provider_account_id: Mapped[str] = mapped_column(String, nullable=False)
    provider_account_name: Mapped[str] = mapped_column(String, nullable=False)
    credit_card_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("credit_cards.card_id"), nullable=False
    )
    credit_card_name: Mapped[str] = mapped_column(String, nullable=False)
    institution_name: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("TRUE")
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class CreditCard(Base):
    """Credit card with its reward configuration and accumulated rewards."""

    __tablename__ = "credit_cards"

    card_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    issuer: Mapped[str] = mapped_column(String, nullable=False, default="")
    reward_type: Mapped[str] = mapped_column(String, nullable=False, default="cashback")
    reward_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    # {"Food & Dining": {"type": "cashback", "rate": 3}}
    category_rewards: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    cash_back_balance: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    points_balance: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    miles_balance: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    # Relationships
    bonuses: Mapped[list[CardBonus]] = relationship(
        "CardBonus",
        back_populates="card",
        cascade="all, delete-orphan",
        order_by="CardBonus.bonus_id",
        lazy="selectin",
    )


class CardBonus(Base):
    """Spend-based sign-up bonus tracked on a card."""

    __tablename__ = "card_bonuses"

    bonus_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    card_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("credit_cards.card_id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String, nullable=False)
    spending_required_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_spending_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    spending_by_category: Mapped[dict[str, int]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="not_started")
    auto_tracking: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("TRUE")
    )
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    date_completed: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Relationships
    card: Mapped[CreditCard] = relationship("CreditCard", back_populates="bonuses")


class RewardEntry(Base):
    """Reward earned by one transaction on one card."""

    __tablename__ = "reward_entries"
    __table_args__ = (
        UniqueConstraint("card_id", "transaction_id", name="uq_reward_entries_txn"),
    )

    entry_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    card_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("credit_cards.card_id", ondelete="CASCADE"), nullable=False
    )
    transaction_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("transactions.transaction_id"), nullable=False
    )
    posted_at: Mapped[date] = mapped_column(Date, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    reward_type: Mapped[str] = mapped_column(String, nullable=False)
    reward_earned: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class Budget(Base):
    """Spending budget for one category over a period."""

    __tablename__ = "budgets"

    budget_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    period: Mapped[str] = mapped_column(String, nullable=False, default="monthly")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("TRUE")
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    @property
    def remaining_cents(self) -> int:
        return self.amount_cents - self.spent_cents

    def covers(self, posted_at: date) -> bool:
        """Return True when the budget period contains the given date."""
        if posted_at < self.start_date:
            return False
        return self.end_date is None or posted_at <= self.end_date


class BudgetApplication(Base):
    """Cents of one transaction already counted toward one budget."""

    __tablename__ = "budget_applications"

    budget_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("budgets.budget_id", ondelete="CASCADE"),
        primary_key=True,
    )
    transaction_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("transactions.transaction_id"), primary_key=True
    )
    applied_cents: Mapped[int] = mapped_column(Integer, nullable=False)


class SyncLog(Base):
    """One record per sync run against one connection."""

    __tablename__ = "sync_logs"

    sync_log_id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    connection_id: Mapped[str] = mapped_column(String, nullable=False)
    sync_type: Mapped[str] = mapped_column(String, nullable=False, default="manual")
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    started_at: Mapped[datetime] = mapped_column(TIMESTAMP, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    transactions_added: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transactions_updated: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    errors: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    failure_kind: Mapped[str | None] = mapped_column(String, nullable=True)
