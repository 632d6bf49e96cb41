from __future__ import annotations

from datetime import date, datetime
from typing import Any

import pytest
from sqlalchemy.exc import IntegrityError

from spendsync.adapters.db.facade import (
    DB,
    BonusUpdate,
    RewardEntryData,
    budget_period_end,
)
from spendsync.adapters.db.models import BankConnection, Transaction

USER = "user_1"


def create_connection(
    db: DB, *, user_id: str = USER, item_id: str = "item_1"
) -> BankConnection:
    return db.save_connection(
        user_id=user_id,
        item_id=item_id,
        access_token="access-sandbox-1",
        institution_name="Chase",
    )


def create_transaction_data(
    *,
    provider_transaction_id: str = "tx_1",
    user_id: str = USER,
    amount_cents: int = 4_250,
    posted_at: date = date(2025, 1, 15),
    internal_category: str = "Food & Dining",
    **overrides: Any,
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "user_id": user_id,
        "connection_id": "conn_1",
        "provider_transaction_id": provider_transaction_id,
        "account_id": "acc_1",
        "posted_at": posted_at,
        "amount_cents": amount_cents,
        "name": "Blue Bottle",
        "merchant_name": "Blue Bottle Coffee",
        "provider_categories": ["Food and Drink"],
        "internal_category": internal_category,
        "category_confidence": 0.9,
        "pending": True,
    }
    data.update(overrides)
    return data


class TestSession:
    def test_rolls_back_on_error(self, db: DB) -> None:
        with pytest.raises(RuntimeError):
            with db.session() as session:
                session.add(
                    Transaction(
                        user_id=USER,
                        connection_id="conn_1",
                        provider_transaction_id="tx_rollback",
                        account_id="acc_1",
                        posted_at=date(2025, 1, 1),
                        amount_cents=100,
                        internal_category="Other",
                    )
                )
                session.flush()
                raise RuntimeError("boom")

        assert db.get_transaction_by_provider_id(USER, "tx_rollback") is None


class TestConnections:
    def test_save_connection_upserts_by_item(self, db: DB) -> None:
        first = create_connection(db)
        second = db.save_connection(
            user_id=USER, item_id="item_1", access_token="rotated-token"
        )

        assert second.connection_id == first.connection_id
        assert second.access_token == "rotated-token"
        assert len(db.list_connections(USER)) == 1

    def test_get_connection_is_scoped_by_user(self, db: DB) -> None:
        connection = create_connection(db)

        assert db.get_connection(USER, connection.connection_id) is not None
        assert db.get_connection("someone_else", connection.connection_id) is None

    def test_mark_connection_synced(self, db: DB) -> None:
        connection = create_connection(db)
        synced_at = datetime(2025, 2, 1, 12, 0, 0)

        db.mark_connection_synced(connection.connection_id, synced_at)

        stored = db.get_connection(USER, connection.connection_id)
        assert stored is not None
        assert stored.last_sync == synced_at

    def test_replace_connection_accounts_upserts_snapshot(self, db: DB) -> None:
        connection = create_connection(db)
        account: Any = {
            "account_id": "acc_1",
            "name": "Freedom Credit Card",
            "official_name": None,
            "mask": "1234",
            "type": "credit",
            "subtype": "credit card",
            "balances": {
                "available": None,
                "current": 250.5,
                "limit": 5000.0,
                "iso_currency_code": "USD",
            },
        }

        db.replace_connection_accounts(connection.connection_id, [account])
        account["balances"]["current"] = 300.0
        db.replace_connection_accounts(connection.connection_id, [account])

        (stored,) = db.list_connection_accounts(connection.connection_id)
        assert stored.current_cents == 30_000
        assert stored.limit_cents == 500_000
        assert stored.available_cents is None


class TestTransactions:
    def test_insert_and_lookup_by_provider_id(self, db: DB) -> None:
        created = db.insert_transaction(create_transaction_data())

        found = db.get_transaction_by_provider_id(USER, "tx_1")

        assert found is not None
        assert found.transaction_id == created.transaction_id
        assert found.is_hidden is False
        assert found.is_deleted is False
        assert found.tags == []

    def test_provider_id_is_unique_per_user(self, db: DB) -> None:
        db.insert_transaction(create_transaction_data())
        db.insert_transaction(create_transaction_data(user_id="user_2"))

        with pytest.raises(IntegrityError):
            db.insert_transaction(create_transaction_data())

    def test_update_mutable_ignores_user_owned_fields(self, db: DB) -> None:
        created = db.insert_transaction(create_transaction_data())

        updated = db.update_transaction_mutable(
            created.transaction_id,
            {
                "pending": False,
                "amount_cents": 4_300,
                "internal_category": "Shopping",
                "is_hidden": True,
            },
        )

        assert updated.pending is False
        assert updated.amount_cents == 4_300
        assert updated.internal_category == "Food & Dining"
        assert updated.is_hidden is False

    def test_list_transactions_filters_and_orders(self, db: DB) -> None:
        db.insert_transaction(
            create_transaction_data(
                provider_transaction_id="a", posted_at=date(2025, 1, 1)
            )
        )
        db.insert_transaction(
            create_transaction_data(
                provider_transaction_id="b",
                posted_at=date(2025, 1, 3),
                internal_category="Travel",
            )
        )
        hidden = db.insert_transaction(
            create_transaction_data(
                provider_transaction_id="c", posted_at=date(2025, 1, 2)
            )
        )
        db.update_transaction_visibility(USER, hidden.transaction_id, True)

        visible = db.list_transactions(USER)
        everything = db.list_transactions(USER, include_hidden=True)
        travel = db.list_transactions(USER, category="Travel")
        january_first = db.list_transactions(
            USER, start_date=date(2025, 1, 1), end_date=date(2025, 1, 1)
        )

        assert [t.provider_transaction_id for t in visible] == ["b", "a"]
        assert [t.provider_transaction_id for t in everything] == ["b", "c", "a"]
        assert [t.provider_transaction_id for t in travel] == ["b"]
        assert [t.provider_transaction_id for t in january_first] == ["a"]

    def test_summarize_transactions(self, db: DB) -> None:
        db.insert_transaction(create_transaction_data(provider_transaction_id="a"))
        db.insert_transaction(
            create_transaction_data(
                provider_transaction_id="b",
                amount_cents=-100_000,
                internal_category="Income",
            )
        )
        db.insert_transaction(
            create_transaction_data(provider_transaction_id="c", amount_cents=750)
        )

        summary = db.summarize_transactions(USER)

        assert summary.total_transactions == 3
        assert summary.income_cents == 100_000
        assert summary.expenses_cents == 5_000
        assert summary.net_cents == 95_000
        assert summary.category_breakdown == {
            "Food & Dining": 5_000,
            "Income": 100_000,
        }

    def test_user_edits_are_scoped_by_user(self, db: DB) -> None:
        created = db.insert_transaction(create_transaction_data())

        intruder = db.update_transaction_category(
            "intruder", created.transaction_id, "Travel"
        )
        assert intruder is None
        edited = db.update_transaction_category(USER, created.transaction_id, "Travel")
        deleted = db.mark_transaction_deleted(USER, created.transaction_id)

        assert edited is not None
        assert edited.internal_category == "Travel"
        assert deleted is not None
        assert deleted.is_deleted is True
        assert db.list_transactions(USER, include_hidden=True) == []


class TestMappings:
    def test_only_one_active_mapping_per_account(self, db: DB) -> None:
        card = db.create_card(user_id=USER, name="Freedom", issuer="Chase")
        mapping = db.insert_mapping(
            user_id=USER,
            provider_account_id="acc_1",
            provider_account_name="Freedom",
            credit_card_id=card.card_id,
            credit_card_name=card.name,
            institution_name="Chase",
        )

        with pytest.raises(IntegrityError):
            db.insert_mapping(
                user_id=USER,
                provider_account_id="acc_1",
                provider_account_name="Freedom",
                credit_card_id=card.card_id,
                credit_card_name=card.name,
                institution_name="Chase",
            )

        assert db.deactivate_mapping(USER, mapping.mapping_id) is True
        assert db.get_active_mapping(USER, "acc_1") is None

        replacement = db.insert_mapping(
            user_id=USER,
            provider_account_id="acc_1",
            provider_account_name="Freedom",
            credit_card_id=card.card_id,
            credit_card_name=card.name,
            institution_name="Chase",
        )
        active = db.get_active_mapping(USER, "acc_1")
        assert active is not None
        assert active.mapping_id == replacement.mapping_id

    def test_deactivate_other_users_mapping_is_refused(self, db: DB) -> None:
        card = db.create_card(user_id=USER, name="Freedom")
        mapping = db.insert_mapping(
            user_id=USER,
            provider_account_id="acc_1",
            provider_account_name="Freedom",
            credit_card_id=card.card_id,
            credit_card_name=card.name,
            institution_name=None,
        )

        assert db.deactivate_mapping("intruder", mapping.mapping_id) is False
        assert db.get_active_mapping(USER, "acc_1") is not None


class TestCardsAndBudgets:
    def test_save_card_reward_applies_balances_bonuses_and_entry(self, db: DB) -> None:
        card = db.create_card(user_id=USER, name="Sapphire", reward_type="points")
        bonus = db.add_card_bonus(
            card_id=card.card_id, title="60k points", spending_required_cents=400_000
        )
        txn = db.insert_transaction(create_transaction_data())

        db.save_card_reward(
            user_id=USER,
            card_id=card.card_id,
            balance_deltas={"points": 42.5},
            bonuses=[
                BonusUpdate(
                    bonus_id=bonus.bonus_id,
                    status="in_progress",
                    current_spending_cents=4_250,
                    spending_by_category={"Food & Dining": 4_250},
                    date_completed=None,
                )
            ],
            entry=RewardEntryData(
                transaction_id=txn.transaction_id,
                posted_at=txn.posted_at,
                category="Food & Dining",
                amount_cents=4_250,
                reward_type="points",
                reward_earned=42.5,
            ),
        )

        stored = db.get_card(USER, card.card_id)
        assert stored is not None
        assert stored.points_balance == 42.5
        assert stored.bonuses[0].status == "in_progress"
        assert stored.bonuses[0].current_spending_cents == 4_250
        entry = db.get_reward_entry(card.card_id, txn.transaction_id)
        assert entry is not None
        assert entry.reward_earned == 42.5
        assert len(db.list_reward_entries(USER, card.card_id)) == 1

    def test_get_card_is_scoped_by_user(self, db: DB) -> None:
        card = db.create_card(user_id=USER, name="Sapphire")

        assert db.get_card("intruder", card.card_id) is None

    def test_apply_budget_spend_tracks_applied_amount(self, db: DB) -> None:
        budget = db.create_budget(
            user_id=USER,
            name="Dining",
            category="Food & Dining",
            amount_cents=50_000,
            start_date=date(2025, 1, 1),
        )
        txn = db.insert_transaction(create_transaction_data())

        first = db.apply_budget_spend(
            budget_id=budget.budget_id,
            transaction_id=txn.transaction_id,
            applied_cents=4_250,
        )
        replay = db.apply_budget_spend(
            budget_id=budget.budget_id,
            transaction_id=txn.transaction_id,
            applied_cents=4_250,
        )
        corrected = db.apply_budget_spend(
            budget_id=budget.budget_id,
            transaction_id=txn.transaction_id,
            applied_cents=4_000,
        )

        stored = db.get_budget(USER, budget.budget_id)
        assert (first, replay, corrected) == (4_250, 0, -250)
        assert stored is not None
        assert stored.spent_cents == 4_000
        assert stored.remaining_cents == 46_000
        applied = db.get_budget_application(budget.budget_id, txn.transaction_id)
        assert applied == 4_000


class TestSyncLogs:
    def test_list_sync_logs_newest_first(self, db: DB) -> None:
        older = db.insert_sync_log(
            user_id=USER,
            connection_id="conn_1",
            sync_type="manual",
            started_at=datetime(2025, 1, 1, 8, 0),
        )
        newer = db.insert_sync_log(
            user_id=USER,
            connection_id="conn_1",
            sync_type="automatic",
            started_at=datetime(2025, 1, 2, 8, 0),
        )
        db.insert_sync_log(
            user_id="user_2",
            connection_id="conn_2",
            sync_type="manual",
            started_at=datetime(2025, 1, 3, 8, 0),
        )

        logs = db.list_sync_logs(USER)

        assert [log.sync_log_id for log in logs] == [
            newer.sync_log_id,
            older.sync_log_id,
        ]
        assert logs[0].status == "pending"
        assert logs[0].errors == []

    def test_claim_refuses_while_a_live_run_holds_the_connection(self, db: DB) -> None:
        first = db.claim_sync_log(
            user_id=USER,
            connection_id="conn_1",
            sync_type="manual",
            started_at=datetime(2025, 1, 1, 8, 0),
            stale_before=datetime(2025, 1, 1, 7, 0),
        )
        second = db.claim_sync_log(
            user_id=USER,
            connection_id="conn_1",
            sync_type="manual",
            started_at=datetime(2025, 1, 1, 8, 5),
            stale_before=datetime(2025, 1, 1, 7, 5),
        )
        other_connection = db.claim_sync_log(
            user_id=USER,
            connection_id="conn_2",
            sync_type="manual",
            started_at=datetime(2025, 1, 1, 8, 5),
            stale_before=datetime(2025, 1, 1, 7, 5),
        )

        assert first is not None
        assert second is None
        assert other_connection is not None
        assert len(db.list_sync_logs(USER)) == 2

    def test_claim_abandons_stale_runs(self, db: DB) -> None:
        stale = db.insert_sync_log(
            user_id=USER,
            connection_id="conn_1",
            sync_type="automatic",
            started_at=datetime(2025, 1, 1, 6, 0),
        )

        claimed = db.claim_sync_log(
            user_id=USER,
            connection_id="conn_1",
            sync_type="manual",
            started_at=datetime(2025, 1, 1, 8, 0),
            stale_before=datetime(2025, 1, 1, 7, 0),
        )

        assert claimed is not None
        assert claimed.status == "pending"
        abandoned = db.get_sync_log(stale.sync_log_id)
        assert abandoned is not None
        assert abandoned.status == "failed"
        assert abandoned.failure_kind == "unexpected"
        assert abandoned.completed_at == datetime(2025, 1, 1, 8, 0)

    def test_finished_runs_do_not_block_a_claim(self, db: DB) -> None:
        done = db.insert_sync_log(
            user_id=USER,
            connection_id="conn_1",
            sync_type="manual",
            started_at=datetime(2025, 1, 1, 7, 55),
        )
        db.update_sync_log(
            done.sync_log_id,
            status="completed",
            completed_at=datetime(2025, 1, 1, 7, 58),
        )

        claimed = db.claim_sync_log(
            user_id=USER,
            connection_id="conn_1",
            sync_type="manual",
            started_at=datetime(2025, 1, 1, 8, 0),
            stale_before=datetime(2025, 1, 1, 7, 0),
        )

        assert claimed is not None


class TestBudgetPeriods:
    @pytest.mark.parametrize(
        ("start", "period", "expected"),
        [
            (date(2025, 1, 1), "weekly", date(2025, 1, 7)),
            (date(2025, 1, 1), "monthly", date(2025, 1, 31)),
            (date(2025, 1, 31), "monthly", date(2025, 2, 27)),
            (date(2024, 2, 15), "monthly", date(2024, 3, 14)),
            (date(2025, 1, 1), "yearly", date(2025, 12, 31)),
            (date(2024, 2, 29), "yearly", date(2025, 2, 27)),
            (date(2025, 1, 1), "custom", None),
        ],
    )
    def test_budget_period_end(
        self, start: date, period: str, expected: date | None
    ) -> None:
        assert budget_period_end(start, period) == expected

    def test_unknown_period_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown budget period"):
            budget_period_end(date(2025, 1, 1), "fortnightly")

    def test_create_budget_derives_end_from_period(self, db: DB) -> None:
        budget = db.create_budget(
            user_id=USER,
            name="Dining",
            category="Food & Dining",
            amount_cents=50_000,
            start_date=date(2025, 1, 1),
        )

        assert budget.period == "monthly"
        assert budget.end_date == date(2025, 1, 31)
        assert budget.covers(date(2025, 1, 31))
        assert not budget.covers(date(2026, 6, 15))

    def test_create_budget_keeps_explicit_end(self, db: DB) -> None:
        budget = db.create_budget(
            user_id=USER,
            name="Trip",
            category="Travel",
            amount_cents=200_000,
            start_date=date(2025, 1, 1),
            end_date=date(2025, 3, 15),
            period="custom",
        )

        assert budget.end_date == date(2025, 3, 15)

    def test_custom_budget_without_end_stays_open(self, db: DB) -> None:
        budget = db.create_budget(
            user_id=USER,
            name="Savings",
            category="Shopping",
            amount_cents=200_000,
            start_date=date(2025, 1, 1),
            period="custom",
        )

        assert budget.end_date is None
        assert budget.covers(date(2030, 1, 1))

    @pytest.mark.parametrize(
        ("period", "end_date"),
        [("fortnightly", None), ("monthly", date(2024, 12, 31))],
    )
    def test_create_budget_rejects_bad_periods(
        self, db: DB, period: str, end_date: date | None
    ) -> None:
        with pytest.raises(ValueError):
            db.create_budget(
                user_id=USER,
                name="Dining",
                category="Food & Dining",
                amount_cents=50_000,
                start_date=date(2025, 1, 1),
                end_date=end_date,
                period=period,
            )

        assert db.list_active_budgets(USER) == []
