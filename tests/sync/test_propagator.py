from __future__ import annotations

from datetime import date
from unittest.mock import MagicMock

import pytest

from spendsync.accounts.resolver import AccountTypeResolver
from spendsync.adapters.db.facade import DB
from spendsync.adapters.db.models import CreditCard, Transaction
from spendsync.sync.logger import SyncLogger
from spendsync.sync.propagator import RewardBudgetPropagator

USER = "user_1"
CARD_ACCOUNT = "acc_card"
CHECKING_ACCOUNT = "acc_checking"
TODAY = date(2025, 1, 20)


def create_card(db: DB, **overrides: object) -> CreditCard:
    fields: dict[str, object] = {
        "user_id": USER,
        "name": "Freedom Flex",
        "issuer": "Chase",
        "reward_type": "cashback",
        "reward_rate": None,
        "category_rewards": {"Food & Dining": {"type": "cashback", "rate": 3}},
    }
    fields.update(overrides)
    card = db.create_card(**fields)  # type: ignore[arg-type]
    db.insert_mapping(
        user_id=USER,
        provider_account_id=CARD_ACCOUNT,
        provider_account_name=card.name,
        credit_card_id=card.card_id,
        credit_card_name=card.name,
        institution_name=card.issuer,
    )
    return card


def create_transaction(
    db: DB,
    provider_id: str,
    amount_cents: int,
    *,
    category: str = "Food & Dining",
    account_id: str = CARD_ACCOUNT,
    posted_at: date = date(2025, 1, 15),
) -> Transaction:
    return db.insert_transaction(
        {
            "user_id": USER,
            "connection_id": "conn_1",
            "provider_transaction_id": provider_id,
            "account_id": account_id,
            "posted_at": posted_at,
            "amount_cents": amount_cents,
            "name": f"Charge {provider_id}",
            "merchant_name": None,
            "provider_categories": [],
            "pending": False,
            "location": None,
            "internal_category": category,
            "category_confidence": 1.0,
        }
    )


def create_propagator(db: DB) -> RewardBudgetPropagator:
    sync_logger = MagicMock(spec=SyncLogger)
    return RewardBudgetPropagator(
        db,
        AccountTypeResolver(db, sync_logger=sync_logger),
        sync_logger=sync_logger,
        today=lambda: TODAY,
    )


class TestRewards:
    def test_category_override_and_default_rate(self, db: DB) -> None:
        # Setup
        card = create_card(db)
        propagator = create_propagator(db)
        dinner = create_transaction(db, "tx_food", 10_000)
        gas = create_transaction(db, "tx_gas", 10_000, category="Transportation")

        # Act
        food_outcome = propagator.propagate(USER, dinner)
        gas_outcome = propagator.propagate(USER, gas)

        # Assert
        assert food_outcome.reward is not None
        assert food_outcome.reward.reward_amount == 3.00
        assert gas_outcome.reward is not None
        assert gas_outcome.reward.reward_amount == 1.00
        stored = db.get_card(USER, card.card_id)
        assert stored is not None
        assert stored.cash_back_balance == pytest.approx(4.00)
        assert len(db.list_reward_entries(USER, card.card_id)) == 2

    def test_replay_does_not_double_count(self, db: DB) -> None:
        card = create_card(db)
        propagator = create_propagator(db)
        txn = create_transaction(db, "tx_1", 10_000)

        propagator.propagate(USER, txn)
        replay = propagator.propagate(USER, txn)

        assert replay.reward_delta == 0.0
        stored = db.get_card(USER, card.card_id)
        assert stored is not None
        assert stored.cash_back_balance == pytest.approx(3.00)
        assert len(db.list_reward_entries(USER, card.card_id)) == 1

    def test_amount_change_applies_only_the_difference(self, db: DB) -> None:
        card = create_card(db)
        propagator = create_propagator(db)
        txn = create_transaction(db, "tx_1", 10_000)
        propagator.propagate(USER, txn)

        changed = db.update_transaction_mutable(
            txn.transaction_id, {"amount_cents": 20_000}
        )
        outcome = propagator.propagate(USER, changed)

        assert outcome.reward_delta == pytest.approx(3.00)
        stored = db.get_card(USER, card.card_id)
        assert stored is not None
        assert stored.cash_back_balance == pytest.approx(6.00)
        (entry,) = db.list_reward_entries(USER, card.card_id)
        assert entry.amount_cents == 20_000
        assert entry.reward_earned == pytest.approx(6.00)

    def test_points_card_credits_points_balance(self, db: DB) -> None:
        card = create_card(
            db,
            reward_type="points",
            category_rewards={"Travel": {"type": "points", "rate": 3}},
        )
        propagator = create_propagator(db)
        flight = create_transaction(db, "tx_flight", 25_000, category="Travel")

        propagator.propagate(USER, flight)

        stored = db.get_card(USER, card.card_id)
        assert stored is not None
        assert stored.points_balance == pytest.approx(750.0)
        assert stored.cash_back_balance == 0.0

    def test_bank_account_earns_nothing(self, db: DB) -> None:
        card = create_card(db)
        propagator = create_propagator(db)
        txn = create_transaction(db, "tx_1", 10_000, account_id=CHECKING_ACCOUNT)

        outcome = propagator.propagate(USER, txn)

        assert outcome.credit_card_id is None
        assert outcome.reward is None
        assert db.list_reward_entries(USER, card.card_id) == []

    @pytest.mark.parametrize("amount_cents", [0, -5_000])
    def test_non_positive_amounts_are_skipped(self, db: DB, amount_cents: int) -> None:
        card = create_card(db)
        db.create_budget(
            user_id=USER,
            name="Dining",
            category="Food & Dining",
            amount_cents=50_000,
            start_date=date(2025, 1, 1),
        )
        propagator = create_propagator(db)
        refund = create_transaction(db, "tx_refund", amount_cents)

        outcome = propagator.propagate(USER, refund)

        assert outcome.skipped is True
        assert db.list_reward_entries(USER, card.card_id) == []
        assert db.list_active_budgets(USER)[0].spent_cents == 0

    def test_deleted_transaction_is_skipped(self, db: DB) -> None:
        create_card(db)
        propagator = create_propagator(db)
        txn = create_transaction(db, "tx_1", 10_000)
        deleted = db.mark_transaction_deleted(USER, txn.transaction_id)
        assert deleted is not None

        outcome = propagator.propagate(USER, deleted)

        assert outcome.skipped is True


    @pytest.mark.parametrize("amount_cents", [0, -5_000])
    def test_amount_dropping_to_non_positive_reverses_earlier_effects(
        self, db: DB, amount_cents: int
    ) -> None:
        # Setup
        card = create_card(db)
        budget = db.create_budget(
            user_id=USER,
            name="Dining",
            category="Food & Dining",
            amount_cents=50_000,
            start_date=date(2025, 1, 1),
        )
        propagator = create_propagator(db)
        txn = create_transaction(db, "tx_1", 10_000)
        propagator.propagate(USER, txn)

        # Act
        changed = db.update_transaction_mutable(
            txn.transaction_id, {"amount_cents": amount_cents}
        )
        outcome = propagator.propagate(USER, changed)

        # Assert
        assert outcome.skipped is True
        assert outcome.reward_delta == pytest.approx(-3.00)
        assert outcome.budget_deltas == {budget.budget_id: -10_000}
        stored_card = db.get_card(USER, card.card_id)
        assert stored_card is not None
        assert stored_card.cash_back_balance == pytest.approx(0.0)
        (entry,) = db.list_reward_entries(USER, card.card_id)
        assert entry.reward_earned == 0.0
        stored_budget = db.get_budget(USER, budget.budget_id)
        assert stored_budget is not None
        assert stored_budget.spent_cents == 0

    def test_deleted_transaction_reverses_earlier_effects(self, db: DB) -> None:
        card = create_card(db)
        budget = db.create_budget(
            user_id=USER,
            name="Dining",
            category="Food & Dining",
            amount_cents=50_000,
            start_date=date(2025, 1, 1),
        )
        propagator = create_propagator(db)
        txn = create_transaction(db, "tx_1", 10_000)
        propagator.propagate(USER, txn)
        deleted = db.mark_transaction_deleted(USER, txn.transaction_id)
        assert deleted is not None

        propagator.propagate(USER, deleted)
        replay = propagator.propagate(USER, deleted)

        assert replay.reward_delta == 0.0
        assert replay.budget_deltas == {}
        stored_card = db.get_card(USER, card.card_id)
        assert stored_card is not None
        assert stored_card.cash_back_balance == pytest.approx(0.0)
        stored_budget = db.get_budget(USER, budget.budget_id)
        assert stored_budget is not None
        assert stored_budget.spent_cents == 0

    def test_reversed_transaction_counting_again_does_not_recount_bonus(
        self, db: DB
    ) -> None:
        card = create_card(db)
        db.add_card_bonus(
            card_id=card.card_id, title="Spend $400", spending_required_cents=40_000
        )
        propagator = create_propagator(db)
        txn = create_transaction(db, "tx_1", 10_000)
        propagator.propagate(USER, txn)
        propagator.propagate(
            USER, db.update_transaction_mutable(txn.transaction_id, {"amount_cents": 0})
        )

        propagator.propagate(
            USER,
            db.update_transaction_mutable(txn.transaction_id, {"amount_cents": 10_000}),
        )

        stored = db.get_card(USER, card.card_id)
        assert stored is not None
        assert stored.cash_back_balance == pytest.approx(3.00)
        assert stored.bonuses[0].current_spending_cents == 10_000


class TestBonuses:
    def test_bonus_completes_on_threshold(self, db: DB) -> None:
        # Setup
        card = create_card(db)
        bonus = db.add_card_bonus(
            card_id=card.card_id,
            title="Spend $40",
            spending_required_cents=4_000,
            end_date=date(2025, 3, 31),
        )
        propagator = create_propagator(db)

        # Act
        statuses = []
        completed: list[int] = []
        for i, amount in enumerate([1_500, 1_500, 1_200]):
            outcome = propagator.propagate(
                USER, create_transaction(db, f"tx_{i}", amount)
            )
            completed.extend(outcome.completed_bonus_ids)
            stored = db.get_card(USER, card.card_id)
            assert stored is not None
            statuses.append(stored.bonuses[0].status)

        # Assert
        assert statuses == ["in_progress", "in_progress", "completed"]
        assert completed == [bonus.bonus_id]
        final = db.get_card(USER, card.card_id)
        assert final is not None
        assert final.bonuses[0].current_spending_cents == 4_200
        assert final.bonuses[0].date_completed == TODAY
        assert final.bonuses[0].spending_by_category == {"Food & Dining": 4_200}

    def test_replay_does_not_advance_bonus(self, db: DB) -> None:
        card = create_card(db)
        db.add_card_bonus(
            card_id=card.card_id, title="Spend $40", spending_required_cents=4_000
        )
        propagator = create_propagator(db)
        txn = create_transaction(db, "tx_1", 1_500)

        propagator.propagate(USER, txn)
        propagator.propagate(USER, txn)

        stored = db.get_card(USER, card.card_id)
        assert stored is not None
        assert stored.bonuses[0].current_spending_cents == 1_500

    def test_category_bonus_ignores_other_categories(self, db: DB) -> None:
        card = create_card(db)
        db.add_card_bonus(
            card_id=card.card_id,
            title="Travel bonus",
            spending_required_cents=10_000,
            category="Travel",
        )
        propagator = create_propagator(db)

        propagator.propagate(USER, create_transaction(db, "tx_1", 5_000))

        stored = db.get_card(USER, card.card_id)
        assert stored is not None
        assert stored.bonuses[0].status == "not_started"
        assert stored.bonuses[0].current_spending_cents == 0

    def test_bonus_past_end_date_expires_without_progress(self, db: DB) -> None:
        card = create_card(db)
        db.add_card_bonus(
            card_id=card.card_id,
            title="Spend $40",
            spending_required_cents=4_000,
            end_date=date(2025, 1, 10),
        )
        propagator = create_propagator(db)

        propagator.propagate(USER, create_transaction(db, "tx_1", 5_000))

        stored = db.get_card(USER, card.card_id)
        assert stored is not None
        assert stored.bonuses[0].status == "expired"
        assert stored.bonuses[0].current_spending_cents == 0

    def test_expire_bonuses_closes_lapsed_bonuses_without_transactions(
        self, db: DB
    ) -> None:
        # Setup
        card = create_card(db)
        lapsed = db.add_card_bonus(
            card_id=card.card_id,
            title="Spend $40",
            spending_required_cents=4_000,
            end_date=date(2025, 1, 10),
        )
        db.add_card_bonus(
            card_id=card.card_id,
            title="Spend $400",
            spending_required_cents=40_000,
            end_date=date(2025, 3, 31),
        )
        propagator = create_propagator(db)

        # Act
        expired = propagator.expire_bonuses(USER)
        again = propagator.expire_bonuses(USER)

        # Assert
        assert expired == [lapsed.bonus_id]
        assert again == []
        stored = db.get_card(USER, card.card_id)
        assert stored is not None
        statuses = {bonus.bonus_id: bonus.status for bonus in stored.bonuses}
        assert statuses[lapsed.bonus_id] == "expired"
        assert sorted(statuses.values()) == ["expired", "not_started"]


class TestBudgets:
    @pytest.mark.parametrize("order", [[0, 1, 2], [2, 0, 1]])
    def test_spend_is_sum_regardless_of_order(
        self, db: DB, order: list[int]
    ) -> None:
        budget = db.create_budget(
            user_id=USER,
            name="Dining",
            category="Food & Dining",
            amount_cents=50_000,
            start_date=date(2025, 1, 1),
            end_date=date(2025, 1, 31),
        )
        propagator = create_propagator(db)
        transactions = [create_transaction(db, f"tx_{i}", 2_500) for i in range(3)]

        for index in order:
            propagator.propagate(USER, transactions[index])
        propagator.propagate(USER, transactions[order[0]])

        stored = db.get_budget(USER, budget.budget_id)
        assert stored is not None
        assert stored.spent_cents == 7_500
        assert stored.remaining_cents == 42_500

    def test_budget_ignores_other_categories_and_periods(self, db: DB) -> None:
        budget = db.create_budget(
            user_id=USER,
            name="Dining",
            category="Food & Dining",
            amount_cents=50_000,
            start_date=date(2025, 1, 1),
            end_date=date(2025, 1, 31),
        )
        propagator = create_propagator(db)

        propagator.propagate(
            USER, create_transaction(db, "tx_1", 2_500, category="Shopping")
        )
        propagator.propagate(
            USER, create_transaction(db, "tx_2", 2_500, posted_at=date(2025, 2, 3))
        )

        stored = db.get_budget(USER, budget.budget_id)
        assert stored is not None
        assert stored.spent_cents == 0

    def test_bank_spend_counts_toward_budget(self, db: DB) -> None:
        budget = db.create_budget(
            user_id=USER,
            name="Dining",
            category="Food & Dining",
            amount_cents=50_000,
            start_date=date(2025, 1, 1),
        )
        propagator = create_propagator(db)
        txn = create_transaction(db, "tx_1", 4_000, account_id=CHECKING_ACCOUNT)

        outcome = propagator.propagate(USER, txn)

        assert outcome.budget_deltas == {budget.budget_id: 4_000}

    def test_open_ended_monthly_budget_stops_after_its_month(self, db: DB) -> None:
        budget = db.create_budget(
            user_id=USER,
            name="Dining",
            category="Food & Dining",
            amount_cents=50_000,
            start_date=date(2025, 1, 1),
            period="monthly",
        )
        propagator = create_propagator(db)

        outcome = propagator.propagate(
            USER, create_transaction(db, "tx_1", 10_000, posted_at=date(2026, 6, 15))
        )

        assert outcome.budget_deltas == {}
        stored = db.get_budget(USER, budget.budget_id)
        assert stored is not None
        assert stored.spent_cents == 0

    def test_recategorized_spend_moves_between_budgets(self, db: DB) -> None:
        dining = db.create_budget(
            user_id=USER,
            name="Dining",
            category="Food & Dining",
            amount_cents=50_000,
            start_date=date(2025, 1, 1),
        )
        shopping = db.create_budget(
            user_id=USER,
            name="Shopping",
            category="Shopping",
            amount_cents=50_000,
            start_date=date(2025, 1, 1),
        )
        propagator = create_propagator(db)
        txn = create_transaction(db, "tx_1", 4_000)
        propagator.propagate(USER, txn)

        moved = db.update_transaction_category(USER, txn.transaction_id, "Shopping")
        assert moved is not None
        outcome = propagator.propagate(USER, moved)

        assert outcome.budget_deltas == {
            dining.budget_id: -4_000,
            shopping.budget_id: 4_000,
        }
