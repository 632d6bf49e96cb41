from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date

from spendsync.accounts.resolver import AccountTypeResolver
from spendsync.adapters.db.facade import DB, BonusUpdate, RewardEntryData
from spendsync.adapters.db.models import CardBonus, CreditCard, RewardEntry, Transaction
from spendsync.rewards.bonus import (
    BonusProgress,
    BonusStatus,
    advance_bonus,
    expire_bonus,
)
from spendsync.rewards.calculator import (
    RewardResult,
    RewardType,
    calculate_reward,
    reward_config_from_card,
)
from spendsync.sync.logger import SyncLogger


@dataclass
class PropagationOutcome:
    transaction_id: int
    skipped: bool = False
    credit_card_id: int | None = None
    reward: RewardResult | None = None
    reward_delta: float = 0.0
    completed_bonus_ids: list[int] = field(default_factory=list)
    budget_deltas: dict[int, int] = field(default_factory=dict)


def bonus_progress(bonus: CardBonus) -> BonusProgress:
    return BonusProgress(
        bonus_id=bonus.bonus_id,
        spending_required_cents=bonus.spending_required_cents,
        current_spending_cents=bonus.current_spending_cents,
        status=bonus.status,  # type: ignore[arg-type]
        category=bonus.category,
        auto_tracking=bonus.auto_tracking,
        end_date=bonus.end_date,
        date_completed=bonus.date_completed,
        spending_by_category=dict(bonus.spending_by_category or {}),
    )


def _balance_deltas(
    reward: RewardResult, previous: RewardEntry | None
) -> dict[str, float]:
    new_type = reward.reward_type.value
    if previous is None:
        return {new_type: reward.reward_amount}
    if previous.reward_type == new_type:
        return {new_type: round(reward.reward_amount - previous.reward_earned, 2)}
    return {
        previous.reward_type: -previous.reward_earned,
        new_type: reward.reward_amount,
    }


def _bonus_update(progress: BonusProgress) -> BonusUpdate:
    return BonusUpdate(
        bonus_id=progress.bonus_id,
        status=BonusStatus(progress.status).value,
        current_spending_cents=progress.current_spending_cents,
        spending_by_category=progress.spending_by_category,
        date_completed=progress.date_completed,
    )


class RewardBudgetPropagator:
    """Apply a reconciled transaction to card rewards, bonuses and budgets.

    Every effect is recorded per transaction (reward entries for cards,
    budget applications for budgets) and only the difference from what was
    already recorded is applied, so replaying a transaction changes nothing.
    Only positive amounts (money leaving the account) earn rewards or count
    as spend. A transaction that stops counting, because it was deleted or
    its amount dropped to zero or below, has its recorded effects reversed.
    """

    def __init__(
        self,
        db: DB,
        resolver: AccountTypeResolver,
        *,
        sync_logger: SyncLogger | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._db = db
        self._resolver = resolver
        self._logger = sync_logger or SyncLogger()
        self._today = today

    def propagate(self, user_id: str, transaction: Transaction) -> PropagationOutcome:
        outcome = PropagationOutcome(transaction_id=transaction.transaction_id)
        counts = not transaction.is_deleted and transaction.amount_cents > 0
        outcome.skipped = not counts

        resolution = self._resolver.resolve(user_id, transaction.account_id)
        if resolution.is_credit and resolution.credit_card_id is not None:
            card = self._db.get_card(user_id, resolution.credit_card_id)
            if card is not None and counts:
                self._apply_card(user_id, card, transaction, outcome)
            elif card is not None:
                self._reverse_card(user_id, card, transaction, outcome)

        self._apply_budgets(user_id, transaction, outcome, counts)
        return outcome

    def expire_bonuses(self, user_id: str) -> list[int]:
        """Close every open bonus of the user that is past its end date.

        Returns:
            Ids of the bonuses that expired
        """
        today = self._today()
        expired: list[int] = []
        for card in self._db.list_cards(user_id):
            updates: list[BonusUpdate] = []
            for bonus in card.bonuses:
                original = bonus_progress(bonus)
                progress = expire_bonus(original, today)
                if progress is not original:
                    updates.append(_bonus_update(progress))
            if not updates:
                continue
            self._db.save_bonus_updates(
                user_id=user_id, card_id=card.card_id, bonuses=updates
            )
            for update in updates:
                expired.append(update.bonus_id)
                self._logger.bonus_expired(card.card_id, update.bonus_id)
        return expired

    def _apply_card(
        self,
        user_id: str,
        card: CreditCard,
        transaction: Transaction,
        outcome: PropagationOutcome,
    ) -> None:
        config = reward_config_from_card(
            card.reward_type, card.reward_rate, card.category_rewards
        )
        category = transaction.internal_category
        reward = calculate_reward(transaction.amount_cents, category, config)
        previous = self._db.get_reward_entry(card.card_id, transaction.transaction_id)

        # Bonuses only ever see spend growth; a smaller amount is not un-counted.
        basis_delta = transaction.amount_cents - (
            previous.amount_cents if previous else 0
        )
        today = self._today()
        updates: list[BonusUpdate] = []
        for bonus in card.bonuses:
            original = bonus_progress(bonus)
            progress = expire_bonus(original, today)
            if basis_delta > 0:
                progress = advance_bonus(progress, basis_delta, category, today)
            if progress is original:
                continue
            updates.append(_bonus_update(progress))
            status = BonusStatus(progress.status)
            if status is BonusStatus.COMPLETED and original.status != status:
                outcome.completed_bonus_ids.append(progress.bonus_id)
                self._logger.bonus_completed(card.card_id, progress.bonus_id)

        deltas = _balance_deltas(reward, previous)
        self._db.save_card_reward(
            user_id=user_id,
            card_id=card.card_id,
            balance_deltas=deltas,
            bonuses=updates,
            entry=RewardEntryData(
                transaction_id=transaction.transaction_id,
                posted_at=transaction.posted_at,
                category=category,
                amount_cents=transaction.amount_cents,
                reward_type=reward.reward_type.value,
                reward_earned=reward.reward_amount,
                description=transaction.merchant_name or transaction.name,
            ),
        )

        outcome.credit_card_id = card.card_id
        outcome.reward = reward
        outcome.reward_delta = deltas.get(reward.reward_type.value, 0.0)
        self._logger.reward_applied(
            card.card_id,
            transaction.transaction_id,
            outcome.reward_delta,
            reward.reward_type.value,
        )

    def _reverse_card(
        self,
        user_id: str,
        card: CreditCard,
        transaction: Transaction,
        outcome: PropagationOutcome,
    ) -> None:
        previous = self._db.get_reward_entry(card.card_id, transaction.transaction_id)
        if previous is None or not previous.reward_earned:
            return

        reward = RewardResult(0.0, RewardType(previous.reward_type))
        deltas = _balance_deltas(reward, previous)
        # The entry keeps its amount so bonus spend is not counted twice if
        # the transaction starts counting again.
        self._db.save_card_reward(
            user_id=user_id,
            card_id=card.card_id,
            balance_deltas=deltas,
            bonuses=[],
            entry=RewardEntryData(
                transaction_id=transaction.transaction_id,
                posted_at=transaction.posted_at,
                category=transaction.internal_category,
                amount_cents=previous.amount_cents,
                reward_type=previous.reward_type,
                reward_earned=0.0,
                description=transaction.merchant_name or transaction.name,
            ),
        )

        outcome.credit_card_id = card.card_id
        outcome.reward = reward
        outcome.reward_delta = deltas[previous.reward_type]
        self._logger.reward_applied(
            card.card_id,
            transaction.transaction_id,
            outcome.reward_delta,
            previous.reward_type,
        )

    def _apply_budgets(
        self,
        user_id: str,
        transaction: Transaction,
        outcome: PropagationOutcome,
        counts: bool,
    ) -> None:
        for budget in self._db.list_active_budgets(user_id):
            matches = (
                counts
                and budget.category == transaction.internal_category
                and budget.covers(transaction.posted_at)
            )
            target = transaction.amount_cents if matches else 0
            if not target and not self._db.get_budget_application(
                budget.budget_id, transaction.transaction_id
            ):
                continue
            delta = self._db.apply_budget_spend(
                budget_id=budget.budget_id,
                transaction_id=transaction.transaction_id,
                applied_cents=target,
            )
            if delta:
                outcome.budget_deltas[budget.budget_id] = delta
                self._logger.budget_applied(
                    budget.budget_id, transaction.transaction_id, delta
                )
