from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from loguru import logger
from sqlalchemy.exc import IntegrityError

from spendsync.adapters.db.facade import DB
from spendsync.adapters.db.models import AccountMapping, CreditCard

ISSUER_MATCH_SCORE = 0.6
NAME_MATCH_WEIGHT = 0.4
MIN_SUGGESTION_SCORE = 0.3


class MappingExistsError(Exception):
    """Raised when a provider account already has an active card mapping."""

    def __init__(self, provider_account_id: str) -> None:
        super().__init__(
            f"Provider account {provider_account_id} already has an active mapping"
        )
        self.provider_account_id = provider_account_id


@dataclass(frozen=True, slots=True)
class SuggestedAccount:
    account_id: str
    name: str
    type: str
    institution_name: str


@dataclass(frozen=True, slots=True)
class MappingSuggestion:
    provider_account_id: str
    provider_account_name: str
    credit_card_id: int
    credit_card_name: str
    confidence: float


def _looks_like_credit(account: SuggestedAccount) -> bool:
    return "credit" in account.type.lower() or "credit" in account.name.lower()


def _issuer_matches(institution_name: str, issuer: str) -> bool:
    institution = institution_name.strip().lower()
    issuer = issuer.strip().lower()
    if not institution or not issuer:
        return False
    return issuer in institution or institution in issuer


def _name_overlap(account_name: str, card_name: str) -> float:
    account_words = account_name.lower().split()
    card_words = card_name.lower().split()
    if not account_words or not card_words:
        return 0.0
    common = [
        word
        for word in account_words
        if any(word in card_word or card_word in word for card_word in card_words)
    ]
    return len(common) / max(len(account_words), len(card_words))


def score_match(account: SuggestedAccount, card: CreditCard) -> float:
    score = 0.0
    if _issuer_matches(account.institution_name, card.issuer):
        score += ISSUER_MATCH_SCORE
    score += _name_overlap(account.name, card.name) * NAME_MATCH_WEIGHT
    return score


class AccountMappingService:
    """User-driven management of provider account to credit card mappings."""

    def __init__(self, db: DB) -> None:
        self._db = db

    def create_mapping(
        self,
        user_id: str,
        *,
        provider_account_id: str,
        provider_account_name: str,
        credit_card_id: int,
        institution_name: str | None = None,
    ) -> AccountMapping:
        """Map a provider account to one of the user's cards.

        Raises:
            LookupError: If the card does not exist for this user
            MappingExistsError: If the account already has an active mapping
        """
        card = self._db.get_card(user_id, credit_card_id)
        if card is None:
            raise LookupError(f"Credit card {credit_card_id} not found")

        if self._db.get_active_mapping(user_id, provider_account_id) is not None:
            raise MappingExistsError(provider_account_id)

        try:
            mapping = self._db.insert_mapping(
                user_id=user_id,
                provider_account_id=provider_account_id,
                provider_account_name=provider_account_name,
                credit_card_id=card.card_id,
                credit_card_name=card.name,
                institution_name=institution_name,
            )
        except IntegrityError as e:
            raise MappingExistsError(provider_account_id) from e

        logger.bind(user_id=user_id, mapping_id=mapping.mapping_id).info(
            "Mapped account {} to card {}", provider_account_id, card.name
        )
        return mapping

    def deactivate_mapping(self, user_id: str, mapping_id: int) -> bool:
        deactivated = self._db.deactivate_mapping(user_id, mapping_id)
        if deactivated:
            logger.bind(user_id=user_id, mapping_id=mapping_id).info(
                "Deactivated account mapping {}", mapping_id
            )
        return deactivated

    def list_mappings(self, user_id: str) -> list[AccountMapping]:
        return self._db.list_active_mappings(user_id)

    def suggest_mappings(
        self,
        accounts: Iterable[SuggestedAccount],
        cards: Iterable[CreditCard],
    ) -> list[MappingSuggestion]:
        """Suggest the best card for each credit-looking account.

        An issuer/institution match is worth 0.6 and shared name words add up
        to 0.4. Only scores above 0.3 are suggested, highest first.
        """
        card_list = list(cards)
        suggestions: list[MappingSuggestion] = []
        for account in accounts:
            if not _looks_like_credit(account):
                continue
            best: CreditCard | None = None
            best_score = 0.0
            for card in card_list:
                score = score_match(account, card)
                if score > best_score and score > MIN_SUGGESTION_SCORE:
                    best, best_score = card, score
            if best is not None:
                suggestions.append(
                    MappingSuggestion(
                        provider_account_id=account.account_id,
                        provider_account_name=account.name,
                        credit_card_id=best.card_id,
                        credit_card_name=best.name,
                        confidence=round(best_score, 4),
                    )
                )
        suggestions.sort(key=lambda s: s.confidence, reverse=True)
        return suggestions
