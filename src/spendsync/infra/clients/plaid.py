from __future__ import annotations

from datetime import date
import json
import os
from typing import Any, Literal, Self, cast
import urllib.error
import urllib.request

from pydantic import BaseModel, Field

from spendsync.models.transaction import (
    ProviderAccount,
    ProviderLocation,
    ProviderTransaction,
)

PlaidEnv = Literal["sandbox", "development", "production"]

# /transactions/get rejects counts above 500.
MAX_PAGE_SIZE = 500


class PlaidClientError(Exception):
    """Base error for Plaid client failures."""

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code


class PlaidTimeoutError(PlaidClientError):
    """Raised when Plaid does not answer within the configured timeout."""


PLAID_ENV_MAP: dict[PlaidEnv, str] = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}


class PlaidBaseModel(BaseModel):
    """Shared base for Plaid response models with a short parse alias."""

    @classmethod
    def parse(cls, data: Any) -> Self:
        return cls.model_validate(data)


class BalancesModel(PlaidBaseModel):
    available: float | None = None
    current: float | None = None
    limit: float | None = None
    iso_currency_code: str | None = None


class AccountsGetAccount(PlaidBaseModel):
    account_id: str
    name: str
    official_name: str | None = None
    mask: str | None = None
    subtype: str | None = None
    type: str | None = None
    balances: BalancesModel = Field(default_factory=BalancesModel)

    def to_typed(self) -> ProviderAccount:
        return {
            "account_id": self.account_id,
            "name": self.name,
            "official_name": self.official_name,
            "mask": self.mask,
            "type": self.type,
            "subtype": self.subtype,
            "balances": {
                "available": self.balances.available,
                "current": self.balances.current,
                "limit": self.balances.limit,
                "iso_currency_code": self.balances.iso_currency_code,
            },
        }


class AccountsGetResponse(PlaidBaseModel):
    accounts: list[AccountsGetAccount]


class LocationModel(PlaidBaseModel):
    address: str | None = None
    city: str | None = None
    region: str | None = None
    postal_code: str | None = None
    country: str | None = None

    def to_typed(self) -> ProviderLocation:
        return cast(ProviderLocation, self.model_dump())


class PlaidTransactionModel(PlaidBaseModel):
    transaction_id: str
    account_id: str
    amount: float
    date: str
    name: str
    merchant_name: str | None = None
    pending: bool = False
    category: list[str] | None = None
    location: LocationModel | None = None

    def to_typed(self) -> ProviderTransaction:
        txn: ProviderTransaction = {
            "transaction_id": self.transaction_id,
            "account_id": self.account_id,
            "amount": self.amount,
            "date": self.date,
            "name": self.name,
            "merchant_name": self.merchant_name,
            "category": self.category,
            "pending": self.pending,
            "location": self.location.to_typed() if self.location else None,
        }
        return txn


class TransactionsGetResponse(PlaidBaseModel):
    transactions: list[PlaidTransactionModel] = Field(default_factory=list)
    total_transactions: int = 0


class PlaidClient:
    def __init__(
        self,
        *,
        client_id: str,
        secret: str,
        env: PlaidEnv = "sandbox",
        timeout_seconds: float = 30.0,
    ) -> None:
        self._client_id = client_id
        self._secret = secret
        self._env = env
        self._timeout_seconds = timeout_seconds

    @property
    def env(self) -> PlaidEnv:
        return self._env

    @classmethod
    def from_env(cls, *, timeout_seconds: float = 30.0) -> PlaidClient:
        """Construct a PlaidClient from environment variables.

        Required:
        - PLAID_CLIENT_ID
        - PLAID_ENV (defaults to sandbox)
        - PLAID_<ENV>_SECRET (e.g. PLAID_SANDBOX_SECRET)
        """
        env_str = os.getenv("PLAID_ENV", "sandbox").lower()
        if env_str not in PLAID_ENV_MAP:
            raise PlaidClientError(
                f"Invalid PLAID_ENV={env_str!r}. "
                "Expected one of: sandbox, development, production."
            )
        env: PlaidEnv = env_str  # type: ignore[assignment]

        client_id = cls._getenv_or_die("PLAID_CLIENT_ID")
        secret = cls._secret_from_env(env)
        return cls(
            client_id=client_id,
            secret=secret,
            env=env,
            timeout_seconds=timeout_seconds,
        )

    @staticmethod
    def _getenv_or_die(name: str) -> str:
        value = os.getenv(name)
        if not value:
            raise PlaidClientError(f"Missing required environment variable: {name}")
        return value

    @classmethod
    def _secret_from_env(cls, env: PlaidEnv) -> str:
        if env == "production":
            return cls._getenv_or_die("PLAID_PRODUCTION_SECRET")
        if env == "development":
            return cls._getenv_or_die("PLAID_DEVELOPMENT_SECRET")
        if env == "sandbox":
            return cls._getenv_or_die("PLAID_SANDBOX_SECRET")
        raise PlaidClientError(f"Invalid PLAID_ENV={env!r}")

    def _base_url(self) -> str:
        try:
            return PLAID_ENV_MAP[self._env]
        except KeyError as e:
            raise PlaidClientError(
                f"Unsupported Plaid environment: {self._env!r}"
            ) from e

    def _parse_json_response(self, body: str) -> dict[str, Any]:
        """Parse JSON response from Plaid API.

        Args:
            body: JSON response body as string

        Returns:
            Parsed JSON as dictionary

        Raises:
            PlaidClientError: If JSON parsing fails
        """
        try:
            return cast(dict[str, Any], json.loads(body))
        except json.JSONDecodeError as e:
            raise PlaidClientError(
                f"Failed to parse Plaid response as JSON: {e}: {body}"
            ) from e

    @staticmethod
    def _error_code_from_body(body: str) -> str | None:
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            return None
        if isinstance(payload, dict):
            code = payload.get("error_code")
            return str(code) if code else None
        return None

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = self._base_url().rstrip("/") + path
        data = json.dumps(payload).encode("utf-8")
        req = urllib.request.Request(  # noqa: S310
            url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(  # noqa: S310 - external HTTPS
                req, timeout=self._timeout_seconds
            ) as resp:
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:  # pragma: no cover - network-dependent
            err_body = e.read().decode("utf-8", "ignore")
            raise PlaidClientError(
                f"Plaid API error ({e.code}): {err_body}",
                error_code=self._error_code_from_body(err_body),
            ) from e
        except urllib.error.URLError as e:  # pragma: no cover - network-dependent
            if isinstance(e.reason, TimeoutError):
                raise PlaidTimeoutError(
                    f"Timed out calling Plaid API {path}: {e.reason}"
                ) from e
            raise PlaidClientError(f"Network error calling Plaid API: {e}") from e
        except TimeoutError as e:  # pragma: no cover - network-dependent
            raise PlaidTimeoutError(f"Timed out calling Plaid API {path}") from e

        return self._parse_json_response(body)

    # High-level APIs -----------------------------------------------------

    def fetch_accounts(self, access_token: str) -> list[ProviderAccount]:
        """Return accounts and balances for an item via /accounts/get."""
        payload: dict[str, Any] = {
            "client_id": self._client_id,
            "secret": self._secret,
            "access_token": access_token,
        }
        resp = AccountsGetResponse.parse(self._post("/accounts/get", payload))
        return [account.to_typed() for account in resp.accounts]

    def list_transactions(
        self,
        access_token: str,
        *,
        start_date: date,
        end_date: date,
        account_ids: list[str] | None = None,
        offset: int = 0,
        limit: int = MAX_PAGE_SIZE,
    ) -> TransactionsGetResponse:
        """Return a single page of /transactions/get."""
        options: dict[str, Any] = {
            "count": min(limit, MAX_PAGE_SIZE),
            "offset": offset,
        }
        if account_ids:
            options["account_ids"] = account_ids

        payload: dict[str, Any] = {
            "client_id": self._client_id,
            "secret": self._secret,
            "access_token": access_token,
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "options": options,
        }
        return TransactionsGetResponse.parse(self._post("/transactions/get", payload))

    def fetch_transactions(
        self,
        access_token: str,
        start_date: date,
        end_date: date,
        account_ids: list[str] | None = None,
    ) -> list[ProviderTransaction]:
        """Fetch every transaction in the window, following offset pagination.

        Transactions are returned in the order Plaid delivers them.
        """
        transactions: list[ProviderTransaction] = []
        offset = 0
        while True:
            page = self.list_transactions(
                access_token,
                start_date=start_date,
                end_date=end_date,
                account_ids=account_ids,
                offset=offset,
            )
            transactions.extend(txn.to_typed() for txn in page.transactions)
            offset += len(page.transactions)
            if not page.transactions or offset >= page.total_transactions:
                break
        return transactions
