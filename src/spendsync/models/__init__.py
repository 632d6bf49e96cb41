"""Provider-native data shapes consumed by the sync pipeline."""

from spendsync.models.transaction import (
    ProviderAccount,
    ProviderBalance,
    ProviderLocation,
    ProviderTransaction,
)

__all__ = [
    "ProviderAccount",
    "ProviderBalance",
    "ProviderLocation",
    "ProviderTransaction",
]
