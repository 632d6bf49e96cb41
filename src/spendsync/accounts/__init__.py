from spendsync.accounts.mappings import (
    AccountMappingService,
    MappingExistsError,
    MappingSuggestion,
    SuggestedAccount,
)
from spendsync.accounts.resolver import AccountResolution, AccountTypeResolver

__all__ = [
    "AccountMappingService",
    "AccountResolution",
    "AccountTypeResolver",
    "MappingExistsError",
    "MappingSuggestion",
    "SuggestedAccount",
]
