"""
Liability aggregation utilities for multi-provider debt account management.

This module provides the canonical account/connection records, the provider
implementations (Plaid, Method, demo, manual) and the reconciliation engine
that merges fetched data into storage.
"""

from .abstract_provider import (
    AbstractLiabilityProvider,
    AccountRecord,
    ConnectionRecord,
    AccountCategory,
    DataMode,
    DataSource,
    ProviderError,
)
from .provider_manager import ProviderManager, get_provider_manager

__all__ = [
    'AbstractLiabilityProvider',
    'AccountRecord',
    'ConnectionRecord',
    'AccountCategory',
    'DataMode',
    'DataSource',
    'ProviderError',
    'ProviderManager',
    'get_provider_manager',
]
