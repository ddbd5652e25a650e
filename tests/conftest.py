"""
Pytest configuration for the debt tracker backend tests

Provides an in-memory persistence gateway that goes through the same row
mapping as the Supabase implementation, plus a scriptable provider for
reconciliation tests.
"""

import pytest
import sys
import asyncio
import os
import itertools
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Add the project root to Python path for imports
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from utils.liabilities.abstract_provider import (  # noqa: E402
    AbstractLiabilityProvider, AccountRecord, ConnectionRecord, ConnectOptions, ConnectResult,
    DataSource, AccountNotFoundError, UpstreamSyncError,
)
from utils.liabilities.connection_registry import ConnectionRegistry  # noqa: E402
from utils.liabilities.storage import (  # noqa: E402
    LiabilityStorage, account_from_row, account_to_row, connection_from_row, connection_to_row,
)


class InMemoryLiabilityStorage(LiabilityStorage):
    """Dict-backed gateway storing the same rows the Supabase tables would hold."""

    def __init__(self):
        self.account_rows: Dict[str, dict] = {}
        self.connection_rows: Dict[str, dict] = {}
        self._ids = itertools.count(1)
        self.account_writes = 0

    def _stamp(self, row: dict, existing: Optional[dict], prefix: str) -> dict:
        now = datetime.now(timezone.utc).isoformat()
        row['id'] = existing['id'] if existing else f"{prefix}_{next(self._ids)}"
        row['created_at'] = existing['created_at'] if existing else now
        row['updated_at'] = now
        return row

    async def list_accounts(self, owner_user_id, include_hidden=True):
        return [
            account_from_row(row) for row in self.account_rows.values()
            if row['user_id'] == owner_user_id and (include_hidden or not row['is_hidden'])
        ]

    async def get_account(self, account_id, owner_user_id):
        row = self.account_rows.get(account_id)
        if row is None or row['user_id'] != owner_user_id:
            return None
        return account_from_row(row)

    async def upsert_account(self, record):
        existing = self.account_rows.get(record.id) if record.id else None
        row = self._stamp(account_to_row(record), existing, 'acct')
        self.account_rows[row['id']] = row
        self.account_writes += 1
        return account_from_row(row)

    async def list_active_connections(self, owner_user_id, provider=None):
        return [
            connection_from_row(row) for row in self.connection_rows.values()
            if row['user_id'] == owner_user_id and row['is_active']
            and (provider is None or row['provider'] == DataSource(provider).value)
        ]

    async def get_connection(self, connection_id, owner_user_id):
        row = self.connection_rows.get(connection_id)
        if row is None or row['user_id'] != owner_user_id:
            return None
        return connection_from_row(row)

    async def find_connections_by_external_ref(self, provider, external_ref):
        return [
            connection_from_row(row) for row in self.connection_rows.values()
            if row['provider'] == DataSource(provider).value
            and row['external_ref'] == external_ref and row['is_active']
        ]

    async def upsert_connection(self, record):
        if record.ephemeral:
            return record
        existing = self.connection_rows.get(record.id) if record.id else None
        row = self._stamp(connection_to_row(record), existing, 'conn')
        self.connection_rows[row['id']] = row
        return connection_from_row(row)

    async def deactivate_connection(self, connection_id, owner_user_id):
        row = self.connection_rows.get(connection_id)
        if row is None or row['user_id'] != owner_user_id or not row['is_active']:
            return False
        row['is_active'] = False
        return True


class ScriptedProvider(AbstractLiabilityProvider):
    """
    Provider returning canned accounts per connection external_ref.

    ``accounts`` maps external_ref -> list of account dicts (AccountRecord
    kwargs); ``failing`` lists external_refs whose fetch raises and
    ``hanging`` lists external_refs whose full sync never returns.
    """

    def __init__(self, source: DataSource = DataSource.PLAID, available: bool = True):
        self.source = source
        self.available = available
        self.accounts: Dict[str, List[dict]] = {}
        self.failing = set()
        self.hanging = set()
        self.fetch_calls = 0
        self.terminated: List[str] = []

    def get_source_tag(self):
        return self.source

    def is_available(self):
        return self.available

    def _records(self, connection):
        self.fetch_calls += 1
        if connection.external_ref in self.failing:
            raise UpstreamSyncError("upstream down", self.source.value)
        return [AccountRecord(source=self.source, **data) for data in self.accounts.get(connection.external_ref, [])]

    async def initiate_connection(self, options: ConnectOptions):
        return ConnectResult(success=True, embed_token="embed-token")

    async def terminate_connection(self, connection):
        self.terminated.append(connection.id)
        return connection.active

    async def list_accounts(self, connection):
        return self._records(connection)

    async def sync_one_account(self, connection, provider_account_id):
        for record in self._records(connection):
            if provider_account_id in (record.provider_account_id, record.account_label):
                return record
        raise AccountNotFoundError(self.source.value, provider_account_id)

    async def sync_all_accounts(self, connection):
        if connection.external_ref in self.hanging:
            await asyncio.sleep(60)
        return self._records(connection)


def make_account(**overrides) -> dict:
    """AccountRecord kwargs for a typical credit card."""
    data = {
        'provider_account_id': 'acc_1',
        'institution_name': 'Test Bank',
        'account_label': 'Test Card',
        'account_category': 'credit_card',
        'current_balance': Decimal('500.00'),
        'interest_rate': Decimal('19.99'),
        'minimum_payment': Decimal('25.00'),
        'credit_limit': Decimal('5000.00'),
    }
    data.update(overrides)
    return data


@pytest.fixture
def storage():
    return InMemoryLiabilityStorage()


@pytest.fixture
def registry(storage):
    return ConnectionRegistry(storage)


@pytest.fixture
def scripted_provider():
    return ScriptedProvider()


@pytest.fixture
def plaid_connection():
    """Unsaved Plaid connection for user_1 (item_1)."""
    return ConnectionRecord(
        owner_user_id='user_1',
        provider=DataSource.PLAID,
        provider_session_ref='access-sandbox-1',
        external_ref='item_1',
        institution_label='Test Bank',
    )


@pytest.fixture(autouse=True)
def provider_env(monkeypatch):
    """Deterministic provider configuration for every test."""
    monkeypatch.setenv("PROVIDER_TIMEOUT_SECONDS", os.getenv("TEST_PROVIDER_TIMEOUT", "5"))
    monkeypatch.delenv("PLAID_WEBHOOK_VERIFICATION_KEY", raising=False)
    monkeypatch.delenv("METHOD_WEBHOOK_SECRET", raising=False)
    monkeypatch.delenv("WEBHOOK_BASE_URL", raising=False)


@pytest.fixture
def account_data():
    """Factory for AccountRecord kwargs: ``account_data(current_balance=...)``."""
    return make_account


@pytest.fixture
def provider_factory():
    """Factory for ScriptedProvider instances."""
    return ScriptedProvider
