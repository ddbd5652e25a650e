"""
Persistence gateway for debt accounts and provider connections.

LiabilityStorage is the contract consumed by the reconciliation engine. Every
query is scoped to the owning user. SupabaseLiabilityStorage is the production
implementation on the ``debt_accounts`` and ``provider_connections`` tables.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .abstract_provider import (
    AccountRecord, ConnectionRecord, DataSource, PersistenceError, to_date
)

logger = logging.getLogger(__name__)

ACCOUNTS_TABLE = 'debt_accounts'
CONNECTIONS_TABLE = 'provider_connections'


class LiabilityStorage(ABC):
    """CRUD over account and connection records, always filtered by owner."""

    @abstractmethod
    async def list_accounts(self, owner_user_id: str, include_hidden: bool = True) -> List[AccountRecord]:
        pass

    @abstractmethod
    async def get_account(self, account_id: str, owner_user_id: str) -> Optional[AccountRecord]:
        pass

    @abstractmethod
    async def upsert_account(self, record: AccountRecord) -> AccountRecord:
        """Insert when ``record.id`` is unset, otherwise update that row."""
        pass

    @abstractmethod
    async def list_active_connections(self, owner_user_id: str,
                                      provider: Optional[DataSource] = None) -> List[ConnectionRecord]:
        pass

    @abstractmethod
    async def get_connection(self, connection_id: str, owner_user_id: str) -> Optional[ConnectionRecord]:
        pass

    @abstractmethod
    async def find_connections_by_external_ref(self, provider: DataSource,
                                               external_ref: str) -> List[ConnectionRecord]:
        """Active connections for a provider-side session id (webhook routing)."""
        pass

    @abstractmethod
    async def upsert_connection(self, record: ConnectionRecord) -> ConnectionRecord:
        pass

    @abstractmethod
    async def deactivate_connection(self, connection_id: str, owner_user_id: str) -> bool:
        pass


def _money(value: Optional[Decimal]) -> Optional[str]:
    return f"{value:.2f}" if value is not None else None


def _iso(value: Optional[Any]) -> Optional[str]:
    return value.isoformat() if isinstance(value, (datetime, date)) else value


def _timestamp(value: Optional[Any]) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace('Z', '+00:00'))


def account_to_row(record: AccountRecord) -> Dict[str, Any]:
    """
    Map an AccountRecord onto the debt_accounts columns.

    The provider id lives in one of two parallel columns selected by source;
    exactly one is set for aggregator records and neither for manual/demo.
    """
    return {
        'user_id': record.owner_user_id,
        'sync_source': record.source.value,
        'plaid_account_id': record.provider_account_id if record.source == DataSource.PLAID else None,
        'method_account_id': record.provider_account_id if record.source == DataSource.METHOD else None,
        'is_manual': record.is_manual,
        'institution_name': record.institution_name,
        'account_nickname': record.account_label,
        'account_type': record.account_category.value,
        'current_balance': _money(record.current_balance),
        'interest_rate': _money(record.interest_rate),
        'minimum_payment': _money(record.minimum_payment),
        'credit_limit': _money(record.credit_limit),
        'last_payment_date': _iso(record.last_payment_date),
        'next_payment_due_date': _iso(record.next_payment_due_date),
        'is_hidden': record.hidden,
        'data_mode': record.data_mode.value,
        'last_synced': _iso(record.last_synced_at),
    }


def account_from_row(row: Dict[str, Any]) -> AccountRecord:
    source = DataSource(row.get('sync_source') or ('manual' if row.get('is_manual') else 'plaid'))
    return AccountRecord(
        id=row.get('id'),
        owner_user_id=row.get('user_id'),
        source=source,
        provider_account_id=row.get('plaid_account_id') or row.get('method_account_id'),
        institution_name=row.get('institution_name') or 'Unknown',
        account_label=row.get('account_nickname') or 'Account',
        account_category=row.get('account_type') or 'personal_loan',
        current_balance=row.get('current_balance') or 0,
        interest_rate=row.get('interest_rate') or 0,
        minimum_payment=row.get('minimum_payment'),
        credit_limit=row.get('credit_limit'),
        last_payment_date=to_date(row.get('last_payment_date')),
        next_payment_due_date=to_date(row.get('next_payment_due_date')),
        hidden=bool(row.get('is_hidden')),
        data_mode=row.get('data_mode') or 'live',
        last_synced_at=_timestamp(row.get('last_synced')),
        created_at=_timestamp(row.get('created_at')),
        updated_at=_timestamp(row.get('updated_at')),
    )


def connection_to_row(record: ConnectionRecord) -> Dict[str, Any]:
    return {
        'user_id': record.owner_user_id,
        'provider': record.provider.value,
        'session_ref': record.provider_session_ref,
        'external_ref': record.external_ref,
        'institution_id': record.institution_id,
        'institution_name': record.institution_label,
        'account_ids': list(record.account_ids),
        'data_mode': record.data_mode.value,
        'is_active': record.active,
        'last_synced': _iso(record.last_synced_at),
    }


def connection_from_row(row: Dict[str, Any]) -> ConnectionRecord:
    return ConnectionRecord(
        id=row.get('id'),
        owner_user_id=row['user_id'],
        provider=row['provider'],
        provider_session_ref=row.get('session_ref') or '',
        external_ref=row.get('external_ref'),
        institution_id=row.get('institution_id'),
        institution_label=row.get('institution_name') or 'Unknown Institution',
        account_ids=list(row.get('account_ids') or []),
        data_mode=row.get('data_mode') or 'live',
        active=bool(row.get('is_active')),
        last_synced_at=_timestamp(row.get('last_synced')),
        created_at=_timestamp(row.get('created_at')),
    )


class SupabaseLiabilityStorage(LiabilityStorage):
    """Supabase-backed persistence gateway."""

    def __init__(self, supabase=None):
        if supabase is None:
            from utils.supabase.db_client import get_supabase_client
            supabase = get_supabase_client()
        self.supabase = supabase

    async def list_accounts(self, owner_user_id: str, include_hidden: bool = True) -> List[AccountRecord]:
        try:
            query = self.supabase.table(ACCOUNTS_TABLE)\
                .select('*')\
                .eq('user_id', owner_user_id)
            if not include_hidden:
                query = query.eq('is_hidden', False)
            result = query.order('created_at').execute()
            return [account_from_row(row) for row in result.data or []]
        except Exception as e:
            logger.error(f"Error listing debt accounts for user {owner_user_id}: {e}")
            raise PersistenceError("Failed to list debt accounts", e)

    async def get_account(self, account_id: str, owner_user_id: str) -> Optional[AccountRecord]:
        try:
            result = self.supabase.table(ACCOUNTS_TABLE)\
                .select('*')\
                .eq('id', account_id)\
                .eq('user_id', owner_user_id)\
                .limit(1)\
                .execute()
        except Exception as e:
            logger.error(f"Error loading debt account {account_id}: {e}")
            raise PersistenceError("Failed to load debt account", e)
        if not result.data:
            return None
        return account_from_row(result.data[0])

    async def upsert_account(self, record: AccountRecord) -> AccountRecord:
        if not record.owner_user_id:
            raise PersistenceError("Account record has no owner")
        row = account_to_row(record)
        try:
            if record.id:
                # updated_at is maintained by a database trigger
                result = self.supabase.table(ACCOUNTS_TABLE)\
                    .update(row)\
                    .eq('id', record.id)\
                    .eq('user_id', record.owner_user_id)\
                    .execute()
            else:
                result = self.supabase.table(ACCOUNTS_TABLE)\
                    .insert(row)\
                    .execute()
        except Exception as e:
            logger.error(f"Error saving debt account for user {record.owner_user_id}: {e}")
            raise PersistenceError("Failed to save debt account", e)
        if not result.data:
            raise PersistenceError("Database write returned no data")
        return account_from_row(result.data[0])

    async def list_active_connections(self, owner_user_id: str,
                                      provider: Optional[DataSource] = None) -> List[ConnectionRecord]:
        try:
            query = self.supabase.table(CONNECTIONS_TABLE)\
                .select('*')\
                .eq('user_id', owner_user_id)\
                .eq('is_active', True)
            if provider is not None:
                query = query.eq('provider', DataSource(provider).value)
            result = query.order('created_at').execute()
            return [connection_from_row(row) for row in result.data or []]
        except Exception as e:
            logger.error(f"Error listing provider connections for user {owner_user_id}: {e}")
            raise PersistenceError("Failed to list provider connections", e)

    async def get_connection(self, connection_id: str, owner_user_id: str) -> Optional[ConnectionRecord]:
        try:
            result = self.supabase.table(CONNECTIONS_TABLE)\
                .select('*')\
                .eq('id', connection_id)\
                .eq('user_id', owner_user_id)\
                .limit(1)\
                .execute()
        except Exception as e:
            logger.error(f"Error loading provider connection {connection_id}: {e}")
            raise PersistenceError("Failed to load provider connection", e)
        if not result.data:
            return None
        return connection_from_row(result.data[0])

    async def find_connections_by_external_ref(self, provider: DataSource,
                                               external_ref: str) -> List[ConnectionRecord]:
        try:
            result = self.supabase.table(CONNECTIONS_TABLE)\
                .select('*')\
                .eq('provider', DataSource(provider).value)\
                .eq('external_ref', external_ref)\
                .eq('is_active', True)\
                .execute()
            return [connection_from_row(row) for row in result.data or []]
        except Exception as e:
            logger.error(f"Error looking up {provider} connection {external_ref}: {e}")
            raise PersistenceError("Failed to look up provider connection", e)

    async def upsert_connection(self, record: ConnectionRecord) -> ConnectionRecord:
        if record.ephemeral:
            return record
        row = connection_to_row(record)
        try:
            if record.id:
                result = self.supabase.table(CONNECTIONS_TABLE)\
                    .update(row)\
                    .eq('id', record.id)\
                    .eq('user_id', record.owner_user_id)\
                    .execute()
            else:
                result = self.supabase.table(CONNECTIONS_TABLE)\
                    .insert(row)\
                    .execute()
        except Exception as e:
            logger.error(f"Error saving {record.provider.value} connection for user {record.owner_user_id}: {e}")
            raise PersistenceError("Failed to save provider connection", e)
        if not result.data:
            raise PersistenceError("Database write returned no data")
        return connection_from_row(result.data[0])

    async def deactivate_connection(self, connection_id: str, owner_user_id: str) -> bool:
        try:
            result = self.supabase.table(CONNECTIONS_TABLE)\
                .update({'is_active': False})\
                .eq('id', connection_id)\
                .eq('user_id', owner_user_id)\
                .eq('is_active', True)\
                .execute()
        except Exception as e:
            logger.error(f"Error deactivating connection {connection_id}: {e}")
            raise PersistenceError("Failed to deactivate provider connection", e)
        return bool(result.data)
