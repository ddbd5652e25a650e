"""
Provider manager and reconciliation engine.

Owns the registry of liability providers and is the single path by which
fetched provider data reaches storage. Fetched AccountRecords are reconciled
against the user's stored records by their reconciliation key: matches are
merged in place, everything else is inserted, and nothing is ever deleted by a
sync.
"""

import os
import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from .abstract_provider import (
    AbstractLiabilityProvider, AccountRecord, ConnectOptions, ConnectResult, DataSource,
    SyncSummary, WebhookEventKind,
    AccountNotFoundError, NotConfiguredError, PersistenceError, ProviderError,
    UnknownProviderError, UpstreamSyncError,
)
from .connection_registry import ConnectionRegistry
from .debt_summary import DebtSummary, summarize_accounts
from .demo_provider import DemoLiabilityProvider
from .manual_provider import (
    MANUAL_EDITABLE_FIELDS, MANUAL_REQUIRED_FIELDS, ManualAccountInput, ManualLiabilityProvider,
)
from .method_provider import MethodLiabilityProvider
from .plaid_provider import PlaidLiabilityProvider
from .storage import LiabilityStorage, SupabaseLiabilityStorage

logger = logging.getLogger(__name__)

PROVIDER_DESCRIPTIONS = {
    DataSource.PLAID: ("Plaid", "Connect credit cards, student loans and mortgages through your bank"),
    DataSource.METHOD: ("Method", "Connect liabilities directly from your lenders"),
    DataSource.DEMO: ("Demo data", "Explore the app with realistic sample accounts"),
    DataSource.MANUAL: ("Manual entry", "Enter account details yourself"),
}


def merge_account(stored: AccountRecord, fetched: AccountRecord) -> AccountRecord:
    """
    Merge freshly fetched values into a stored record.

    Identity, visibility and display fields come from the stored record.
    Optional values the fetch did not supply keep their stored value.
    """
    return replace(
        stored,
        current_balance=fetched.current_balance,
        interest_rate=fetched.interest_rate if fetched.rate_reported else stored.interest_rate,
        minimum_payment=_first_set(fetched.minimum_payment, stored.minimum_payment),
        credit_limit=_first_set(fetched.credit_limit, stored.credit_limit),
        last_payment_date=_first_set(fetched.last_payment_date, stored.last_payment_date),
        next_payment_due_date=_first_set(fetched.next_payment_due_date, stored.next_payment_due_date),
        last_synced_at=fetched.last_synced_at or datetime.now(timezone.utc),
        provider_account_id=stored.provider_account_id or fetched.provider_account_id,
    )


def _first_set(value, fallback):
    return value if value is not None else fallback


def _index_by_key(records: List[AccountRecord]) -> Dict[tuple, AccountRecord]:
    return {record.reconciliation_key: record for record in records if record.reconciliation_key}


class ProviderManager:
    """
    Registry of liability providers plus the sync/reconciliation workflows.

    The provider registry is frozen at construction. Providers are stateless
    between calls, so one manager instance serves every request.
    """

    def __init__(self, providers: Mapping[DataSource, AbstractLiabilityProvider],
                 storage: LiabilityStorage, registry: Optional[ConnectionRegistry] = None,
                 timeout: Optional[float] = None):
        self._providers = MappingProxyType(dict(providers))
        self.storage = storage
        self.registry = registry or ConnectionRegistry(storage)
        self.timeout = timeout or float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30"))

    @property
    def providers(self) -> Mapping[DataSource, AbstractLiabilityProvider]:
        return self._providers

    def get_provider(self, source) -> AbstractLiabilityProvider:
        try:
            provider = self._providers.get(DataSource(source))
        except ValueError:
            provider = None
        if provider is None:
            raise UnknownProviderError(str(getattr(source, 'value', source)))
        return provider

    def _require_available(self, source) -> AbstractLiabilityProvider:
        provider = self.get_provider(source)
        if not provider.is_available():
            raise NotConfiguredError(provider.get_source_tag().value)
        return provider

    async def _bounded(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.timeout)

    def get_available_providers(self) -> List[Dict[str, Any]]:
        result = []
        for source, provider in self._providers.items():
            name, description = PROVIDER_DESCRIPTIONS[source]
            result.append({
                'source': source.value,
                'name': name,
                'description': description,
                'available': provider.is_available(),
            })
        return result

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def connect(self, source, options: ConnectOptions) -> ConnectResult:
        """
        Start a connection flow with a provider.

        Raises:
            UnknownProviderError: If the source is not registered
            NotConfiguredError: If the provider lacks credentials
        """
        provider = self._require_available(source)
        source_tag = provider.get_source_tag()

        if options.session_ref is None and source_tag in (DataSource.PLAID, DataSource.METHOD):
            existing = await self.registry.list_active(options.owner_user_id, source_tag)
            if existing:
                options.session_ref = existing[0].provider_session_ref

        try:
            result = await self._bounded(provider.initiate_connection(options))
        except asyncio.TimeoutError:
            logger.error(f"{source_tag.value} connect timed out for user {options.owner_user_id}")
            return ConnectResult(success=False, error=f"{source_tag.value} did not respond in time")

        if result.success and result.connection is not None:
            saved = await self.registry.register(result.connection)
            result.connection = saved
            result.connection_ref = saved.id
        return result

    async def create_element_token(self, options: ConnectOptions) -> str:
        """Mint a Method Connect element token for the user's entity."""
        result = await self.connect(DataSource.METHOD, options)
        if not result.success or not result.embed_token:
            raise UpstreamSyncError(result.error or "Failed to create element token", DataSource.METHOD.value)
        return result.embed_token

    async def exchange_token(self, source, owner_user_id: str, public_token: str,
                             institution_name: Optional[str] = None) -> Dict[str, Any]:
        """
        Exchange a public token, persist the connection and its first fetch.

        Returns:
            {'connection_id', 'accounts_count'}
        """
        provider = self._require_available(source)
        try:
            connection = await self._bounded(
                provider.exchange_public_token(owner_user_id, public_token, institution_name)
            )
        except asyncio.TimeoutError as e:
            raise UpstreamSyncError("Token exchange timed out", provider.get_source_tag().value, e)

        connection = await self.registry.register(connection)

        accounts_count = 0
        try:
            records = await self._bounded(provider.list_accounts(connection))
        except PersistenceError:
            raise
        except Exception as e:
            # The connection stays registered; the next sync retries the fetch.
            logger.warning(f"Initial account fetch failed for connection {connection.id}: {e}")
        else:
            saved = await self._upsert_batch(owner_user_id, records)
            await self.registry.record_sync(connection, [r.provider_account_id for r in records])
            accounts_count = len(saved)

        logger.info(f"Connected {connection.provider.value} for user {owner_user_id}: {accounts_count} accounts")
        return {'connection_id': connection.id, 'accounts_count': accounts_count}

    async def disconnect(self, source, connection_id: str, owner_user_id: str) -> bool:
        """
        Revoke and deactivate a connection. Returns False if it was not found or already inactive.

        An upstream revoke failure does not prevent local deactivation.
        """
        provider = self.get_provider(source)
        connection = await self.registry.get(connection_id, owner_user_id)
        if connection is None or connection.provider != provider.get_source_tag() or not connection.active:
            return False

        try:
            await self._bounded(provider.terminate_connection(connection))
        except Exception as e:
            logger.warning(f"Upstream revoke failed for connection {connection_id}: {e}")

        return await self.registry.deactivate(connection_id, owner_user_id)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _upsert_records(self, owner_user_id: str, records: List[AccountRecord],
                              index: Dict[tuple, AccountRecord]) -> List[AccountRecord]:
        """
        Reconcile fetched records against ``index`` and persist each one.

        ``index`` is updated with every saved record, so when two fetched
        records share a key the later one wins.
        """
        saved = []
        now = datetime.now(timezone.utc)
        for fetched in records:
            fetched.owner_user_id = owner_user_id
            if fetched.last_synced_at is None:
                fetched.last_synced_at = now

            key = fetched.reconciliation_key
            existing = index.get(key) if key else None
            record = merge_account(existing, fetched) if existing else fetched

            stored = await self.storage.upsert_account(record)
            if key:
                index[key] = stored
            saved.append(stored)
        return saved

    async def _upsert_batch(self, owner_user_id: str, records: List[AccountRecord]) -> List[AccountRecord]:
        stored = await self.storage.list_accounts(owner_user_id, include_hidden=True)
        return await self._upsert_records(owner_user_id, records, _index_by_key(stored))

    async def sync_all_for_user(self, owner_user_id: str) -> SyncSummary:
        """
        Sync every active connection of a user.

        Each connection is isolated: a failure increments ``failed`` and the
        loop continues. Storage failures abort the whole sync.
        """
        connections = await self.registry.list_active(owner_user_id)
        stored = await self.storage.list_accounts(owner_user_id, include_hidden=True)
        index = _index_by_key(stored)
        summary = SyncSummary()

        for connection in connections:
            provider = self._providers.get(connection.provider)
            if provider is None or not provider.is_available():
                logger.warning(f"Skipping connection {connection.id}: {connection.provider.value} is not available")
                summary.failed += 1
                continue

            try:
                records = await self._bounded(provider.sync_all_accounts(connection))
                saved = await self._upsert_records(owner_user_id, records, index)
                await self.registry.record_sync(connection, [r.provider_account_id for r in records])
                summary.synced += len(saved)
            except PersistenceError:
                raise
            except Exception as e:
                logger.error(f"Failed to sync connection {connection.id} for user {owner_user_id}: {e}", exc_info=True)
                summary.failed += 1

        logger.info(f"Sync complete for user {owner_user_id}: {summary.synced} synced, {summary.failed} failed")
        return summary

    async def sync_one_account(self, owner_user_id: str, account_id: str) -> bool:
        """Re-fetch a single stored account. Returns False when it cannot be resolved or fetched."""
        account = await self.storage.get_account(account_id, owner_user_id)
        if account is None:
            return False

        connection = await self.registry.resolve_for_account(account)
        if connection is None:
            return False

        provider = self._providers.get(account.source)
        if provider is None or not provider.is_available():
            return False

        lookup_id = account.account_label if account.source == DataSource.DEMO else account.provider_account_id
        try:
            fetched = await self._bounded(provider.sync_one_account(connection, lookup_id))
        except PersistenceError:
            raise
        except Exception as e:
            logger.warning(f"Failed to sync account {account_id} for user {owner_user_id}: {e}")
            return False

        fetched.owner_user_id = owner_user_id
        await self.storage.upsert_account(merge_account(account, fetched))
        await self.registry.record_sync(connection, [fetched.provider_account_id])
        return True

    # ------------------------------------------------------------------
    # Demo and manual data
    # ------------------------------------------------------------------

    async def add_demo_accounts(self, owner_user_id: str, institution: str) -> Dict[str, Any]:
        provider = self._require_available(DataSource.DEMO)
        connection = await self.registry.register(provider.build_connection(owner_user_id, institution))
        records = await provider.list_accounts(connection)
        saved = await self._upsert_batch(owner_user_id, records)
        await self.registry.record_sync(connection, [r.provider_account_id for r in records])
        logger.info(f"Added {len(saved)} demo accounts from {institution} for user {owner_user_id}")
        return {'connection_id': connection.id, 'accounts_count': len(saved)}

    def get_demo_institutions(self) -> List[str]:
        return self._require_available(DataSource.DEMO).get_institutions()

    async def add_manual_account(self, owner_user_id: str, data: ManualAccountInput) -> AccountRecord:
        provider = self.get_provider(DataSource.MANUAL)
        record = provider.build_account(owner_user_id, data)
        record.last_synced_at = datetime.now(timezone.utc)
        return await self.storage.upsert_account(record)

    async def update_manual_account(self, owner_user_id: str, account_id: str,
                                    changes: Dict[str, Any]) -> AccountRecord:
        """
        Apply a partial edit to a manual account.

        Only user-entered fields are editable, and required fields cannot be
        cleared. Aggregator and demo accounts are owned by their sync and are
        reported as not found.
        """
        account = await self.storage.get_account(account_id, owner_user_id)
        if account is None or account.source != DataSource.MANUAL:
            raise AccountNotFoundError("storage", account_id)

        updates = {
            name: value for name, value in changes.items()
            if name in MANUAL_EDITABLE_FIELDS and not (value is None and name in MANUAL_REQUIRED_FIELDS)
        }
        if not updates:
            return account

        updated = replace(account, **updates)
        logger.info(f"Updating manual account {account_id} for user {owner_user_id}: {sorted(updates)}")
        return await self.storage.upsert_account(updated)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_accounts(self, owner_user_id: str, include_hidden: bool = False,
                           include_demo: bool = True) -> List[AccountRecord]:
        accounts = await self.storage.list_accounts(owner_user_id, include_hidden=include_hidden)
        if not include_demo:
            accounts = [a for a in accounts if a.source != DataSource.DEMO]
        return accounts

    async def set_account_hidden(self, owner_user_id: str, account_id: str, hidden: bool) -> AccountRecord:
        account = await self.storage.get_account(account_id, owner_user_id)
        if account is None:
            raise AccountNotFoundError("storage", account_id)
        account.hidden = hidden
        return await self.storage.upsert_account(account)

    async def summarize(self, owner_user_id: str) -> DebtSummary:
        accounts = await self.storage.list_accounts(owner_user_id, include_hidden=False)
        return summarize_accounts(accounts)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def handle_webhook(self, source, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Route a provider push notification into the reconciliation path.

        The payload must already be authenticated by the caller.
        """
        provider = self.get_provider(source)
        event = provider.decode_webhook(payload)
        response = {'event_type': event.event_type, 'kind': event.kind.value}

        if event.kind == WebhookEventKind.IGNORED:
            return {**response, 'action': 'ignored'}

        connections = await self.registry.find_by_external_ref(event.source, event.external_ref)
        if not connections:
            logger.warning(f"No active {event.source.value} connection for webhook {event.event_type}")
            return {**response, 'action': 'no_connection'}

        if event.kind == WebhookEventKind.CONNECTION_ERROR:
            for connection in connections:
                logger.warning(f"{event.source.value} connection {connection.id} reported an error: {event.error}")
            return {**response, 'action': 'logged'}

        summary = SyncSummary()
        for connection in connections:
            if event.institution_label:
                connection.institution_label = event.institution_label
            try:
                if event.kind == WebhookEventKind.ACCOUNTS_UPDATED and event.provider_account_ids:
                    records = []
                    for provider_account_id in event.provider_account_ids:
                        try:
                            records.append(await self._bounded(
                                provider.sync_one_account(connection, provider_account_id)
                            ))
                        except PersistenceError:
                            raise
                        except (ProviderError, asyncio.TimeoutError) as e:
                            logger.warning(f"Webhook sync failed for account {provider_account_id}: {e}")
                            summary.failed += 1
                else:
                    records = await self._bounded(provider.sync_all_accounts(connection))

                saved = await self._upsert_batch(connection.owner_user_id, records)
                await self.registry.record_sync(
                    connection, list(event.provider_account_ids) + [r.provider_account_id for r in records]
                )
                summary.synced += len(saved)
            except PersistenceError:
                raise
            except Exception as e:
                logger.error(f"Webhook sync failed for connection {connection.id}: {e}", exc_info=True)
                summary.failed += 1

        return {**response, 'action': 'synced', **summary.to_dict()}


def build_default_providers(timeout: Optional[float] = None) -> Dict[DataSource, AbstractLiabilityProvider]:
    """Providers enabled by feature flags. Manual entry is always registered."""
    from utils.feature_flags import get_feature_flags, FeatureFlagKey

    timeout = timeout or float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30"))
    flags = get_feature_flags()
    providers: Dict[DataSource, AbstractLiabilityProvider] = {}

    if flags.is_enabled_enum(FeatureFlagKey.PLAID_LIABILITY_SYNC):
        providers[DataSource.PLAID] = PlaidLiabilityProvider(timeout=timeout)
    if flags.is_enabled_enum(FeatureFlagKey.METHOD_LIABILITY_SYNC):
        providers[DataSource.METHOD] = MethodLiabilityProvider(timeout=timeout)
    if flags.is_enabled_enum(FeatureFlagKey.DEMO_DATA):
        providers[DataSource.DEMO] = DemoLiabilityProvider()
    providers[DataSource.MANUAL] = ManualLiabilityProvider()

    logger.info(f"Registered liability providers: {[source.value for source in providers]}")
    return providers


# Global provider manager instance
_provider_manager = None


def get_provider_manager() -> ProviderManager:
    """Get global provider manager instance."""
    global _provider_manager
    if _provider_manager is None:
        _provider_manager = ProviderManager(build_default_providers(), SupabaseLiabilityStorage())
    return _provider_manager
