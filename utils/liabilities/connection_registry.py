"""
Connection registry: persisted metadata binding a user to provider sessions.

Connections are soft-deleted (deactivated) and never removed, so a hidden or
disconnected account keeps enough linkage to be re-synced later. Demo
connections are persisted like any other; single-account demo syncs may use
an ephemeral record that is never written.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from .abstract_provider import AccountRecord, ConnectionRecord, DataMode, DataSource
from .storage import LiabilityStorage

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Typed access to ConnectionRecords for the reconciliation engine."""

    def __init__(self, storage: LiabilityStorage):
        self.storage = storage

    async def register(self, connection: ConnectionRecord) -> ConnectionRecord:
        """
        Persist a new connection, reusing an active one for the same session.

        Exchanging the same credentials twice must not create two active
        connections that would sync the same accounts.
        """
        existing = await self.storage.list_active_connections(connection.owner_user_id, connection.provider)
        for current in existing:
            same_session = current.provider_session_ref == connection.provider_session_ref
            same_external = connection.external_ref and current.external_ref == connection.external_ref
            if same_session or same_external:
                current.provider_session_ref = connection.provider_session_ref
                current.institution_label = connection.institution_label or current.institution_label
                current.account_ids = _merge_ids(current.account_ids, connection.account_ids)
                logger.info(f"Reusing {connection.provider.value} connection {current.id} for user {connection.owner_user_id}")
                return await self.storage.upsert_connection(current)

        connection.active = True
        saved = await self.storage.upsert_connection(connection)
        logger.info(f"Registered {saved.provider.value} connection {saved.id} for user {saved.owner_user_id}")
        return saved

    async def list_active(self, owner_user_id: str, provider: Optional[DataSource] = None) -> List[ConnectionRecord]:
        connections = await self.storage.list_active_connections(owner_user_id, provider)
        return [c for c in connections if c.active]

    async def get(self, connection_id: str, owner_user_id: str) -> Optional[ConnectionRecord]:
        return await self.storage.get_connection(connection_id, owner_user_id)

    async def find_by_external_ref(self, provider: DataSource, external_ref: str) -> List[ConnectionRecord]:
        if not external_ref:
            return []
        return await self.storage.find_connections_by_external_ref(provider, external_ref)

    async def deactivate(self, connection_id: str, owner_user_id: str) -> bool:
        deactivated = await self.storage.deactivate_connection(connection_id, owner_user_id)
        if deactivated:
            logger.info(f"Deactivated connection {connection_id} for user {owner_user_id}")
        return deactivated

    async def record_sync(self, connection: ConnectionRecord, provider_account_ids: Iterable[str],
                          synced_at: Optional[datetime] = None) -> ConnectionRecord:
        """Stamp last_synced_at and widen the connection's account scope."""
        if connection.ephemeral:
            return connection
        connection.account_ids = _merge_ids(connection.account_ids, provider_account_ids)
        connection.last_synced_at = synced_at or datetime.now(timezone.utc)
        return await self.storage.upsert_connection(connection)

    async def resolve_for_account(self, account: AccountRecord) -> Optional[ConnectionRecord]:
        """
        Find the connection able to refresh a stored account.

        Aggregator accounts resolve to the active connection whose scope holds
        the account id; when the scope is unknown and the user has exactly one
        active connection for that provider, that connection is used. Demo
        accounts resolve to the persisted demo connection for their
        institution, or an ephemeral one. Manual accounts have no connection.
        Returns None when resolution fails.
        """
        if not account.owner_user_id:
            return None

        if account.source == DataSource.MANUAL:
            return None

        connections = await self.list_active(account.owner_user_id, account.source)

        if account.source == DataSource.DEMO:
            for connection in connections:
                if connection.external_ref == account.institution_name:
                    return connection
            return ConnectionRecord(
                id=f"demo_{account.id}",
                owner_user_id=account.owner_user_id,
                provider=DataSource.DEMO,
                provider_session_ref=account.institution_name,
                external_ref=account.institution_name,
                institution_label=account.institution_name,
                data_mode=DataMode.DEMO,
                last_synced_at=account.last_synced_at,
                ephemeral=True,
            )

        if not account.provider_account_id:
            return None

        for connection in connections:
            if connection.covers(account.provider_account_id):
                return connection

        if len(connections) == 1:
            return connections[0]

        logger.warning(
            f"Could not resolve {account.source.value} connection for account {account.id} "
            f"({len(connections)} active connections)"
        )
        return None


def _merge_ids(current: Iterable[str], new: Iterable[str]) -> List[str]:
    merged = list(current)
    for value in new:
        if value and value not in merged:
            merged.append(value)
    return merged
