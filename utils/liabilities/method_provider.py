"""
Method Financial provider implementation.

Method is a liability-specific aggregator. A user is represented upstream by an
entity; the user links liabilities through Method's Connect element, which is
initialized with an element token minted here. The entity id is both the
session reference and the external reference used by webhooks.
"""

import os
import asyncio
import logging
from typing import List, Dict, Any, Optional

import httpx

from .abstract_provider import (
    AbstractLiabilityProvider, AccountRecord, ConnectionRecord, ConnectOptions, ConnectResult,
    DataMode, DataSource, WebhookEvent, WebhookEventKind,
    AccountNotFoundError, ProviderError, UpstreamSyncError,
    map_account_category, to_date, to_decimal,
)

logger = logging.getLogger(__name__)

METHOD_BASE_URLS = {
    'dev': 'https://dev.methodfi.com',
    'sandbox': 'https://sandbox.methodfi.com',
    'production': 'https://production.methodfi.com',
}

ELEMENT_PRODUCTS = ['balance', 'payoff', 'update']
LIABILITY_TYPES = ['credit_card', 'auto_loan', 'student_loans', 'mortgage', 'personal_loan', 'loan']

# Method requires a phone number on individual entities; sandbox accepts this one.
SANDBOX_PHONE = '+15121231111'

DEFAULT_TIMEOUT_SECONDS = 30.0

# A connection sync is one list call plus concurrent per-account refreshes, each
# bounded by the request timeout, so both must fit inside the connection budget.
REQUEST_TIMEOUT_SHARE = 0.3


def decode_method_account(account: Dict[str, Any], institution_name: Optional[str] = None,
                          data_mode: DataMode = DataMode.LIVE) -> AccountRecord:
    """Translate a Method account object into an AccountRecord."""
    liability = account.get('liability') or {}
    liability_type = liability.get('type') or ''
    label = liability.get('name') or f"{liability_type.replace('_', ' ').title() or 'Liability'} Account"

    return AccountRecord(
        source=DataSource.METHOD,
        provider_account_id=account['id'],
        institution_name=institution_name or liability.get('name') or 'Unknown Institution',
        account_label=label,
        account_category=map_account_category(liability_type),
        current_balance=to_decimal(liability.get('balance')) or 0,
        interest_rate=to_decimal(liability.get('interest_rate')),
        minimum_payment=to_decimal(liability.get('minimum_payment')),
        credit_limit=to_decimal(liability.get('credit_limit')),
        last_payment_date=to_date(liability.get('last_payment_date')),
        next_payment_due_date=to_date(liability.get('next_payment_due_date')),
        data_mode=data_mode,
    )


class MethodLiabilityProvider(AbstractLiabilityProvider):
    """Method Financial REST API provider."""

    def __init__(self, api_key: Optional[str] = None, environment: Optional[str] = None,
                 timeout: float = DEFAULT_TIMEOUT_SECONDS,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 request_timeout: Optional[float] = None):
        self.provider_name = DataSource.METHOD.value
        self.api_key = api_key or os.getenv("METHOD_API_KEY")
        self.environment = environment or os.getenv("METHOD_ENV", "dev")
        self.timeout = timeout
        self.request_timeout = request_timeout or timeout * REQUEST_TIMEOUT_SHARE
        self.transport = transport

        if self.environment not in METHOD_BASE_URLS:
            logger.warning(f"Unknown METHOD_ENV '{self.environment}', defaulting to dev")
            self.environment = 'dev'
        self.base_url = METHOD_BASE_URLS[self.environment]

    def get_source_tag(self) -> DataSource:
        return DataSource.METHOD

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None,
                       params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Call the Method API and unwrap its ``{success, data}`` envelope.

        Raises:
            UpstreamSyncError: On transport errors, timeouts, non-2xx responses
                or an unsuccessful envelope
        """
        headers = {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
        }
        try:
            async with httpx.AsyncClient(base_url=self.base_url, headers=headers,
                                         timeout=self.request_timeout, transport=self.transport) as client:
                response = await asyncio.wait_for(
                    client.request(method, path, json=json, params=params), timeout=self.request_timeout
                )
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 404:
                raise
            logger.error(f"Method API error {status} on {method} {path}")
            raise UpstreamSyncError(f"Method API error: {status}", self.provider_name, e)
        except (httpx.HTTPError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Method request failed on {method} {path}: {e}")
            raise UpstreamSyncError("Method request failed", self.provider_name, e)

        if isinstance(body, dict) and 'data' in body:
            if body.get('success') is False:
                message = (body.get('message') or body.get('error') or 'Method request unsuccessful')
                raise UpstreamSyncError(str(message), self.provider_name)
            return body['data']
        return body

    async def get_or_create_entity(self, options: ConnectOptions) -> Dict[str, Any]:
        """Reuse the user's existing entity when known, otherwise create one."""
        if options.session_ref:
            try:
                return await self._request('GET', f'/entities/{options.session_ref}')
            except httpx.HTTPStatusError:
                logger.warning(f"Method entity for user {options.owner_user_id} no longer exists, recreating")

        individual = {
            'first_name': options.first_name or 'Unknown',
            'last_name': options.last_name or 'Unknown',
        }
        if options.email:
            individual['email'] = options.email
        if options.phone:
            individual['phone'] = options.phone
        elif options.mode != DataMode.LIVE or self.environment != 'production':
            individual['phone'] = SANDBOX_PHONE

        entity = await self._request('POST', '/entities', json={'type': 'individual', 'individual': individual})
        logger.info(f"Created Method entity for user {options.owner_user_id}")
        return entity

    async def create_element_token(self, entity_id: str) -> str:
        data = await self._request('POST', '/elements/token', json={
            'entity_id': entity_id,
            'type': 'connect',
            'connect': {
                'products': ELEMENT_PRODUCTS,
                'account_filters': {'liability_types': LIABILITY_TYPES},
            },
        })
        return data['element_token']

    async def initiate_connection(self, options: ConnectOptions) -> ConnectResult:
        try:
            entity = await self.get_or_create_entity(options)
            entity_id = entity['id']
            token = await self.create_element_token(entity_id)
        except Exception as e:
            logger.error(f"Method connect error for user {options.owner_user_id}: {e}")
            return ConnectResult(success=False, error="Failed to create Method entity")

        connection = ConnectionRecord(
            owner_user_id=options.owner_user_id,
            provider=DataSource.METHOD,
            provider_session_ref=entity_id,
            external_ref=entity_id,
            institution_label='Method',
            data_mode=options.mode,
        )
        return ConnectResult(success=True, embed_token=token, connection=connection)

    async def terminate_connection(self, connection: ConnectionRecord) -> bool:
        # Method entities stay upstream; only the local connection is deactivated.
        return connection.active

    async def list_accounts(self, connection: ConnectionRecord) -> List[AccountRecord]:
        try:
            accounts = await self._request('GET', '/accounts', params={
                'holder_id': connection.provider_session_ref,
                'type': 'liability',
            })
        except httpx.HTTPStatusError as e:
            raise UpstreamSyncError("Method entity not found", self.provider_name, e)

        records = []
        for account in accounts or []:
            if account.get('type', 'liability') != 'liability':
                continue
            try:
                records.append(decode_method_account(account, None, connection.data_mode))
            except (KeyError, ProviderError) as e:
                logger.warning(f"Skipping undecodable Method account {account.get('id')}: {e}")

        logger.info(f"Retrieved {len(records)} Method liability accounts for connection {connection.id}")
        return records

    async def sync_one_account(self, connection: ConnectionRecord, provider_account_id: str) -> AccountRecord:
        try:
            await self._request('POST', f'/accounts/{provider_account_id}/syncs')
            account = await self._request('GET', f'/accounts/{provider_account_id}')
        except httpx.HTTPStatusError:
            raise AccountNotFoundError(self.provider_name, provider_account_id)

        holder_id = account.get('holder_id')
        if holder_id and holder_id != connection.provider_session_ref:
            raise AccountNotFoundError(self.provider_name, provider_account_id)

        try:
            return decode_method_account(account, None, connection.data_mode)
        except KeyError as e:
            raise UpstreamSyncError("Malformed Method account", self.provider_name, e)

    async def sync_all_accounts(self, connection: ConnectionRecord) -> List[AccountRecord]:
        accounts = await self.list_accounts(connection)

        async def refresh(account: AccountRecord) -> AccountRecord:
            try:
                return await asyncio.wait_for(
                    self.sync_one_account(connection, account.provider_account_id), timeout=self.request_timeout
                )
            except (ProviderError, asyncio.TimeoutError) as e:
                logger.warning(f"Failed to sync Method account {account.provider_account_id}, keeping listed data: {e}")
                return account

        return list(await asyncio.gather(*(refresh(account) for account in accounts)))

    def decode_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        event_type = payload.get('type', 'unknown')
        data = payload.get('data') or {}

        if event_type == 'connect.completed':
            accounts = data.get('accounts') or []
            institution = next((a.get('institution_name') for a in accounts if a.get('institution_name')), None)
            return WebhookEvent(
                DataSource.METHOD, WebhookEventKind.CONNECTION_COMPLETED, event_type,
                external_ref=data.get('entity_id'),
                provider_account_ids=[a['id'] for a in accounts if a.get('id')],
                institution_label=institution,
            )

        if event_type == 'account.updated':
            account_id = data.get('account_id') or data.get('id')
            return WebhookEvent(
                DataSource.METHOD, WebhookEventKind.ACCOUNTS_UPDATED, event_type,
                external_ref=data.get('entity_id') or data.get('holder_id'),
                provider_account_ids=[account_id] if account_id else [],
            )

        logger.info(f"Unhandled Method webhook event: {event_type}")
        return WebhookEvent(DataSource.METHOD, WebhookEventKind.IGNORED, event_type,
                            external_ref=data.get('entity_id'))
