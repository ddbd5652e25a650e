"""
Plaid Liabilities API provider implementation.

This module implements the AbstractLiabilityProvider interface on top of Plaid's
Accounts and Liabilities endpoints. Plaid returns every account of an Item in one
call, so single-account and bulk syncs share the same fetch.
"""

import os
import logging
import asyncio
from typing import List, Dict, Any, Optional

# Plaid SDK imports
import plaid
from plaid.api import plaid_api
from plaid.configuration import Configuration
from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.liabilities_get_request import LiabilitiesGetRequest
from plaid.model.link_token_create_request import LinkTokenCreateRequest
from plaid.model.link_token_create_request_user import LinkTokenCreateRequestUser
from plaid.model.item_public_token_exchange_request import ItemPublicTokenExchangeRequest
from plaid.model.item_get_request import ItemGetRequest
from plaid.model.item_remove_request import ItemRemoveRequest
from plaid.model.institutions_get_by_id_request import InstitutionsGetByIdRequest
from plaid.model.country_code import CountryCode
from plaid.model.products import Products

from .abstract_provider import (
    AbstractLiabilityProvider, AccountRecord, ConnectionRecord, ConnectOptions, ConnectResult,
    DataMode, DataSource, WebhookEvent, WebhookEventKind, AccountCategory,
    AccountNotFoundError, ProviderError, UpstreamSyncError,
    DEFAULT_CATEGORY_KEYWORDS, map_account_category, to_date, to_decimal,
)

logger = logging.getLogger(__name__)

CLIENT_NAME = "Debt Tracker"
LIABILITY_ACCOUNT_TYPES = ('credit', 'loan')
PLAID_COUNTRY_CODES = ['US']

# Plaid reports home equity loans under the "loan" type; treat them as mortgages.
PLAID_CATEGORY_KEYWORDS = (('home equity', AccountCategory.MORTGAGE),) + DEFAULT_CATEGORY_KEYWORDS

DEFAULT_TIMEOUT_SECONDS = 30.0


def _find_liability(liabilities: Dict[str, Any], account_id: str) -> Optional[Dict[str, Any]]:
    for kind in ('credit', 'student', 'mortgage'):
        for detail in liabilities.get(kind) or []:
            if detail.get('account_id') == account_id:
                return detail
    return None


def extract_interest_rate(details: Optional[Dict[str, Any]]) -> Optional[float]:
    """Pull the headline rate out of a credit, student or mortgage liability."""
    if not details:
        return None

    # Credit cards
    for apr in details.get('aprs') or []:
        if apr.get('apr_type') == 'purchase_apr':
            return apr.get('apr_percentage')

    # Student loans
    if details.get('interest_rate_percentage') is not None:
        return details['interest_rate_percentage']

    # Mortgages
    interest_rate = details.get('interest_rate')
    if isinstance(interest_rate, dict) and interest_rate.get('percentage') is not None:
        return interest_rate['percentage']

    return None


def decode_plaid_account(account: Dict[str, Any], liabilities: Dict[str, Any],
                         institution_name: str, data_mode: DataMode = DataMode.LIVE) -> AccountRecord:
    """Translate one Plaid account (+ its liability detail, if any) into an AccountRecord."""
    account_id = account['account_id']
    balances = account.get('balances') or {}
    details = _find_liability(liabilities, account_id)

    minimum_payment = None
    if details:
        minimum_payment = details.get('minimum_payment_amount')
        if minimum_payment is None:
            minimum_payment = details.get('last_payment_amount')

    return AccountRecord(
        source=DataSource.PLAID,
        provider_account_id=account_id,
        institution_name=institution_name,
        account_label=account.get('name') or account.get('official_name') or 'Account',
        account_category=map_account_category(
            str(account.get('subtype') or ''), str(account.get('type') or ''),
            keywords=PLAID_CATEGORY_KEYWORDS
        ),
        current_balance=to_decimal(balances.get('current')) or 0,
        interest_rate=to_decimal(extract_interest_rate(details)),
        minimum_payment=to_decimal(minimum_payment),
        credit_limit=to_decimal(balances.get('limit')),
        last_payment_date=to_date(details.get('last_payment_date')) if details else None,
        next_payment_due_date=to_date(details.get('next_payment_due_date')) if details else None,
        data_mode=data_mode,
    )


class PlaidLiabilityProvider(AbstractLiabilityProvider):
    """
    Plaid provider for credit cards, student loans and mortgages.

    The connection's session reference is the Item access token; its external
    reference is the Item id used by webhooks.
    """

    def __init__(self, client: Optional[plaid_api.PlaidApi] = None,
                 timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.provider_name = DataSource.PLAID.value
        self.timeout = timeout
        self.client = client
        if self.client is None and self.is_available():
            self.client = self._initialize_plaid_client()

    def _initialize_plaid_client(self) -> plaid_api.PlaidApi:
        plaid_env = os.getenv("PLAID_ENV", "sandbox")
        if plaid_env == "production":
            host = plaid.Environment.Production
        else:
            if plaid_env != "sandbox":
                logger.warning(f"Unknown PLAID_ENV '{plaid_env}', defaulting to sandbox")
            host = plaid.Environment.Sandbox

        configuration = Configuration(
            host=host,
            api_key={
                'clientId': os.getenv("PLAID_CLIENT_ID"),
                'secret': os.getenv("PLAID_SECRET"),
                'plaidVersion': '2020-09-14'
            }
        )
        api_client = plaid.ApiClient(configuration)
        logger.info(f"Plaid client initialized for {plaid_env} environment")
        return plaid_api.PlaidApi(api_client)

    def get_source_tag(self) -> DataSource:
        return DataSource.PLAID

    def is_available(self) -> bool:
        return bool(os.getenv("PLAID_CLIENT_ID") and os.getenv("PLAID_SECRET"))

    async def _call(self, method_name: str, request) -> Dict[str, Any]:
        """Run a blocking SDK call off the event loop with a bounded timeout."""
        method = getattr(self.client, method_name)
        response = await asyncio.wait_for(asyncio.to_thread(method, request), timeout=self.timeout)
        return response.to_dict()

    async def initiate_connection(self, options: ConnectOptions) -> ConnectResult:
        try:
            request_params = {
                'client_name': CLIENT_NAME,
                'country_codes': [CountryCode(code) for code in PLAID_COUNTRY_CODES],
                'language': 'en',
                'user': LinkTokenCreateRequestUser(client_user_id=options.owner_user_id),
                'products': [Products('liabilities')],
            }
            if options.return_url:
                request_params['redirect_uri'] = options.return_url
            if options.webhook_url:
                request_params['webhook'] = options.webhook_url

            response = await self._call('link_token_create', LinkTokenCreateRequest(**request_params))
            logger.info(f"Link token created for user {options.owner_user_id}")
            return ConnectResult(success=True, embed_token=response['link_token'])

        except Exception as e:
            logger.error(f"Plaid connect error for user {options.owner_user_id}: {e}")
            return ConnectResult(success=False, error="Failed to create Plaid link token")

    async def exchange_public_token(self, owner_user_id: str, public_token: str,
                                    institution_name: Optional[str] = None) -> ConnectionRecord:
        """Exchange a Link public token for an Item access token."""
        try:
            exchange = await self._call(
                'item_public_token_exchange', ItemPublicTokenExchangeRequest(public_token=public_token)
            )
            access_token = exchange['access_token']
            item_id = exchange['item_id']

            item = await self._call('item_get', ItemGetRequest(access_token=access_token))
            institution_id = (item.get('item') or {}).get('institution_id')

            if not institution_name and institution_id:
                try:
                    institution = await self._call('institutions_get_by_id', InstitutionsGetByIdRequest(
                        institution_id=institution_id,
                        country_codes=[CountryCode(code) for code in PLAID_COUNTRY_CODES],
                    ))
                    institution_name = institution['institution']['name']
                except Exception as e:
                    logger.warning(f"Failed to fetch institution name for {institution_id}: {e}")

            logger.info(f"Exchanged Plaid public token for user {owner_user_id} (item {item_id})")
            return ConnectionRecord(
                owner_user_id=owner_user_id,
                provider=DataSource.PLAID,
                provider_session_ref=access_token,
                external_ref=item_id,
                institution_id=institution_id or 'unknown',
                institution_label=institution_name or 'Unknown Institution',
            )

        except plaid.ApiException as e:
            logger.error(f"Plaid API error exchanging token: {e}")
            raise ProviderError("Failed to exchange public token", self.provider_name, "TOKEN_EXCHANGE_ERROR", e)
        except asyncio.TimeoutError as e:
            raise ProviderError("Plaid token exchange timed out", self.provider_name, "TOKEN_EXCHANGE_ERROR", e)

    async def terminate_connection(self, connection: ConnectionRecord) -> bool:
        if not connection.active:
            return False
        try:
            await self._call('item_remove', ItemRemoveRequest(access_token=connection.provider_session_ref))
        except Exception as e:
            # The local connection is still deactivated; the Item expires upstream.
            logger.warning(f"Plaid item removal failed for connection {connection.id}: {e}")
        return True

    async def list_accounts(self, connection: ConnectionRecord) -> List[AccountRecord]:
        try:
            accounts_data = await self._call(
                'accounts_get', AccountsGetRequest(access_token=connection.provider_session_ref)
            )
        except Exception as e:
            logger.error(f"Plaid accounts fetch failed for connection {connection.id}: {e}")
            raise UpstreamSyncError("Failed to fetch Plaid accounts", self.provider_name, e)

        liabilities: Dict[str, Any] = {}
        try:
            liabilities_data = await self._call(
                'liabilities_get', LiabilitiesGetRequest(access_token=connection.provider_session_ref)
            )
            liabilities = liabilities_data.get('liabilities') or {}
        except Exception as e:
            logger.info(f"Liabilities not available for connection {connection.id}: {e}")

        records = []
        for account in accounts_data.get('accounts', []):
            if str(account.get('type')) not in LIABILITY_ACCOUNT_TYPES:
                continue
            try:
                records.append(decode_plaid_account(
                    account, liabilities, connection.institution_label, connection.data_mode
                ))
            except ProviderError as e:
                logger.warning(f"Skipping undecodable Plaid account {account.get('account_id')}: {e}")

        logger.info(f"Retrieved {len(records)} Plaid liability accounts for connection {connection.id}")
        return records

    async def sync_one_account(self, connection: ConnectionRecord, provider_account_id: str) -> AccountRecord:
        for account in await self.list_accounts(connection):
            if account.provider_account_id == provider_account_id:
                return account
        raise AccountNotFoundError(self.provider_name, provider_account_id)

    async def sync_all_accounts(self, connection: ConnectionRecord) -> List[AccountRecord]:
        return await self.list_accounts(connection)

    def decode_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        webhook_type = payload.get('webhook_type', 'UNKNOWN')
        webhook_code = payload.get('webhook_code', 'UNKNOWN')
        event_type = f"{webhook_type}.{webhook_code}"
        item_id = payload.get('item_id')

        if webhook_type == 'LIABILITIES' and webhook_code == 'DEFAULT_UPDATE':
            account_ids = list(payload.get('account_ids_with_new_liabilities') or [])
            for account_id in (payload.get('account_ids_with_updated_liabilities') or {}):
                if account_id not in account_ids:
                    account_ids.append(account_id)
            return WebhookEvent(DataSource.PLAID, WebhookEventKind.ACCOUNTS_UPDATED, event_type,
                                external_ref=item_id, provider_account_ids=account_ids)

        if webhook_type == 'TRANSACTIONS' and webhook_code == 'DEFAULT_UPDATE':
            return WebhookEvent(DataSource.PLAID, WebhookEventKind.ACCOUNTS_UPDATED, event_type,
                                external_ref=item_id)

        if webhook_type == 'ITEM' and webhook_code == 'ERROR':
            error = payload.get('error') or {}
            return WebhookEvent(DataSource.PLAID, WebhookEventKind.CONNECTION_ERROR, event_type,
                                external_ref=item_id, error=error.get('error_message') or error.get('error_code'))

        return WebhookEvent(DataSource.PLAID, WebhookEventKind.IGNORED, event_type, external_ref=item_id)
