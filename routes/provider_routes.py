"""
Liability provider API routes.

This module provides REST API endpoints for:
- Listing available data providers
- Starting connection flows and exchanging public tokens
- Manual sync of all accounts or a single account
- Demo data onboarding
- Disconnecting a provider connection
- Provider webhooks
"""

import logging
import os
import asyncio
from urllib.parse import urlparse
from fastapi import APIRouter, HTTPException, Request, Depends
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional

from utils.authentication import get_authenticated_user_id
from utils.liabilities.abstract_provider import ConnectOptions, DataMode, DataSource, ProviderError
from utils.liabilities.provider_manager import ProviderManager, get_provider_manager
from utils.liabilities.webhook_handler import LiabilityWebhookHandler, get_webhook_handler
from utils.supabase.db_client import get_user_profile

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/api/providers", tags=["providers"])


class ConnectRequest(BaseModel):
    data_mode: DataMode = DataMode.LIVE
    return_url: Optional[str] = None
    webhook_url: Optional[str] = None


class ExchangeTokenRequest(BaseModel):
    public_token: str = Field(..., min_length=1)
    institution_name: Optional[str] = None


class DemoAddRequest(BaseModel):
    institution: str = Field(..., min_length=1)


def provider_http_error(error: ProviderError) -> HTTPException:
    """Translate a ProviderError into an HTTPException with its mapped status."""
    return HTTPException(status_code=error.status_code, detail=error.message)


def validate_redirect_url(url: Optional[str]) -> bool:
    """
    Only allow redirects back to our own frontend.

    Localhost is accepted in development environments only.
    """
    if not url:
        return True

    try:
        parsed = urlparse(url)
        if parsed.scheme.lower() not in ('http', 'https'):
            return False

        host = parsed.netloc.lower()
        if not host:
            return False

        allowed_hosts = []
        environment = os.getenv('ENVIRONMENT', 'production').lower()
        if environment in ('development', 'dev', 'local'):
            allowed_hosts.extend(['localhost', '127.0.0.1'])

        frontend_host = urlparse(os.getenv('FRONTEND_URL', 'http://localhost:3000')).netloc
        if frontend_host:
            allowed_hosts.append(frontend_host.lower())

        for allowed in allowed_hosts:
            if host == allowed or host.split(':')[0] == allowed or host.endswith('.' + allowed):
                return True
        return False
    except ValueError:
        return False


def provider_webhook_url(source: str) -> Optional[str]:
    """Webhook endpoint for a provider, built from WEBHOOK_BASE_URL (our public API origin)."""
    base_url = os.getenv('WEBHOOK_BASE_URL')
    if not base_url:
        return None
    return f"{base_url.rstrip('/')}/api/providers/{source}/webhook"


def validate_webhook_url(source: str, url: Optional[str]) -> bool:
    """A client-supplied webhook URL must be our own endpoint for this provider."""
    if not url:
        return True
    expected = provider_webhook_url(source)
    return expected is not None and url.rstrip('/') == expected


async def _connect_options(source: str, user_id: str, body: Optional[ConnectRequest]) -> ConnectOptions:
    body = body or ConnectRequest()
    options = ConnectOptions(
        owner_user_id=user_id,
        mode=body.data_mode,
        return_url=body.return_url,
        webhook_url=provider_webhook_url(source),
    )
    if source == DataSource.METHOD.value:
        # Method entities need the user's name and contact details
        profile = await asyncio.to_thread(get_user_profile, user_id)
        options.first_name = profile.get('first_name')
        options.last_name = profile.get('last_name')
        options.email = profile.get('email')
        options.phone = profile.get('phone')
    return options


@router.get("")
async def list_providers(manager: ProviderManager = Depends(get_provider_manager)):
    """List registered providers and whether each is configured."""
    return {'success': True, 'providers': manager.get_available_providers()}


@router.post("/sync")
async def sync_all_accounts(
    user_id: str = Depends(get_authenticated_user_id),
    manager: ProviderManager = Depends(get_provider_manager)
):
    """Sync every active connection for the caller."""
    try:
        summary = await manager.sync_all_for_user(user_id)
        return {'success': True, **summary.to_dict()}
    except ProviderError as e:
        logger.error(f"Sync failed for user {user_id}: {e}")
        raise provider_http_error(e)


@router.post("/sync/{account_id}")
async def sync_account(
    account_id: str,
    user_id: str = Depends(get_authenticated_user_id),
    manager: ProviderManager = Depends(get_provider_manager)
):
    try:
        synced = await manager.sync_one_account(user_id, account_id)
    except ProviderError as e:
        logger.error(f"Sync of account {account_id} failed for user {user_id}: {e}")
        raise provider_http_error(e)

    if not synced:
        raise HTTPException(status_code=404, detail="Account not found or sync failed")
    return {'success': True}


@router.post("/method/element-token")
async def create_method_element_token(
    body: Optional[ConnectRequest] = None,
    user_id: str = Depends(get_authenticated_user_id),
    manager: ProviderManager = Depends(get_provider_manager)
):
    """Create a Method Connect element token for the caller's entity."""
    try:
        options = await _connect_options(DataSource.METHOD.value, user_id, body)
        token = await manager.create_element_token(options)
        return {'success': True, 'token': token}
    except ProviderError as e:
        logger.error(f"Element token creation failed for user {user_id}: {e}")
        raise provider_http_error(e)


@router.post("/demo/add")
async def add_demo_accounts(
    body: DemoAddRequest,
    user_id: str = Depends(get_authenticated_user_id),
    manager: ProviderManager = Depends(get_provider_manager)
):
    try:
        result = await manager.add_demo_accounts(user_id, body.institution)
        return {'success': True, **result}
    except ProviderError as e:
        raise provider_http_error(e)


@router.get("/demo/institutions")
async def get_demo_institutions(manager: ProviderManager = Depends(get_provider_manager)):
    try:
        return {'success': True, 'institutions': manager.get_demo_institutions()}
    except ProviderError as e:
        raise provider_http_error(e)


@router.post("/{source}/connect")
async def connect_provider(
    source: str,
    body: Optional[ConnectRequest] = None,
    user_id: str = Depends(get_authenticated_user_id),
    manager: ProviderManager = Depends(get_provider_manager)
):
    """
    Start a connection flow.

    Returns the provider's ConnectResult: an embed token (Plaid link token,
    Method element token), a redirect URL (demo) or an immediate success
    (manual).
    """
    body = body or ConnectRequest()
    if not validate_redirect_url(body.return_url):
        logger.warning(f"Rejected return_url for user {user_id}: {body.return_url}")
        raise HTTPException(status_code=400, detail="Invalid return URL")
    if not validate_webhook_url(source, body.webhook_url):
        logger.warning(f"Rejected webhook_url for user {user_id}: {body.webhook_url}")
        raise HTTPException(status_code=400, detail="Invalid webhook URL")

    try:
        options = await _connect_options(source, user_id, body)
        result = await manager.connect(source, options)
    except ProviderError as e:
        raise provider_http_error(e)

    if not result.success:
        raise HTTPException(status_code=400, detail=result.error)
    return result.to_dict()


@router.post("/{source}/exchange-token")
async def exchange_token(
    source: str,
    body: ExchangeTokenRequest,
    user_id: str = Depends(get_authenticated_user_id),
    manager: ProviderManager = Depends(get_provider_manager)
):
    try:
        result = await manager.exchange_token(source, user_id, body.public_token, body.institution_name)
        return {'success': True, **result}
    except ProviderError as e:
        logger.error(f"Token exchange failed for user {user_id}: {e}")
        raise provider_http_error(e)


@router.post("/{source}/webhook")
async def provider_webhook(
    source: str,
    request: Request,
    handler: LiabilityWebhookHandler = Depends(get_webhook_handler)
) -> Dict[str, Any]:
    """Receive a provider webhook. The raw body is signature-checked before decoding."""
    if source not in (DataSource.PLAID.value, DataSource.METHOD.value):
        raise HTTPException(status_code=400, detail=f"Provider {source} does not send webhooks")

    body = await request.body()
    signature = (
        request.headers.get('Plaid-Verification')
        or request.headers.get('X-Plaid-Signature')
        or request.headers.get('X-Method-Signature')
    )
    try:
        return await handler.handle_webhook(source, body, signature)
    except ProviderError as e:
        raise provider_http_error(e)


@router.delete("/{source}/{connection_id}")
async def disconnect_provider(
    source: str,
    connection_id: str,
    user_id: str = Depends(get_authenticated_user_id),
    manager: ProviderManager = Depends(get_provider_manager)
):
    try:
        disconnected = await manager.disconnect(source, connection_id, user_id)
    except ProviderError as e:
        raise provider_http_error(e)

    if not disconnected:
        raise HTTPException(status_code=404, detail="Connection not found")
    return {'success': True}
