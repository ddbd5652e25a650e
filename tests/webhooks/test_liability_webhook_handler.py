"""
Tests for liability webhook signature verification and dispatch.

Uses real Plaid and Method webhook payload shapes.
"""

import os
import json
import hmac
import hashlib
import pytest
from unittest.mock import patch, AsyncMock

from utils.liabilities.abstract_provider import DataSource, WebhookVerificationError
from utils.liabilities.webhook_handler import LiabilityWebhookHandler, verify_webhook_signature

REAL_LIABILITIES_WEBHOOK = {
    "webhook_type": "LIABILITIES",
    "webhook_code": "DEFAULT_UPDATE",
    "item_id": "wz666MBjYWTp2PDzzggYhM6oWWmBb",
    "account_ids_with_new_liabilities": [],
    "account_ids_with_updated_liabilities": {
        "XMRbV7Qg5ktxNMGzjjd8Ue6zDjyk8lt2Vbbkd": ["past_amount_due"]
    },
    "error": None,
    "environment": "sandbox"
}

METHOD_ACCOUNT_UPDATED = {
    "id": "whk_evt_1",
    "type": "account.updated",
    "data": {"account_id": "acc_yVf3mkzbhz9tj", "holder_id": "ent_au22b1fbFJbp8"},
}

TEST_WEBHOOK_KEY = "test-webhook-verification-key"


def _sign(body: bytes, secret: str = TEST_WEBHOOK_KEY) -> str:
    return hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


class TestSignatureVerification:

    def test_valid_signature(self):
        body = json.dumps(REAL_LIABILITIES_WEBHOOK).encode()
        with patch.dict(os.environ, {'PLAID_WEBHOOK_VERIFICATION_KEY': TEST_WEBHOOK_KEY}):
            assert verify_webhook_signature(DataSource.PLAID, body, _sign(body)) is True

    def test_tampered_body_is_rejected(self):
        body = json.dumps(REAL_LIABILITIES_WEBHOOK).encode()
        signature = _sign(body)
        with patch.dict(os.environ, {'PLAID_WEBHOOK_VERIFICATION_KEY': TEST_WEBHOOK_KEY}):
            assert verify_webhook_signature(DataSource.PLAID, body + b' ', signature) is False

    def test_missing_signature_is_rejected_when_secret_configured(self):
        with patch.dict(os.environ, {'METHOD_WEBHOOK_SECRET': TEST_WEBHOOK_KEY}):
            assert verify_webhook_signature(DataSource.METHOD, b'{}', None) is False

    def test_secrets_are_per_provider(self):
        body = b'{"type": "account.updated"}'
        with patch.dict(os.environ, {'METHOD_WEBHOOK_SECRET': 'method-secret'}):
            assert verify_webhook_signature(DataSource.METHOD, body, _sign(body)) is False
            assert verify_webhook_signature(DataSource.METHOD, body, _sign(body, 'method-secret')) is True

    def test_unconfigured_secret_allows_webhook(self):
        assert verify_webhook_signature(DataSource.PLAID, b'{}', None) is True


class TestLiabilityWebhookHandler:

    @pytest.fixture
    def manager(self):
        manager = AsyncMock()
        manager.handle_webhook.return_value = {
            'event_type': 'LIABILITIES.DEFAULT_UPDATE', 'kind': 'accounts_updated',
            'action': 'synced', 'synced': 1, 'failed': 0,
        }
        return manager

    @pytest.mark.asyncio
    async def test_dispatches_verified_webhook(self, manager):
        handler = LiabilityWebhookHandler(manager)
        body = json.dumps(REAL_LIABILITIES_WEBHOOK).encode()

        with patch.dict(os.environ, {'PLAID_WEBHOOK_VERIFICATION_KEY': TEST_WEBHOOK_KEY}):
            result = await handler.handle_webhook('plaid', body, _sign(body))

        assert result['acknowledged'] is True
        assert result['synced'] == 1
        assert 'processing_time_ms' in result
        manager.handle_webhook.assert_awaited_once_with(DataSource.PLAID, REAL_LIABILITIES_WEBHOOK)

    @pytest.mark.asyncio
    async def test_bad_signature_raises(self, manager):
        handler = LiabilityWebhookHandler(manager)
        body = json.dumps(METHOD_ACCOUNT_UPDATED).encode()

        with patch.dict(os.environ, {'METHOD_WEBHOOK_SECRET': TEST_WEBHOOK_KEY}):
            with pytest.raises(WebhookVerificationError):
                await handler.handle_webhook(DataSource.METHOD, body, 'forged')

        manager.handle_webhook.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malformed_body_is_not_acknowledged(self, manager):
        handler = LiabilityWebhookHandler(manager)

        result = await handler.handle_webhook(DataSource.METHOD, b'{not json', None)

        assert result['acknowledged'] is False
        manager.handle_webhook.assert_not_awaited()


@pytest.mark.asyncio
async def test_plaid_liabilities_webhook_reaches_storage(storage, registry, scripted_provider, account_data):
    """End to end: a signed Plaid webhook re-syncs the Item's updated account."""
    from utils.liabilities.abstract_provider import ConnectionRecord
    from utils.liabilities.plaid_provider import PlaidLiabilityProvider
    from utils.liabilities.provider_manager import ProviderManager

    await registry.register(ConnectionRecord(
        owner_user_id='user_1', provider=DataSource.PLAID, provider_session_ref='access-1',
        external_ref=REAL_LIABILITIES_WEBHOOK['item_id'],
    ))
    account_id = "XMRbV7Qg5ktxNMGzjjd8Ue6zDjyk8lt2Vbbkd"
    scripted_provider.accounts[REAL_LIABILITIES_WEBHOOK['item_id']] = [account_data(provider_account_id=account_id)]
    scripted_provider.decode_webhook = PlaidLiabilityProvider(client=object()).decode_webhook

    handler = LiabilityWebhookHandler(ProviderManager({DataSource.PLAID: scripted_provider}, storage, registry))
    result = await handler.handle_webhook('plaid', json.dumps(REAL_LIABILITIES_WEBHOOK).encode(), None)

    assert result['action'] == 'synced'
    [account] = await storage.list_accounts('user_1')
    assert account.provider_account_id == account_id
