"""
Tests for the liability provider routes.

Runs the routers against a ProviderManager backed by in-memory storage, with
authentication and the manager injected through dependency overrides.
"""

import pytest
from decimal import Decimal
from unittest.mock import patch, AsyncMock
from fastapi import FastAPI
from fastapi.testclient import TestClient

from routes.provider_routes import router, validate_redirect_url
from routes.debt_account_routes import router as debt_account_router
from utils.authentication import get_authenticated_user_id
from utils.liabilities.abstract_provider import ConnectResult, DataSource
from utils.liabilities.demo_provider import DemoLiabilityProvider
from utils.liabilities.manual_provider import ManualLiabilityProvider
from utils.liabilities.provider_manager import ProviderManager, get_provider_manager
from utils.liabilities.webhook_handler import LiabilityWebhookHandler, get_webhook_handler

TEST_USER_ID = "550e8400-e29b-41d4-a716-446655440000"

app = FastAPI()
app.include_router(router)
app.include_router(debt_account_router)


@pytest.fixture
def manager(storage, registry, scripted_provider):
    return ProviderManager({
        DataSource.PLAID: scripted_provider,
        DataSource.DEMO: DemoLiabilityProvider(jitter=Decimal('0')),
        DataSource.MANUAL: ManualLiabilityProvider(),
    }, storage, registry, timeout=5)


@pytest.fixture
def client(manager):
    app.dependency_overrides[get_authenticated_user_id] = lambda: TEST_USER_ID
    app.dependency_overrides[get_provider_manager] = lambda: manager
    app.dependency_overrides[get_webhook_handler] = lambda: LiabilityWebhookHandler(manager)
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestProviderListing:

    def test_list_providers(self, client):
        response = client.get("/api/providers")

        assert response.status_code == 200
        sources = {p['source'] for p in response.json()['providers']}
        assert sources == {'plaid', 'demo', 'manual'}

    def test_demo_institutions(self, client):
        response = client.get("/api/providers/demo/institutions")
        assert response.status_code == 200
        assert 'Sallie Mae' in response.json()['institutions']


class TestConnect:

    def test_connect_returns_embed_token(self, client):
        response = client.post("/api/providers/plaid/connect", json={})

        assert response.status_code == 200
        assert response.json() == {'success': True, 'embed_token': 'embed-token'}

    def test_connect_without_body(self, client):
        response = client.post("/api/providers/plaid/connect")
        assert response.status_code == 200

    def test_demo_connect_returns_redirect(self, client):
        response = client.post("/api/providers/demo/connect", json={})

        data = response.json()
        assert data['redirect_url'].startswith('/demo/select-institution?connectionId=demo_')

    def test_unknown_provider(self, client):
        response = client.post("/api/providers/acme/connect", json={})
        assert response.status_code == 400

    def test_unconfigured_provider(self, client, scripted_provider):
        scripted_provider.available = False
        response = client.post("/api/providers/plaid/connect", json={})
        assert response.status_code == 400
        assert 'not configured' in response.json()['detail']

    def test_foreign_return_url_is_rejected(self, client):
        response = client.post("/api/providers/plaid/connect", json={'return_url': 'https://evil.example.com/cb'})
        assert response.status_code == 400

    def test_foreign_webhook_url_is_rejected(self, client, scripted_provider, monkeypatch):
        monkeypatch.setenv('WEBHOOK_BASE_URL', 'https://api.example.com')
        scripted_provider.initiate_connection = AsyncMock(return_value=ConnectResult(success=True, embed_token='t'))

        response = client.post("/api/providers/plaid/connect", json={'webhook_url': 'https://evil.example.com/hook'})

        assert response.status_code == 400
        assert response.json()['detail'] == "Invalid webhook URL"
        scripted_provider.initiate_connection.assert_not_awaited()

    def test_webhook_url_rejected_when_not_configured(self, client):
        response = client.post("/api/providers/plaid/connect",
                               json={'webhook_url': 'https://api.example.com/api/providers/plaid/webhook'})
        assert response.status_code == 400

    def test_webhook_url_is_built_from_configuration(self, client, scripted_provider, monkeypatch):
        monkeypatch.setenv('WEBHOOK_BASE_URL', 'https://api.example.com/')
        scripted_provider.initiate_connection = AsyncMock(return_value=ConnectResult(success=True, embed_token='t'))

        response = client.post("/api/providers/plaid/connect",
                               json={'webhook_url': 'https://api.example.com/api/providers/plaid/webhook'})

        assert response.status_code == 200
        options = scripted_provider.initiate_connection.await_args[0][0]
        assert options.webhook_url == 'https://api.example.com/api/providers/plaid/webhook'

    def test_failed_connect_result(self, client, scripted_provider):
        scripted_provider.initiate_connection = AsyncMock(
            return_value=ConnectResult(success=False, error="Failed to create Plaid link token")
        )
        response = client.post("/api/providers/plaid/connect", json={})

        assert response.status_code == 400
        assert response.json()['detail'] == "Failed to create Plaid link token"

    def test_method_connect_uses_profile(self, storage, registry, provider_factory):
        method = provider_factory(source=DataSource.METHOD)
        method.initiate_connection = AsyncMock(return_value=ConnectResult(success=True, embed_token='element'))
        manager = ProviderManager({DataSource.METHOD: method}, storage, registry, timeout=5)
        app.dependency_overrides[get_authenticated_user_id] = lambda: TEST_USER_ID
        app.dependency_overrides[get_provider_manager] = lambda: manager
        try:
            with patch('routes.provider_routes.get_user_profile',
                       return_value={'first_name': 'Ada', 'last_name': 'Lovelace', 'email': 'ada@example.com'}):
                response = TestClient(app).post("/api/providers/method/element-token", json={})
        finally:
            app.dependency_overrides.clear()

        assert response.json() == {'success': True, 'token': 'element'}
        options = method.initiate_connection.await_args[0][0]
        assert options.first_name == 'Ada'
        assert options.owner_user_id == TEST_USER_ID


class TestRedirectValidation:

    def test_frontend_url_allowed(self, monkeypatch):
        monkeypatch.setenv('FRONTEND_URL', 'https://app.example.com')
        assert validate_redirect_url('https://app.example.com/accounts') is True

    def test_localhost_only_in_development(self, monkeypatch):
        monkeypatch.setenv('FRONTEND_URL', 'https://app.example.com')
        monkeypatch.setenv('ENVIRONMENT', 'production')
        assert validate_redirect_url('http://localhost:3000/cb') is False
        monkeypatch.setenv('ENVIRONMENT', 'development')
        assert validate_redirect_url('http://localhost:3000/cb') is True

    def test_non_http_scheme_rejected(self):
        assert validate_redirect_url('javascript:alert(1)') is False
        assert validate_redirect_url(None) is True


class TestSyncAndDisconnect:

    def test_exchange_then_sync(self, client, scripted_provider, account_data):
        from utils.liabilities.abstract_provider import ConnectionRecord

        async def exchange(owner_user_id, public_token, institution_name=None):
            return ConnectionRecord(owner_user_id=owner_user_id, provider=DataSource.PLAID,
                                    provider_session_ref='access-1', external_ref='item_1')
        scripted_provider.exchange_public_token = exchange
        scripted_provider.accounts['item_1'] = [account_data()]

        exchanged = client.post("/api/providers/plaid/exchange-token", json={'public_token': 'public-1'})
        assert exchanged.status_code == 200
        assert exchanged.json()['accounts_count'] == 1

        synced = client.post("/api/providers/sync")
        assert synced.json() == {'success': True, 'synced': 1, 'failed': 0}

        connection_id = exchanged.json()['connection_id']
        assert client.delete(f"/api/providers/plaid/{connection_id}").status_code == 200
        assert client.delete(f"/api/providers/plaid/{connection_id}").status_code == 404

    def test_exchange_requires_public_token(self, client):
        response = client.post("/api/providers/plaid/exchange-token", json={'public_token': ''})
        assert response.status_code == 422

    def test_exchange_on_source_without_tokens(self, client):
        response = client.post("/api/providers/manual/exchange-token", json={'public_token': 'public-1'})

        assert response.status_code == 400
        assert 'not supported' in response.json()['detail']

    def test_sync_unknown_account(self, client):
        assert client.post("/api/providers/sync/acct_missing").status_code == 404

    def test_add_demo_and_sync_one(self, client):
        added = client.post("/api/providers/demo/add", json={'institution': 'Capital One'})
        assert added.status_code == 200
        assert added.json()['accounts_count'] == 1

        [account] = client.get("/api/debt-accounts").json()['accounts']
        assert client.post(f"/api/providers/sync/{account['id']}").json() == {'success': True}

    def test_add_unknown_demo_institution(self, client):
        response = client.post("/api/providers/demo/add", json={'institution': 'Bank of Nowhere'})
        assert response.status_code == 400


class TestWebhookRoute:

    def test_webhook_for_provider_without_webhooks(self, client):
        assert client.post("/api/providers/demo/webhook", json={}).status_code == 400

    def test_bad_signature_is_unauthorized(self, client, monkeypatch):
        monkeypatch.setenv('PLAID_WEBHOOK_VERIFICATION_KEY', 'secret')
        response = client.post(
            "/api/providers/plaid/webhook",
            content=b'{"webhook_type": "LIABILITIES"}',
            headers={'Plaid-Verification': 'forged'},
        )
        assert response.status_code == 401

    def test_ignored_webhook_is_acknowledged(self, client, scripted_provider):
        from utils.liabilities.abstract_provider import WebhookEvent, WebhookEventKind
        scripted_provider.decode_webhook = lambda payload: WebhookEvent(
            DataSource.PLAID, WebhookEventKind.IGNORED, 'AUTH.AUTOMATICALLY_VERIFIED'
        )

        response = client.post("/api/providers/plaid/webhook", json={'webhook_type': 'AUTH'})

        assert response.status_code == 200
        assert response.json()['acknowledged'] is True
        assert response.json()['action'] == 'ignored'


def test_endpoints_require_authentication(manager):
    app.dependency_overrides[get_provider_manager] = lambda: manager
    try:
        response = TestClient(app).post("/api/providers/sync")
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 401
