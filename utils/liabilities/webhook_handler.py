"""
Webhook handler for provider push updates.

Verifies the signature of a raw webhook body, then hands the decoded payload
to the provider manager, which routes it into the same upsert path used by a
regular sync.
"""

import hmac
import hashlib
import json
import logging
import os
import time
from typing import Dict, Any, Optional

from .abstract_provider import DataSource, WebhookVerificationError

logger = logging.getLogger(__name__)

WEBHOOK_SECRET_ENV = {
    DataSource.PLAID: 'PLAID_WEBHOOK_VERIFICATION_KEY',
    DataSource.METHOD: 'METHOD_WEBHOOK_SECRET',
}


def verify_webhook_signature(source: DataSource, request_body: bytes, signature: Optional[str]) -> bool:
    """
    Verify an HMAC-SHA256 webhook signature.

    When no secret is configured for the provider the webhook is allowed and a
    warning is logged (development setups).
    """
    env_var = WEBHOOK_SECRET_ENV.get(source)
    secret = os.getenv(env_var) if env_var else None
    if not secret:
        logger.warning(f"{env_var or source.value} not configured - allowing webhook")
        return True

    if not signature:
        return False

    expected_signature = hmac.new(
        secret.encode('utf-8'),
        request_body,
        hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(signature, expected_signature)


class LiabilityWebhookHandler:
    """Signature check, decode and dispatch for Plaid and Method webhooks."""

    def __init__(self, manager=None):
        self.manager = manager  # Lazy loaded to avoid circular imports

    def _get_manager(self):
        if self.manager is None:
            from .provider_manager import get_provider_manager
            self.manager = get_provider_manager()
        return self.manager

    async def handle_webhook(self, source, request_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Process one webhook delivery.

        Raises:
            WebhookVerificationError: If the signature does not match
            UnknownProviderError: If the source is not registered
        """
        source = DataSource(source)
        if not verify_webhook_signature(source, request_body, signature):
            logger.error(f"Invalid {source.value} webhook signature")
            raise WebhookVerificationError(source.value)

        try:
            payload = json.loads(request_body or b'{}')
        except ValueError:
            logger.error(f"Malformed {source.value} webhook body")
            return {"acknowledged": False, "error": "Malformed webhook body"}

        start_time = time.time()
        result = await self._get_manager().handle_webhook(source, payload)
        processing_duration = int((time.time() - start_time) * 1000)

        logger.info(f"Processed {source.value} webhook {result.get('event_type')} in {processing_duration}ms: {result.get('action')}")
        return {"acknowledged": True, "processing_time_ms": processing_duration, **result}


# Global webhook handler instance
_webhook_handler = None


def get_webhook_handler() -> LiabilityWebhookHandler:
    global _webhook_handler
    if _webhook_handler is None:
        _webhook_handler = LiabilityWebhookHandler()
    return _webhook_handler
