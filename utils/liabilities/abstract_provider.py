"""
Abstract liability provider interface for multi-provider debt account management.

This module defines the canonical account and connection records shared by every
data source (Plaid, Method, demo data, manual entry) and the contract each
provider must implement. Providers translate their own wire format into
AccountRecord objects; nothing provider-shaped leaves a provider.
"""

from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional, Tuple, Iterable
from datetime import datetime, date
from dataclasses import dataclass, field, asdict
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
import logging

logger = logging.getLogger(__name__)

CENTS = Decimal('0.01')


class DataSource(str, Enum):
    """Origin of an account record. Determines the reconciliation key."""
    PLAID = "plaid"
    METHOD = "method"
    DEMO = "demo"
    MANUAL = "manual"


class DataMode(str, Enum):
    LIVE = "live"
    TEST = "test"
    DEMO = "demo"


class AccountCategory(str, Enum):
    CREDIT_CARD = "credit_card"
    AUTO_LOAN = "auto_loan"
    STUDENT_LOAN = "student_loan"
    MORTGAGE = "mortgage"
    PERSONAL_LOAN = "personal_loan"
    HELOC = "heloc"


class WebhookEventKind(str, Enum):
    CONNECTION_COMPLETED = "connection_completed"
    ACCOUNTS_UPDATED = "accounts_updated"
    CONNECTION_ERROR = "connection_error"
    IGNORED = "ignored"


# Ordered keyword table: the first keyword found in the provider's type/subtype
# text wins. Anything unmatched is a personal loan.
DEFAULT_CATEGORY_KEYWORDS: Tuple[Tuple[str, AccountCategory], ...] = (
    ('credit', AccountCategory.CREDIT_CARD),
    ('auto', AccountCategory.AUTO_LOAN),
    ('student', AccountCategory.STUDENT_LOAN),
    ('mortgage', AccountCategory.MORTGAGE),
    ('heloc', AccountCategory.HELOC),
)

FALLBACK_CATEGORY = AccountCategory.PERSONAL_LOAN


def map_account_category(*labels: Optional[str],
                         keywords: Iterable[Tuple[str, AccountCategory]] = DEFAULT_CATEGORY_KEYWORDS
                         ) -> AccountCategory:
    """
    Map free-form provider type/subtype strings onto an AccountCategory.

    Matching is case-insensitive substring search over all labels combined.
    Unrecognized input falls back to ``personal_loan``; this is a documented
    default, not an error.
    """
    text = ' '.join((label or '').lower() for label in labels)
    for keyword, category in keywords:
        if keyword in text:
            return category
    return FALLBACK_CATEGORY


def to_decimal(value: Any) -> Optional[Decimal]:
    """Convert a provider number (str, int, float, Decimal) to Decimal, or None."""
    if value is None or value == '':
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ProviderDecodeError(f"Invalid numeric value: {value!r}", "unknown", original_error=e)


def to_money(value: Any) -> Optional[Decimal]:
    """Decimal rounded to cents, or None when the value is missing."""
    amount = to_decimal(value)
    if amount is None:
        return None
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def to_date(value: Any) -> Optional[date]:
    """Parse ISO date strings (or pass through date/datetime objects)."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError as e:
        raise ProviderDecodeError(f"Invalid date value: {value!r}", "unknown", original_error=e)


@dataclass
class AccountRecord:
    """Liability account representation across all providers."""
    source: DataSource                        # Which provider produced this record
    institution_name: str                     # Lender / card issuer
    account_label: str                        # Display name ("Chase Freedom Unlimited")
    account_category: AccountCategory
    current_balance: Decimal                  # Always stored as an absolute value
    interest_rate: Optional[Decimal] = None   # APR percentage; None on input means "not reported"
    provider_account_id: Optional[str] = None  # Unique only within one provider namespace
    owner_user_id: Optional[str] = None
    minimum_payment: Optional[Decimal] = None
    credit_limit: Optional[Decimal] = None
    last_payment_date: Optional[date] = None
    next_payment_due_date: Optional[date] = None
    last_synced_at: Optional[datetime] = None
    data_mode: DataMode = DataMode.LIVE
    hidden: bool = False
    id: Optional[str] = None                  # Storage-assigned
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    rate_reported: bool = field(default=False, init=False, repr=False, compare=False)

    def __post_init__(self):
        self.source = DataSource(self.source)
        self.account_category = AccountCategory(self.account_category)
        self.data_mode = DataMode(self.data_mode)
        self.current_balance = abs(to_money(self.current_balance) or Decimal('0.00'))
        self.rate_reported = self.interest_rate is not None
        rate = to_money(self.interest_rate) or Decimal('0.00')
        self.interest_rate = max(rate, Decimal('0.00'))
        self.minimum_payment = to_money(self.minimum_payment)
        self.credit_limit = to_money(self.credit_limit)

    @property
    def reconciliation_key(self) -> Optional[Tuple[str, str]]:
        """
        Key used to match fetched data to stored records.

        Plaid and Method records are keyed on their provider account id (scoped by
        source, since ids are not globally unique). Demo data has no stable id
        and is keyed on its label. Manual records are never matched.
        """
        if self.source == DataSource.DEMO:
            return (self.source.value, self.account_label)
        if self.source == DataSource.MANUAL or not self.provider_account_id:
            return None
        return (self.source.value, self.provider_account_id)

    @property
    def is_manual(self) -> bool:
        return self.source == DataSource.MANUAL

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data.pop('rate_reported', None)
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = float(value)
            elif isinstance(value, (datetime, date)):
                data[key] = value.isoformat()
            elif isinstance(value, Enum):
                data[key] = value.value
        return data


@dataclass
class ConnectionRecord:
    """A user's authorized session with one provider/institution."""
    owner_user_id: str
    provider: DataSource
    provider_session_ref: str = field(repr=False)  # Access token / entity id, never sent to clients
    institution_label: str = "Unknown Institution"
    external_ref: Optional[str] = None    # Public session id (Plaid item_id, Method entity id)
    institution_id: Optional[str] = None
    account_ids: List[str] = field(default_factory=list)  # Provider account ids seen under this session
    data_mode: DataMode = DataMode.LIVE
    active: bool = True
    last_synced_at: Optional[datetime] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    ephemeral: bool = False               # Synthesized for one request, never persisted

    def __post_init__(self):
        self.provider = DataSource(self.provider)
        self.data_mode = DataMode(self.data_mode)

    def covers(self, provider_account_id: Optional[str]) -> bool:
        return bool(provider_account_id) and provider_account_id in self.account_ids

    def to_dict(self) -> Dict[str, Any]:
        """Client-safe representation (the session reference is omitted)."""
        return {
            'id': self.id,
            'provider': self.provider.value,
            'institution_label': self.institution_label,
            'data_mode': self.data_mode.value,
            'active': self.active,
            'account_count': len(self.account_ids),
            'last_synced_at': self.last_synced_at.isoformat() if self.last_synced_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class ConnectOptions:
    owner_user_id: str
    mode: DataMode = DataMode.LIVE
    return_url: Optional[str] = None
    webhook_url: Optional[str] = None
    session_ref: Optional[str] = None     # Existing provider session to reuse, if any
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class ConnectResult:
    success: bool
    connection_ref: Optional[str] = None
    redirect_url: Optional[str] = None
    embed_token: Optional[str] = None
    error: Optional[str] = None
    connection: Optional[ConnectionRecord] = field(default=None, repr=False)  # To be persisted by the manager

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'success': self.success,
            'connection_ref': self.connection_ref,
            'redirect_url': self.redirect_url,
            'embed_token': self.embed_token,
            'error': self.error,
        }
        return {key: value for key, value in data.items() if value is not None}


@dataclass
class WebhookEvent:
    """Decoded provider push notification."""
    source: DataSource
    kind: WebhookEventKind
    event_type: str
    external_ref: Optional[str] = None
    provider_account_ids: List[str] = field(default_factory=list)
    institution_label: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SyncSummary:
    synced: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class AbstractLiabilityProvider(ABC):
    """
    Abstract base class for liability data providers.

    Implements the Strategy pattern for the different data sources. Every
    method that talks to an external API is a suspension point and may fail
    independently; callers bound each call with a timeout.
    """

    @abstractmethod
    def get_source_tag(self) -> DataSource:
        """Static identity of this provider."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """
        Whether required credentials/configuration are present.

        Must never raise.
        """
        pass

    @abstractmethod
    async def initiate_connection(self, options: ConnectOptions) -> ConnectResult:
        """
        Begin a connection flow.

        Returns a ConnectResult whose shape depends on the flow (embed token,
        redirect, or immediate). Failures are returned as ``success=False``
        with a human-readable ``error``; this method never raises.
        """
        pass

    @abstractmethod
    async def terminate_connection(self, connection: ConnectionRecord) -> bool:
        """
        Revoke a connection upstream.

        Idempotent: terminating an inactive connection returns False.
        """
        pass

    @abstractmethod
    async def list_accounts(self, connection: ConnectionRecord) -> List[AccountRecord]:
        """
        Fetch all liability accounts visible to a connection. No persistence.

        Raises:
            UpstreamSyncError: If the provider cannot be reached for this connection
        """
        pass

    @abstractmethod
    async def sync_one_account(self, connection: ConnectionRecord, provider_account_id: str) -> AccountRecord:
        """
        Refresh a single account.

        Raises:
            AccountNotFoundError: If the id is unknown to this connection
        """
        pass

    @abstractmethod
    async def sync_all_accounts(self, connection: ConnectionRecord) -> List[AccountRecord]:
        """
        Refresh every account of a connection.

        Best effort: one account failing must not abort the batch; failed
        accounts are omitted or returned with their last known data.
        """
        pass

    async def exchange_public_token(self, owner_user_id: str, public_token: str,
                                    institution_name: Optional[str] = None) -> ConnectionRecord:
        """Exchange a short-lived public token for a permanent session."""
        raise InvalidRequestError(
            f"Token exchange is not supported by {self.get_source_tag().value}",
            self.get_source_tag().value,
            "UNSUPPORTED_OPERATION"
        )

    def decode_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        """Decode a provider webhook into a WebhookEvent."""
        raise InvalidRequestError(
            f"Webhooks are not supported by {self.get_source_tag().value}",
            self.get_source_tag().value,
            "UNSUPPORTED_OPERATION"
        )


class ProviderError(Exception):
    """Base exception for liability provider errors."""

    status_code = 500

    def __init__(self, message: str, provider: str, error_code: Optional[str] = None,
                 original_error: Optional[Exception] = None):
        self.message = message
        self.provider = provider
        self.error_code = error_code
        self.original_error = original_error
        super().__init__(f"[{provider}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            'success': False,
            'error': self.message,
            'provider': self.provider,
            'error_code': self.error_code,
            'timestamp': datetime.now().isoformat()
        }


class NotConfiguredError(ProviderError):
    status_code = 400

    def __init__(self, provider: str):
        super().__init__(f"Provider {provider} is not configured", provider, "NOT_CONFIGURED")


class UnknownProviderError(ProviderError):
    status_code = 400

    def __init__(self, provider: str):
        super().__init__(f"Provider {provider} not found", provider, "UNKNOWN_PROVIDER")


class ConnectionNotFoundError(ProviderError):
    status_code = 404

    def __init__(self, provider: str, connection_id: Optional[str] = None):
        super().__init__("Connection not found", provider, "CONNECTION_NOT_FOUND")
        self.connection_id = connection_id


class AccountNotFoundError(ProviderError):
    status_code = 404

    def __init__(self, provider: str, account_id: Optional[str] = None):
        super().__init__("Account not found", provider, "ACCOUNT_NOT_FOUND")
        self.account_id = account_id


class UpstreamSyncError(ProviderError):
    """A provider call failed for one account or one connection."""
    status_code = 502

    def __init__(self, message: str, provider: str, original_error: Optional[Exception] = None):
        super().__init__(message, provider, "UPSTREAM_SYNC_FAILURE", original_error)


class ProviderDecodeError(ProviderError):
    """A provider payload could not be translated into canonical records."""
    status_code = 502

    def __init__(self, message: str, provider: str, original_error: Optional[Exception] = None):
        super().__init__(message, provider, "DECODE_ERROR", original_error)


class PersistenceError(ProviderError):
    """The persistence gateway failed. Fatal for the current request."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message, "storage", "PERSISTENCE_FAILURE", original_error)


class WebhookVerificationError(ProviderError):
    status_code = 401

    def __init__(self, provider: str):
        super().__init__("Invalid webhook signature", provider, "INVALID_SIGNATURE")


class InvalidRequestError(ProviderError):
    """The caller asked for something the provider cannot serve (e.g. an unknown demo institution)."""
    status_code = 400

    def __init__(self, message: str, provider: str, error_code: str = "INVALID_REQUEST"):
        super().__init__(message, provider, error_code)
