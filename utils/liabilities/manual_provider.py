"""
Manual entry provider.

Manual accounts are typed in by the user and never synced; the provider exists
so that manual entry goes through the same registry and record model as every
other source.
"""

import logging
from dataclasses import dataclass, fields
from datetime import date
from decimal import Decimal
from typing import List, Optional

from .abstract_provider import (
    AbstractLiabilityProvider, AccountRecord, ConnectionRecord, ConnectOptions, ConnectResult,
    AccountCategory, DataMode, DataSource, AccountNotFoundError,
)

logger = logging.getLogger(__name__)


@dataclass
class ManualAccountInput:
    institution_name: str
    account_label: str
    account_category: AccountCategory
    current_balance: Decimal
    interest_rate: Optional[Decimal] = None
    minimum_payment: Optional[Decimal] = None
    credit_limit: Optional[Decimal] = None
    next_payment_due_date: Optional[date] = None


MANUAL_EDITABLE_FIELDS = tuple(f.name for f in fields(ManualAccountInput))
MANUAL_REQUIRED_FIELDS = ('institution_name', 'account_label', 'account_category', 'current_balance')


class ManualLiabilityProvider(AbstractLiabilityProvider):

    def get_source_tag(self) -> DataSource:
        return DataSource.MANUAL

    def is_available(self) -> bool:
        return True

    def build_account(self, owner_user_id: str, data: ManualAccountInput) -> AccountRecord:
        return AccountRecord(
            source=DataSource.MANUAL,
            owner_user_id=owner_user_id,
            institution_name=data.institution_name,
            account_label=data.account_label,
            account_category=data.account_category,
            current_balance=data.current_balance,
            interest_rate=data.interest_rate,
            minimum_payment=data.minimum_payment,
            credit_limit=data.credit_limit,
            next_payment_due_date=data.next_payment_due_date,
            data_mode=DataMode.LIVE,
        )

    async def initiate_connection(self, options: ConnectOptions) -> ConnectResult:
        # Nothing to authorize; the client goes straight to the entry form.
        return ConnectResult(success=True)

    async def terminate_connection(self, connection: ConnectionRecord) -> bool:
        return False

    async def list_accounts(self, connection: ConnectionRecord) -> List[AccountRecord]:
        return []

    async def sync_one_account(self, connection: ConnectionRecord, provider_account_id: str) -> AccountRecord:
        raise AccountNotFoundError(DataSource.MANUAL.value, provider_account_id)

    async def sync_all_accounts(self, connection: ConnectionRecord) -> List[AccountRecord]:
        return []
