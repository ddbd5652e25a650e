"""
Synthetic demo data provider.

Serves a fixed catalog of realistic liabilities per institution so the product
can be explored without linking a real account. Each fetch perturbs balances
by a small random amount to simulate activity; the catalog itself is never
modified.
"""

import os
import uuid
import random
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from .abstract_provider import (
    AbstractLiabilityProvider, AccountRecord, ConnectionRecord, ConnectOptions, ConnectResult,
    AccountCategory, DataMode, DataSource, AccountNotFoundError, InvalidRequestError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DemoAccount:
    id: str
    institution: str
    name: str
    category: AccountCategory
    balance: Decimal
    interest_rate: Decimal
    minimum_payment: Optional[Decimal]
    credit_limit: Optional[Decimal]
    days_until_due: int


def _demo(id, institution, name, category, balance, rate, minimum, limit, days):
    return DemoAccount(
        id=id, institution=institution, name=name, category=category,
        balance=Decimal(balance), interest_rate=Decimal(rate),
        minimum_payment=Decimal(minimum) if minimum is not None else None,
        credit_limit=Decimal(limit) if limit is not None else None,
        days_until_due=days,
    )


DEMO_INSTITUTIONS: Dict[str, List[DemoAccount]] = {
    'Chase Bank': [
        _demo('demo_chase_freedom', 'Chase Bank', 'Chase Freedom Unlimited',
              AccountCategory.CREDIT_CARD, '2847.32', '19.99', '85', '5000', 12),
        _demo('demo_chase_sapphire', 'Chase Bank', 'Chase Sapphire Preferred',
              AccountCategory.CREDIT_CARD, '1234.56', '21.99', '45', '10000', 12),
    ],
    'Bank of America': [
        _demo('demo_boa_auto', 'Bank of America', 'Auto Loan - Honda Accord',
              AccountCategory.AUTO_LOAN, '18543.21', '4.99', '425', None, 5),
    ],
    'Wells Fargo': [
        _demo('demo_wf_mortgage', 'Wells Fargo', 'Home Mortgage',
              AccountCategory.MORTGAGE, '285000', '6.75', '2150', None, 1),
        _demo('demo_wf_heloc', 'Wells Fargo', 'Home Equity Line of Credit',
              AccountCategory.HELOC, '15000', '8.5', '150', '50000', 1),
    ],
    'Sallie Mae': [
        _demo('demo_sallie_student', 'Sallie Mae', 'Student Loan - Undergraduate',
              AccountCategory.STUDENT_LOAN, '32000', '5.5', '350', None, 20),
    ],
    'Capital One': [
        _demo('demo_capital_venture', 'Capital One', 'Venture X Card',
              AccountCategory.CREDIT_CARD, '4521.89', '23.99', '135', '15000', 8),
    ],
    'American Express': [
        _demo('demo_amex_gold', 'American Express', 'Gold Card',
              AccountCategory.CREDIT_CARD, '3200.00', '22.99', '96', '20000', 15),
    ],
    'LendingClub': [
        _demo('demo_lc_personal', 'LendingClub', 'Personal Loan - Debt Consolidation',
              AccountCategory.PERSONAL_LOAN, '12000', '11.99', '380', None, 25),
    ],
}


class DemoLiabilityProvider(AbstractLiabilityProvider):
    """Always-available provider returning catalog data with jittered balances."""

    def __init__(self, jitter: Optional[Decimal] = None, rng: Optional[random.Random] = None,
                 today=None):
        self.provider_name = DataSource.DEMO.value
        if jitter is None:
            jitter = Decimal(os.getenv("DEMO_BALANCE_JITTER", "50"))
        self.jitter = Decimal(jitter)
        self.rng = rng or random.Random()
        self._today = today or date.today

    def get_source_tag(self) -> DataSource:
        return DataSource.DEMO

    def is_available(self) -> bool:
        return True

    def get_institutions(self) -> List[str]:
        return list(DEMO_INSTITUTIONS)

    def build_connection(self, owner_user_id: str, institution: str) -> ConnectionRecord:
        """Connection record binding a user to one demo institution."""
        if institution not in DEMO_INSTITUTIONS:
            raise InvalidRequestError(f"Unknown demo institution: {institution}", self.provider_name)
        return ConnectionRecord(
            owner_user_id=owner_user_id,
            provider=DataSource.DEMO,
            provider_session_ref=institution,
            external_ref=institution,
            institution_label=institution,
            account_ids=[account.id for account in DEMO_INSTITUTIONS[institution]],
            data_mode=DataMode.DEMO,
        )

    def _perturb(self, balance: Decimal) -> Decimal:
        if not self.jitter:
            return balance
        variation = Decimal(str(self.rng.uniform(-1, 1))) * self.jitter
        return max(Decimal('0'), balance + variation)

    def _to_record(self, account: DemoAccount) -> AccountRecord:
        next_due = self._today() + timedelta(days=account.days_until_due)
        return AccountRecord(
            source=DataSource.DEMO,
            provider_account_id=account.id,
            institution_name=account.institution,
            account_label=account.name,
            account_category=account.category,
            current_balance=self._perturb(account.balance),
            interest_rate=account.interest_rate,
            minimum_payment=account.minimum_payment,
            credit_limit=account.credit_limit,
            last_payment_date=next_due - timedelta(days=30),
            next_payment_due_date=next_due,
            last_synced_at=datetime.now(timezone.utc),
            data_mode=DataMode.DEMO,
        )

    async def initiate_connection(self, options: ConnectOptions) -> ConnectResult:
        connection_ref = f"demo_{uuid.uuid4()}"
        return ConnectResult(
            success=True,
            connection_ref=connection_ref,
            redirect_url=f"/demo/select-institution?connectionId={connection_ref}",
        )

    async def terminate_connection(self, connection: ConnectionRecord) -> bool:
        return connection.active

    async def list_accounts(self, connection: ConnectionRecord) -> List[AccountRecord]:
        accounts = DEMO_INSTITUTIONS.get(connection.external_ref or connection.provider_session_ref, [])
        return [self._to_record(account) for account in accounts]

    async def sync_one_account(self, connection: ConnectionRecord, provider_account_id: str) -> AccountRecord:
        """Look up by catalog id or by account label (stored demo rows carry only the label)."""
        accounts = DEMO_INSTITUTIONS.get(connection.external_ref or connection.provider_session_ref, [])
        for account in accounts:
            if provider_account_id in (account.id, account.name):
                return self._to_record(account)
        raise AccountNotFoundError(self.provider_name, provider_account_id)

    async def sync_all_accounts(self, connection: ConnectionRecord) -> List[AccountRecord]:
        return await self.list_accounts(connection)
