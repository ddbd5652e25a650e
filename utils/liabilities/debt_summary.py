"""Dashboard aggregates over a user's visible debt accounts."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable

from .abstract_provider import AccountRecord, CENTS

ZERO = Decimal('0')


@dataclass
class DebtSummary:
    total_debt: Decimal = ZERO
    weighted_avg_rate: Decimal = ZERO          # Balance-weighted APR percentage
    total_minimum_payments: Decimal = ZERO
    monthly_interest: Decimal = ZERO
    account_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_debt': float(self.total_debt),
            'weighted_avg_rate': float(self.weighted_avg_rate),
            'total_minimum_payments': float(self.total_minimum_payments),
            'monthly_interest': float(self.monthly_interest),
            'account_count': self.account_count,
        }


def summarize_accounts(accounts: Iterable[AccountRecord]) -> DebtSummary:
    """
    Aggregate balances, rates and payments. Hidden accounts are excluded.

    The weighted average rate is 0 when there is no outstanding debt.
    """
    visible = [account for account in accounts if not account.hidden]

    total_debt = sum((a.current_balance for a in visible), ZERO)
    weighted = sum((a.current_balance * a.interest_rate for a in visible), ZERO)
    minimums = sum((a.minimum_payment or ZERO for a in visible), ZERO)
    monthly_interest = sum((a.current_balance * a.interest_rate / 100 / 12 for a in visible), ZERO)

    return DebtSummary(
        total_debt=total_debt.quantize(CENTS),
        weighted_avg_rate=(weighted / total_debt).quantize(CENTS) if total_debt > 0 else ZERO,
        total_minimum_payments=minimums.quantize(CENTS),
        monthly_interest=monthly_interest.quantize(CENTS),
        account_count=len(visible),
    )
