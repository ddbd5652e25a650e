"""
Debt account API routes.

Read access to the user's reconciled accounts, manual account entry and edits,
hide/unhide, and the dashboard summary.
"""

import logging
from datetime import date
from decimal import Decimal
from fastapi import APIRouter, HTTPException, Query, Depends
from pydantic import BaseModel, Field
from typing import Optional

from utils.authentication import get_authenticated_user_id
from utils.liabilities.abstract_provider import AccountCategory, ProviderError
from utils.liabilities.manual_provider import ManualAccountInput
from utils.liabilities.provider_manager import ProviderManager, get_provider_manager
from routes.provider_routes import provider_http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["debt-accounts"])


class ManualAccountRequest(BaseModel):
    institution_name: str = Field(..., min_length=1)
    account_label: str = Field(..., min_length=1)
    account_category: AccountCategory = AccountCategory.PERSONAL_LOAN
    current_balance: Decimal
    interest_rate: Optional[Decimal] = Field(None, ge=0)
    minimum_payment: Optional[Decimal] = Field(None, ge=0)
    credit_limit: Optional[Decimal] = Field(None, ge=0)
    next_payment_due_date: Optional[date] = None


class ManualAccountUpdateRequest(BaseModel):
    institution_name: Optional[str] = Field(None, min_length=1)
    account_label: Optional[str] = Field(None, min_length=1)
    account_category: Optional[AccountCategory] = None
    current_balance: Optional[Decimal] = None
    interest_rate: Optional[Decimal] = Field(None, ge=0)
    minimum_payment: Optional[Decimal] = Field(None, ge=0)
    credit_limit: Optional[Decimal] = Field(None, ge=0)
    next_payment_due_date: Optional[date] = None


class VisibilityRequest(BaseModel):
    hidden: bool


@router.get("/debt-accounts")
async def list_debt_accounts(
    include_hidden: bool = Query(False, description="Include hidden accounts"),
    include_demo: bool = Query(True, description="Include demo data"),
    user_id: str = Depends(get_authenticated_user_id),
    manager: ProviderManager = Depends(get_provider_manager)
):
    try:
        accounts = await manager.get_accounts(user_id, include_hidden=include_hidden, include_demo=include_demo)
        return {'success': True, 'accounts': [account.to_dict() for account in accounts]}
    except ProviderError as e:
        logger.error(f"Error listing debt accounts for user {user_id}: {e}")
        raise provider_http_error(e)


@router.post("/debt-accounts", status_code=201)
async def create_manual_account(
    body: ManualAccountRequest,
    user_id: str = Depends(get_authenticated_user_id),
    manager: ProviderManager = Depends(get_provider_manager)
):
    """Create a manually entered account. Manual accounts are never synced."""
    try:
        record = await manager.add_manual_account(user_id, ManualAccountInput(**body.model_dump()))
        return {'success': True, 'account': record.to_dict()}
    except ProviderError as e:
        logger.error(f"Error creating manual account for user {user_id}: {e}")
        raise provider_http_error(e)


@router.put("/debt-accounts/{account_id}")
async def update_manual_account(
    account_id: str,
    body: ManualAccountUpdateRequest,
    user_id: str = Depends(get_authenticated_user_id),
    manager: ProviderManager = Depends(get_provider_manager)
):
    """Edit a manual account. Only fields present in the body change."""
    try:
        record = await manager.update_manual_account(user_id, account_id, body.model_dump(exclude_unset=True))
        return {'success': True, 'account': record.to_dict()}
    except ProviderError as e:
        logger.error(f"Error updating account {account_id} for user {user_id}: {e}")
        raise provider_http_error(e)


@router.patch("/debt-accounts/{account_id}/visibility")
async def set_account_visibility(
    account_id: str,
    body: VisibilityRequest,
    user_id: str = Depends(get_authenticated_user_id),
    manager: ProviderManager = Depends(get_provider_manager)
):
    """Hide or unhide an account. Hidden accounts keep syncing."""
    try:
        record = await manager.set_account_hidden(user_id, account_id, body.hidden)
        return {'success': True, 'account': record.to_dict()}
    except ProviderError as e:
        raise provider_http_error(e)


@router.get("/debt-summary")
async def get_debt_summary(
    user_id: str = Depends(get_authenticated_user_id),
    manager: ProviderManager = Depends(get_provider_manager)
):
    try:
        summary = await manager.summarize(user_id)
        return {'success': True, **summary.to_dict()}
    except ProviderError as e:
        logger.error(f"Error computing debt summary for user {user_id}: {e}")
        raise HTTPException(status_code=e.status_code, detail="Failed to compute debt summary")
