"""
Bank Account API Routes

Payout destinations for the acting user. Account numbers are returned masked.
"""
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_actor
from ..models.order_models import Actor
from ..services.orders import BankAccountRegistry, BANK_LIST, AuthorizationError, ValidationError
from ..services.orders.bank_accounts import account_to_dict


router = APIRouter(prefix="/bank-account", tags=["bank-accounts"])


class BankAccountBody(BaseModel):
    """Create or update a payout destination."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId", description="Owner of the account")
    bank_account_id: Optional[str] = Field(None, alias="bankAccountId", description="Account id (updates only)")
    bank_name: Optional[str] = Field(None, alias="bankName", description="One of the supported banks")
    account_number: Optional[str] = Field(None, alias="accountNumber", description="Digits only")
    account_holder_name: Optional[str] = Field(None, alias="accountHolderName")
    is_primary: Optional[bool] = Field(None, alias="isPrimary")

    def fields(self) -> dict:
        return self.model_dump(exclude={"user_id", "bank_account_id"}, exclude_none=True)


def _ensure_self(actor: Actor, user_id: str) -> None:
    if actor.user_id != user_id:
        raise AuthorizationError("You can only manage your own bank accounts")


@router.get("", response_model=dict)
async def list_bank_accounts(
    user_id: str = Query(..., alias="userId"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    _ensure_self(actor, user_id)
    accounts = BankAccountRegistry(db).list(user_id)
    return {"success": True, "bankAccounts": [account_to_dict(a) for a in accounts]}


@router.get("/banks", response_model=dict)
async def list_banks():
    return {"success": True, "banks": BANK_LIST}


@router.post("", response_model=dict, status_code=201)
async def create_bank_account(
    body: BankAccountBody,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    _ensure_self(actor, body.user_id)
    account = BankAccountRegistry(db).create(body.user_id, body.fields())
    return {"success": True, "message": "Rekening bank berhasil ditambahkan", "bankAccount": account_to_dict(account)}


@router.put("", response_model=dict)
async def update_bank_account(
    body: BankAccountBody,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    _ensure_self(actor, body.user_id)
    if not body.bank_account_id:
        raise ValidationError("Account id is required", field_errors={"bankAccountId": "required"})
    account = BankAccountRegistry(db).update(body.bank_account_id, body.fields(), body.user_id)
    return {"success": True, "message": "Rekening bank berhasil diperbarui", "bankAccount": account_to_dict(account)}


@router.delete("", response_model=dict)
async def delete_bank_account(
    user_id: str = Query(..., alias="userId"),
    account_id: str = Query(..., alias="bankAccountId"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    _ensure_self(actor, user_id)
    BankAccountRegistry(db).delete(account_id, user_id)
    return {"success": True, "message": "Rekening bank berhasil dihapus"}
