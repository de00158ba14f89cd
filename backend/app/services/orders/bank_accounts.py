"""
Bank Account Registry

Payout destinations owned by a single user. At most one account per owner
is primary; whenever one is marked primary every other account of that owner
is cleared in the same transaction.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import BankAccountDB
from .errors import AuthorizationError, NotFoundError, ValidationError
from .persistence import acknowledged

logger = logging.getLogger(__name__)


BANK_LIST = [
    "BCA", "BRI", "BNI", "MANDIRI", "CIMB NIAGA", "DANAMON", "PERMATA",
    "MAYBANK", "PANIN", "OCBC NISP", "BTN", "MEGA", "BUKOPIN", "SINARMAS",
    "COMMONWEALTH", "HSBC", "STANDARD CHARTERED", "CITIBANK", "JENIUS",
    "DIGIBANK", "TMRW", "SEABANK", "NEO COMMERCE", "JAGO", "ALLO BANK",
]

ACCOUNT_NUMBER_PATTERN = re.compile(r"^\d+$")
VISIBLE_DIGITS = 4


def mask(account_number: Optional[str]) -> str:
    """Hide all but the last four characters, e.g. "1234567890" -> "******7890"."""
    value = str(account_number or "")
    if len(value) <= VISIBLE_DIGITS:
        return value
    return "*" * (len(value) - VISIBLE_DIGITS) + value[-VISIBLE_DIGITS:]


def validate_account_fields(fields: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    """
    Normalize and validate account fields.

    Accepts snake_case or camelCase keys. With partial=True only the fields
    present are checked (updates). Raises ValidationError listing every bad field.
    """
    def pick(snake: str, camel: str) -> Any:
        if snake in fields:
            return fields[snake]
        return fields.get(camel)

    def present(snake: str, camel: str) -> bool:
        return snake in fields or camel in fields

    cleaned: Dict[str, Any] = {}
    errors: Dict[str, str] = {}

    if not partial or present("bank_name", "bankName"):
        bank_name = str(pick("bank_name", "bankName") or "").strip().upper()
        if not bank_name:
            errors["bankName"] = "Bank name is required"
        elif bank_name not in BANK_LIST:
            errors["bankName"] = "Unsupported bank"
        else:
            cleaned["bank_name"] = bank_name

    if not partial or present("account_number", "accountNumber"):
        number = str(pick("account_number", "accountNumber") or "").strip()
        if not number:
            errors["accountNumber"] = "Account number is required"
        elif not ACCOUNT_NUMBER_PATTERN.match(number):
            errors["accountNumber"] = "Account number must contain digits only"
        else:
            cleaned["account_number"] = number

    if not partial or present("account_holder_name", "accountHolderName"):
        holder = str(pick("account_holder_name", "accountHolderName") or "").strip()
        if not holder:
            errors["accountHolderName"] = "Account holder name is required"
        else:
            cleaned["account_holder_name"] = holder

    if present("is_primary", "isPrimary"):
        cleaned["is_primary"] = bool(pick("is_primary", "isPrimary"))

    if errors:
        raise ValidationError("Bank account details are incomplete or invalid", field_errors=errors)
    return cleaned


def account_to_dict(account: BankAccountDB) -> Dict[str, Any]:
    """API shape. The full account number never leaves the service."""
    return {
        "id": account.id,
        "bankName": account.bank_name,
        "accountNumber": mask(account.account_number),
        "accountHolderName": account.account_holder_name,
        "isPrimary": bool(account.is_primary),
        "isVerified": bool(account.is_verified),
        "createdAt": account.created_at.isoformat() if account.created_at else None,
    }


class BankAccountRegistry:
    """CRUD over one user's payout destinations."""

    mask = staticmethod(mask)

    def __init__(self, db_session: Session):
        self.db = db_session

    def list(self, owner_id: str) -> List[BankAccountDB]:
        """Primary first, then oldest first."""
        return (
            self.db.query(BankAccountDB)
            .filter(BankAccountDB.owner_id == owner_id)
            .order_by(BankAccountDB.is_primary.desc(), BankAccountDB.created_at)
            .all()
        )

    def get_for_owner(self, account_id: str, owner_id: str) -> BankAccountDB:
        account = self.db.query(BankAccountDB).filter(BankAccountDB.id == account_id).first()
        if not account:
            raise NotFoundError("Bank account not found", account_id=account_id)
        if account.owner_id != owner_id:
            raise AuthorizationError("This bank account belongs to another user")
        return account

    def create(self, owner_id: str, fields: Dict[str, Any]) -> BankAccountDB:
        """
        Add a payout destination.

        The owner's first account becomes primary even when not asked to.
        """
        if not owner_id:
            raise ValidationError("Owner is required", field_errors={"userId": "required"})
        cleaned = validate_account_fields(fields)

        has_accounts = (
            self.db.query(BankAccountDB.id).filter(BankAccountDB.owner_id == owner_id).first() is not None
        )
        make_primary = cleaned.pop("is_primary", False) or not has_accounts
        now = datetime.now(timezone.utc)

        account = BankAccountDB(
            id=str(uuid4()),
            owner_id=owner_id,
            is_primary=make_primary,
            is_verified=False,
            created_at=now,
            updated_at=now,
            **cleaned,
        )

        with acknowledged(self.db):
            if make_primary:
                self._clear_primary(owner_id, keep_id=account.id)
            self.db.add(account)

        logger.info(f"Bank account {account.id} ({account.bank_name} {mask(account.account_number)}) "
                    f"added for {owner_id}")
        return account

    def update(self, account_id: str, fields: Dict[str, Any], owner_id: str) -> BankAccountDB:
        account = self.get_for_owner(account_id, owner_id)
        cleaned = validate_account_fields(fields, partial=True)

        with acknowledged(self.db):
            if cleaned.get("is_primary"):
                self._clear_primary(owner_id, keep_id=account.id)
            for key, value in cleaned.items():
                setattr(account, key, value)
            account.updated_at = datetime.now(timezone.utc)

        return account

    def delete(self, account_id: str, owner_id: str) -> None:
        account = self.get_for_owner(account_id, owner_id)
        with acknowledged(self.db):
            self.db.delete(account)
        logger.info(f"Bank account {account_id} deleted for {owner_id}")

    def set_primary(self, account_id: str, owner_id: str) -> BankAccountDB:
        return self.update(account_id, {"is_primary": True}, owner_id)

    def _clear_primary(self, owner_id: str, keep_id: str) -> None:
        (
            self.db.query(BankAccountDB)
            .filter(
                BankAccountDB.owner_id == owner_id,
                BankAccountDB.id != keep_id,
                BankAccountDB.is_primary.is_(True),
            )
            .update({"is_primary": False}, synchronize_session="fetch")
        )
