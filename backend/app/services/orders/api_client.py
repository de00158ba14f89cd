"""
Refund API Client

HTTP client for the refund and bank-account endpoints, used by front-ends
driving the RefundWizard against a remote service.

Responses follow the {success, message, ...} envelope. Failures are mapped
back onto the engine's error classes by status code.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type

import httpx

from .errors import (
    OrderEngineError, ValidationError, GuardError, ConflictError,
    AuthorizationError, NotFoundError, TransportError,
)
from .refund_workflow import RefundSubmission

logger = logging.getLogger(__name__)


STATUS_ERRORS: Dict[int, Type[OrderEngineError]] = {
    400: ValidationError,
    401: AuthorizationError,
    403: AuthorizationError,
    404: NotFoundError,
    422: ValidationError,
    409: GuardError,
    503: TransportError,
}


@dataclass(frozen=True)
class RemoteBankAccount:
    """Bank account as returned by the API (account number already masked)."""
    id: str
    bank_name: str
    account_number: str
    account_holder_name: str
    is_primary: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RemoteBankAccount":
        return cls(
            id=payload["id"],
            bank_name=payload["bankName"],
            account_number=payload["accountNumber"],
            account_holder_name=payload["accountHolderName"],
            is_primary=bool(payload.get("isPrimary")),
        )


class RefundApiClient:
    """
    Usage:
        client = RefundApiClient("https://api.example.com", token=jwt)
        accounts = client.list_bank_accounts(user_id)
        refund = client.submit_refund(submission)
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 10.0,
                 client: Optional[httpx.Client] = None):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = client or httpx.Client(base_url=base_url, headers=headers, timeout=timeout)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "RefundApiClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Bank accounts
    # -------------------------------------------------------------------------

    def list_bank_accounts(self, user_id: str) -> List[RemoteBankAccount]:
        body = self._request("GET", "/bank-account", params={"userId": user_id})
        return [RemoteBankAccount.from_payload(a) for a in body.get("bankAccounts", [])]

    def create_bank_account(self, user_id: str, fields: Dict[str, Any]) -> RemoteBankAccount:
        body = self._request("POST", "/bank-account", json={"userId": user_id, **fields})
        return RemoteBankAccount.from_payload(body["bankAccount"])

    def update_bank_account(self, user_id: str, account_id: str, fields: Dict[str, Any]) -> RemoteBankAccount:
        body = self._request("PUT", "/bank-account", json={"userId": user_id, "bankAccountId": account_id, **fields})
        return RemoteBankAccount.from_payload(body["bankAccount"])

    def delete_bank_account(self, user_id: str, account_id: str) -> None:
        self._request("DELETE", "/bank-account", params={"userId": user_id, "bankAccountId": account_id})

    # -------------------------------------------------------------------------
    # Refunds
    # -------------------------------------------------------------------------

    def submit_refund(self, submission: RefundSubmission) -> Dict[str, Any]:
        """POST /refund. Safe to repeat: the operation token makes it idempotent."""
        body = self._request("POST", "/refund", json=submission.to_payload())
        return body["refundRequest"]

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise TransportError("Could not reach the order service; please retry.") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_success and body.get("success", True):
            return body

        detail = body.get("detail")
        message = body.get("message") or (detail if isinstance(detail, str) else None) \
            or f"Request failed with status {response.status_code}"
        error_class = STATUS_ERRORS.get(response.status_code, OrderEngineError)
        if error_class is GuardError and body.get("error") == ConflictError.code:
            raise ConflictError(message, current_status=body.get("current_status"))
        raise error_class(message)


class RemoteBankAccounts:
    """Adapts RefundApiClient to the account interface RefundWizard expects."""

    def __init__(self, client: RefundApiClient):
        self.client = client

    def list(self, owner_id: str) -> List[RemoteBankAccount]:
        return self.client.list_bank_accounts(owner_id)

    def create(self, owner_id: str, fields: Dict[str, Any]) -> RemoteBankAccount:
        return self.client.create_bank_account(owner_id, fields)

    def get_for_owner(self, account_id: str, owner_id: str) -> RemoteBankAccount:
        for account in self.list(owner_id):
            if account.id == account_id:
                return account
        raise NotFoundError("Bank account not found", account_id=account_id)
