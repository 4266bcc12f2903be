"""
Error Taxonomy Module

Typed errors raised by the ledger components and the OperationResult shape
the facade returns to callers. Every error carries a stable ``code`` string
that is part of the external contract.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(Enum):
    """Broad classes of failure"""
    VALIDATION = "validation"          # Malformed input, safe to retry after correction
    STATE_CONFLICT = "state_conflict"  # Inconsistent with current entity state
    NOT_FOUND = "not_found"            # Missing or not owned by the caller
    INFRASTRUCTURE = "infrastructure"  # Storage or integrity failure


class BankError(Exception):
    """Base exception for ledger operations"""

    category = ErrorCategory.INFRASTRUCTURE
    code = "INTERNAL_ERROR"
    default_message = "Operation failed"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        if code:
            self.code = code
        self.details = details
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ValidationError(BankError, ValueError):
    category = ErrorCategory.VALIDATION
    code = "VALIDATION_ERROR"


class StateConflictError(BankError):
    category = ErrorCategory.STATE_CONFLICT
    code = "STATE_CONFLICT"


class NotFoundError(BankError):
    category = ErrorCategory.NOT_FOUND
    code = "NOT_FOUND"


class InfrastructureError(BankError):
    category = ErrorCategory.INFRASTRUCTURE
    code = "STORAGE_ERROR"
    default_message = "Storage failure"


# Validation errors

class InvalidType(ValidationError):
    code = "INVALID_TYPE"
    default_message = "Invalid account type. Must be: checking, savings, money_market, or cd"


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"
    default_message = "Amount must be positive"


class InvalidCDTerm(ValidationError):
    code = "INVALID_CD_TERM"
    default_message = "CD term must be 3, 6, or 12 months"


class MinBalanceRequired(ValidationError):
    code = "MIN_BALANCE_REQUIRED"


class AmountTooLarge(ValidationError):
    code = "AMOUNT_TOO_LARGE"


class MissingRecipient(ValidationError):
    code = "MISSING_RECIPIENT"
    default_message = "Recipient is required"


class ConflictingRecipient(ValidationError):
    code = "CONFLICTING_RECIPIENT"
    default_message = "Specify only one of to_agent or to_name, not both"


class MissingName(ValidationError):
    code = "MISSING_NAME"
    default_message = "Name is required"


class InvalidName(ValidationError):
    code = "INVALID_NAME"


class NameTooLong(ValidationError):
    code = "NAME_TOO_LONG"


class InvalidDate(ValidationError):
    code = "INVALID_DATE"
    default_message = "Invalid date"


class DateInPast(ValidationError):
    code = "DATE_IN_PAST"
    default_message = "Target date must be in the future"


class InvalidStatus(ValidationError):
    code = "INVALID_STATUS"


class ExceedsTarget(ValidationError):
    code = "EXCEEDS_TARGET"
    default_message = "Current amount cannot exceed target amount"


class SameAccount(ValidationError):
    code = "SAME_ACCOUNT"
    default_message = "Source and destination accounts must differ"


class UseTransfer(ValidationError):
    code = "USE_TRANSFER"
    default_message = "Withdrawals move funds into checking. Use a transfer for checking funds."


class InvalidDestination(ValidationError):
    code = "INVALID_DESTINATION"
    default_message = "Cannot transfer to a CD account"


class CDNoDeposit(ValidationError):
    code = "CD_NO_DEPOSIT"
    default_message = "Cannot deposit to CD after creation. Open a new CD instead."


class CDNoWithdraw(ValidationError):
    code = "CD_NO_WITHDRAW"
    default_message = "Cannot withdraw from CD before maturity. Use early withdrawal instead."


class NotCDAccount(ValidationError):
    code = "NOT_CD_ACCOUNT"
    default_message = "Operation only applies to CD accounts"


# State conflicts

class InsufficientFunds(StateConflictError):
    code = "INSUFFICIENT_FUNDS"
    default_message = "Insufficient funds"


class WithdrawalLimitReached(StateConflictError):
    code = "WITHDRAWAL_LIMIT_REACHED"


class CDNotMatured(StateConflictError):
    code = "CD_NOT_MATURED"
    default_message = "Cannot withdraw from CD before maturity. Use early withdrawal instead."


class CDMatured(StateConflictError):
    code = "CD_MATURED"
    default_message = "CD has already matured. Wait for maturity processing."


class CDInactive(StateConflictError):
    code = "CD_INACTIVE"
    default_message = "CD is not active"


class AccountInactive(StateConflictError):
    code = "ACCOUNT_INACTIVE"
    default_message = "Account is not active"


class AgentInactive(StateConflictError):
    code = "AGENT_INACTIVE"
    default_message = "Recipient agent is not active"


class AlreadyResponded(StateConflictError):
    code = "ALREADY_RESPONDED"


class RequestExpired(StateConflictError):
    code = "REQUEST_EXPIRED"
    default_message = "This payment request has expired"


class AlreadyClaimed(StateConflictError):
    code = "ALREADY_CLAIMED"
    default_message = "Agent has already been claimed"


class NameTaken(StateConflictError):
    code = "NAME_TAKEN"
    default_message = "An agent with this name already exists"


class DuplicateRequest(StateConflictError):
    code = "DUPLICATE_REQUEST"
    default_message = "You already have a pending request to this agent"


class SelfTransfer(StateConflictError):
    code = "SELF_TRANSFER"
    default_message = "Cannot transfer to yourself. Use internal transfer instead."


class SelfDonation(StateConflictError):
    code = "SELF_DONATION"
    default_message = "Cannot donate to yourself"


class SelfRequest(StateConflictError):
    code = "SELF_REQUEST"
    default_message = "Cannot request payment from yourself"


class NoCheckingAccount(StateConflictError):
    code = "NO_CHECKING"
    default_message = "No active checking account found"


# Early withdrawal reports the same condition under the same code
NoChecking = NoCheckingAccount


class NoRecipientAccount(StateConflictError):
    code = "NO_RECIPIENT_ACCOUNT"
    default_message = "Recipient has no active checking account"


class CannotReactivate(StateConflictError):
    code = "CANNOT_REACTIVATE"
    default_message = "Cannot reactivate a completed or cancelled goal"


class ConcurrentModification(StateConflictError):
    code = "CONCURRENT_MODIFICATION"
    default_message = "Record was modified concurrently, retry the operation"


# Not found

class AccountNotFound(NotFoundError):
    code = "ACCOUNT_NOT_FOUND"
    default_message = "Account not found"


class AgentNotFound(NotFoundError):
    code = "AGENT_NOT_FOUND"
    default_message = "Agent not found"


class GoalNotFound(NotFoundError):
    code = "GOAL_NOT_FOUND"
    default_message = "Goal not found"


class RequestNotFound(NotFoundError):
    code = "REQUEST_NOT_FOUND"
    default_message = "Payment request not found"


class NotYourRequest(NotFoundError):
    code = "NOT_YOUR_REQUEST"
    default_message = "This payment request is not addressed to you"


# Infrastructure

class StorageError(InfrastructureError):
    code = "STORAGE_ERROR"


class LedgerIntegrityError(InfrastructureError):
    code = "LEDGER_INTEGRITY"
    default_message = "Transaction history does not reconstruct the balance"


@dataclass
class OperationResult:
    """
    Outcome of a facade operation: (success, code, message) plus payload.
    Failures never carry internal exception detail.
    """
    success: bool
    code: str = "OK"
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    category: Optional[ErrorCategory] = None

    @classmethod
    def ok(cls, data: Optional[Dict[str, Any]] = None, message: str = "") -> 'OperationResult':
        return cls(success=True, code="OK", message=message, data=data or {})

    @classmethod
    def from_error(cls, error: BankError) -> 'OperationResult':
        # Storage and integrity detail stays in the logs
        if error.category == ErrorCategory.INFRASTRUCTURE:
            message = type(error).default_message
        else:
            message = error.message
        return cls(
            success=False,
            code=error.code,
            message=message,
            category=error.category
        )

    @classmethod
    def internal_error(cls, message: str = "Operation failed") -> 'OperationResult':
        return cls(
            success=False,
            code="INTERNAL_ERROR",
            message=message,
            category=ErrorCategory.INFRASTRUCTURE
        )

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, **self.data}
        return {"success": False, "error": self.message, "code": self.code}
