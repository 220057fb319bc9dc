"""
Custom Exception Hierarchy

Every business failure of the conversation engine is an AppException with a
stable error code. None of them is retried by the core.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # User errors (3xxx)
    INVALID_MENTOR = "ERR_3002"

    # Wallet errors (4xxx)
    INSUFFICIENT_BALANCE = "ERR_4002"
    INVALID_AMOUNT = "ERR_4003"

    # Session errors (6xxx)
    SESSION_NOT_FOUND = "ERR_6002"
    INVALID_STATE = "ERR_6003"
    SESSION_CLOSED = "ERR_6004"
    ALREADY_RATED = "ERR_6005"

    # Payment errors (7xxx)
    INVALID_SIGNATURE = "ERR_7001"
    DUPLICATE_EXTERNAL_REF = "ERR_7002"
    PAYMENT_NOT_FOUND = "ERR_7003"
    PAYMENT_FAILED = "ERR_7004"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class SessionNotFoundError(NotFoundException):
    """Raised when a session id does not resolve"""

    def __init__(self, session_id: int):
        super().__init__("Session", session_id, error_code=ErrorCode.SESSION_NOT_FOUND)


class PaymentNotFoundError(NotFoundException):
    """Raised when no pending credit exists for a gateway order id"""

    def __init__(self, external_order_id: str):
        super().__init__("Payment", external_order_id, error_code=ErrorCode.PAYMENT_NOT_FOUND)


class ForbiddenError(AppException):
    """Raised when the actor may not perform the action"""

    def __init__(self, message: str, actor_id: int | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.FORBIDDEN,
            status_code=403,
            details={"actor_id": actor_id} if actor_id is not None else None
        )


class InvalidMentorError(AppException):
    """Raised when a session is opened with a mentor that is not approved and active"""

    def __init__(self, mentor_id: int, reason: str):
        super().__init__(
            message=f"Mentor {mentor_id} cannot take sessions: {reason}",
            error_code=ErrorCode.INVALID_MENTOR,
            status_code=400,
            details={"mentor_id": mentor_id, "reason": reason}
        )


class WalletException(AppException):
    """Base exception for wallet-related errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        user_id: int | None = None,
        status_code: int = 400,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        if user_id:
            self.details["user_id"] = user_id


class InsufficientBalanceError(WalletException):
    """Raised when a debit would take the wallet below zero.

    Uses HTTP 402 and its own error code so the client can prompt a top-up.
    """

    def __init__(self, user_id: int, current_balance: int, required_amount: int):
        super().__init__(
            message=f"Insufficient balance for user {user_id}",
            error_code=ErrorCode.INSUFFICIENT_BALANCE,
            user_id=user_id,
            status_code=402,
            details={
                "current_balance": current_balance,
                "required_amount": required_amount,
                "shortfall": max(required_amount - current_balance, 0),
            }
        )


class InvalidAmountError(WalletException):
    """Raised for zero or negative ledger amounts"""

    def __init__(self, amount: Any):
        super().__init__(
            message=f"Amount must be a positive integer, got {amount!r}",
            error_code=ErrorCode.INVALID_AMOUNT,
            details={"amount": str(amount)}
        )


class StateMachineException(AppException):
    """Base exception for session lifecycle errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


class InvalidStateError(StateMachineException):
    """Raised when a lifecycle transition is not allowed from the current state"""

    def __init__(self, current_state: str, action: str, session_id: int | None = None):
        super().__init__(
            message=f"Cannot {action} a session in state '{current_state}'",
            error_code=ErrorCode.INVALID_STATE,
            details={
                "current_state": current_state,
                "action": action,
                "session_id": session_id,
            }
        )


class SessionClosedError(StateMachineException):
    """Raised when content or a charge arrives for a session that is no longer open"""

    def __init__(self, session_id: int, current_state: str):
        super().__init__(
            message=f"Session {session_id} is closed ({current_state})",
            error_code=ErrorCode.SESSION_CLOSED,
            details={"session_id": session_id, "current_state": current_state}
        )


class SessionAlreadyRatedError(StateMachineException):
    """Raised when a student sends feedback for a session twice"""

    def __init__(self, session_id: int):
        super().__init__(
            message=f"Session {session_id} has already been rated",
            error_code=ErrorCode.ALREADY_RATED,
            details={"session_id": session_id}
        )


class PaymentException(AppException):
    """Base exception for payment reconciliation errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        external_order_id: str,
        status_code: int = 400,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details={"external_order_id": external_order_id}
        )


class InvalidSignatureError(PaymentException):
    """Raised when the gateway signature does not match"""

    def __init__(self, external_order_id: str):
        super().__init__(
            message=f"Invalid payment signature for order {external_order_id}",
            error_code=ErrorCode.INVALID_SIGNATURE,
            external_order_id=external_order_id,
        )


class DuplicateExternalRefError(PaymentException):
    """Raised when a gateway order id is reused for a different credit"""

    def __init__(self, external_order_id: str):
        super().__init__(
            message=f"Order {external_order_id} is already bound to another credit",
            error_code=ErrorCode.DUPLICATE_EXTERNAL_REF,
            external_order_id=external_order_id,
            status_code=409,
        )


class PaymentFailedError(PaymentException):
    """Raised when a callback arrives for an order already marked failed"""

    def __init__(self, external_order_id: str):
        super().__init__(
            message=f"Payment for order {external_order_id} already failed and cannot be settled",
            error_code=ErrorCode.PAYMENT_FAILED,
            external_order_id=external_order_id,
            status_code=409,
        )
