"""
Spendflow Error Handling

Specific error types with user-facing messages and debugging context.
Every engine failure is one of these; nothing is signalled with bare
ValueError/KeyError across a service boundary.
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Caller errors (400s)
    VALIDATION_FAILED = "VALIDATION_FAILED"
    UNKNOWN_APPROVER = "UNKNOWN_APPROVER"
    STAGE_CLOSED = "STAGE_CLOSED"
    OUT_OF_TURN = "OUT_OF_TURN"
    SELF_APPROVAL = "SELF_APPROVAL"
    OVER_BUDGET_REASON_REQUIRED = "OVER_BUDGET_REASON_REQUIRED"
    INVALID_CONFIG = "INVALID_CONFIG"

    # Lookups (404)
    NOT_FOUND = "NOT_FOUND"
    REQUEST_NOT_FOUND = "REQUEST_NOT_FOUND"
    MASTER_DATA_NOT_FOUND = "MASTER_DATA_NOT_FOUND"

    # Routing
    POLICY_NOT_FOUND = "POLICY_NOT_FOUND"

    # Ledger idempotency
    ALREADY_RESERVED = "ALREADY_RESERVED"
    NO_RESERVATION = "NO_RESERVATION"
    ALREADY_RELEASED = "ALREADY_RELEASED"
    ALREADY_SETTLED = "ALREADY_SETTLED"

    # Chain / concurrency
    CHAIN_CLOSED = "CHAIN_CLOSED"
    BUSY = "BUSY"


class SpendflowError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class ValidationError(SpendflowError):
    """Malformed input. Caller's fault, never retried automatically."""

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        super().__init__(code=code, message=message, detail=detail, context=context)


class UnknownApproverError(ValidationError):
    """Decision from someone who is not an approver on the request."""

    def __init__(self, request_id: str, approver_id: str):
        super().__init__(
            message=f"User '{approver_id}' is not an approver for request {request_id}",
            detail="Only approvers listed on the open stage (or their delegates) can decide",
            context={"request_id": request_id, "approver_id": approver_id},
            code=ErrorCode.UNKNOWN_APPROVER,
        )


class StageClosedError(ValidationError):
    """Decision for a stage the chain has already moved past."""

    def __init__(self, request_id: str, approver_id: str, stage_index: int):
        super().__init__(
            message=f"Stage {stage_index} of request {request_id} is already closed",
            detail="Earlier stages are never re-evaluated",
            context={"request_id": request_id, "approver_id": approver_id, "stage_index": stage_index},
            code=ErrorCode.STAGE_CLOSED,
        )


class OutOfTurnError(ValidationError):
    """Sequential stage decided by an approver whose turn has not come."""

    def __init__(self, request_id: str, approver_id: str, awaiting: str):
        super().__init__(
            message=f"Approver '{approver_id}' cannot decide before '{awaiting}'",
            detail="This stage requires approvers to act in order",
            context={"request_id": request_id, "approver_id": approver_id, "awaiting": awaiting},
            code=ErrorCode.OUT_OF_TURN,
        )


class SelfApprovalError(ValidationError):
    """Requester trying to decide on their own request."""

    def __init__(self, request_id: str, approver_id: str):
        super().__init__(
            message="Requesters cannot approve their own requests",
            detail="The applicable policy does not allow self-approval",
            context={"request_id": request_id, "approver_id": approver_id},
            code=ErrorCode.SELF_APPROVAL,
        )


class OverBudgetJustificationError(ValidationError):
    """In-budget request that would exceed planned capacity without a reason."""

    def __init__(self, budget_line_id: str, period: str, available: float, amount: float):
        super().__init__(
            message="An over-budget justification is required",
            detail=f"Only {available:,.2f} available for {budget_line_id} in {period}; requested {amount:,.2f}",
            context={
                "budget_line_id": budget_line_id,
                "period": period,
                "available": available,
                "amount": amount,
            },
            code=ErrorCode.OVER_BUDGET_REASON_REQUIRED,
        )


class ConfigError(SpendflowError):
    """Error in configuration."""

    def __init__(self, field: str, detail: str):
        super().__init__(
            code=ErrorCode.INVALID_CONFIG,
            message=f"Invalid configuration for '{field}'",
            detail=detail,
            context={"field": field}
        )


class NotFoundError(SpendflowError):
    """Generic lookup miss."""

    def __init__(self, entity: str, entity_id: str, code: ErrorCode = ErrorCode.NOT_FOUND):
        super().__init__(
            code=code,
            message=f"{entity} '{entity_id}' not found",
            context={"entity": entity, "entity_id": entity_id},
        )


class RequestNotFoundError(NotFoundError):
    def __init__(self, request_id: str):
        super().__init__("Spend request", request_id, code=ErrorCode.REQUEST_NOT_FOUND)


class MasterDataNotFoundError(NotFoundError):
    """Category, cost center or budget line missing from master data."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(entity, entity_id, code=ErrorCode.MASTER_DATA_NOT_FOUND)


class PolicyNotFoundError(SpendflowError):
    """No active policy matches the request. Submission is blocked."""

    def __init__(self, amount: float, category_id: Optional[str], cost_center_id: Optional[str], kind: str = "approval"):
        super().__init__(
            code=ErrorCode.POLICY_NOT_FOUND,
            message=f"No {kind} policy applies to this request",
            detail="Contact finance to configure an approval policy for this amount, category and cost center",
            context={
                "amount": amount,
                "category_id": category_id,
                "cost_center_id": cost_center_id,
                "kind": kind,
            },
        )


class AlreadyReservedError(SpendflowError):
    """A reservation exists for the request with a different amount."""

    def __init__(self, request_id: str, reserved_amount: float, requested_amount: float):
        super().__init__(
            code=ErrorCode.ALREADY_RESERVED,
            message=f"Request {request_id} already holds a reservation of {reserved_amount:,.2f}",
            detail=f"Second reservation for {requested_amount:,.2f} disagrees with the first",
            context={
                "request_id": request_id,
                "reserved_amount": reserved_amount,
                "requested_amount": requested_amount,
            },
        )


class NoReservationError(SpendflowError):
    def __init__(self, request_id: str):
        super().__init__(
            code=ErrorCode.NO_RESERVATION,
            message=f"Request {request_id} has no budget reservation to settle",
            context={"request_id": request_id},
        )


class AlreadyReleasedError(SpendflowError):
    """Settling a reservation that was already given back."""

    def __init__(self, request_id: str):
        super().__init__(
            code=ErrorCode.ALREADY_RELEASED,
            message=f"Reservation for request {request_id} was already released",
            context={"request_id": request_id},
        )


class AlreadySettledError(SpendflowError):
    """Second settlement for a request with a different final amount."""

    def __init__(self, request_id: str, settled_amount: float, requested_amount: float):
        super().__init__(
            code=ErrorCode.ALREADY_SETTLED,
            message=f"Request {request_id} was already settled at {settled_amount:,.2f}",
            detail=f"Second settlement for {requested_amount:,.2f} disagrees with the first",
            context={
                "request_id": request_id,
                "settled_amount": settled_amount,
                "requested_amount": requested_amount,
            },
        )


class ChainClosedError(SpendflowError):
    """Late action on a chain that already reached a terminal state."""

    def __init__(self, request_id: str, state: str):
        super().__init__(
            code=ErrorCode.CHAIN_CLOSED,
            message="Someone already acted on this request",
            detail=f"Approval chain is {state}",
            context={"request_id": request_id, "state": state},
        )


class BusyError(SpendflowError):
    """Lock contention. Callers retry with backoff."""

    def __init__(self, key: str, retry_after: float = 1.0):
        self.retry_after = retry_after
        super().__init__(
            code=ErrorCode.BUSY,
            message="Resource is busy, retry shortly",
            context={"key": key, "retry_after": retry_after},
        )


STATUS_MAP = {
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.UNKNOWN_APPROVER: 400,
    ErrorCode.STAGE_CLOSED: 400,
    ErrorCode.OUT_OF_TURN: 400,
    ErrorCode.SELF_APPROVAL: 403,
    ErrorCode.OVER_BUDGET_REASON_REQUIRED: 400,
    ErrorCode.INVALID_CONFIG: 500,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.REQUEST_NOT_FOUND: 404,
    ErrorCode.MASTER_DATA_NOT_FOUND: 404,
    ErrorCode.POLICY_NOT_FOUND: 422,
    ErrorCode.ALREADY_RESERVED: 409,
    ErrorCode.NO_RESERVATION: 409,
    ErrorCode.ALREADY_RELEASED: 409,
    ErrorCode.ALREADY_SETTLED: 409,
    ErrorCode.CHAIN_CLOSED: 409,
    ErrorCode.BUSY: 503,
}


def status_code_for(error: SpendflowError) -> int:
    return STATUS_MAP.get(error.code, 500)


def to_http_exception(error: SpendflowError) -> HTTPException:
    """Convert SpendflowError to HTTPException."""
    headers = None
    if isinstance(error, BusyError):
        headers = {"Retry-After": str(max(1, int(round(error.retry_after))))}
    return HTTPException(
        status_code=status_code_for(error),
        detail=error.to_dict(),
        headers=headers,
    )
