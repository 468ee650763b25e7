# mlm_system/errors.py
"""
Error taxonomy for the compensation core.

Placement and commission engines hand these back inside result objects;
payout operations raise them. Every error has a stable `code` for callers
and a `userMessage` safe to show to a distributor or admin.
"""
from typing import Optional


class MLMError(Exception):
    """Base class for compensation core errors."""

    code = "mlm_error"
    userMessage = "Something went wrong, please try again later"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.userMessage)
        self.message = message or self.userMessage


class AlreadyPlacedError(MLMError):
    code = "already_placed"
    userMessage = "You already have a position in the matrix"


class MatrixFullError(MLMError):
    code = "matrix_full"
    userMessage = "Your signup is being placed in the next available position"


class OrderNotFoundError(MLMError):
    code = "order_not_found"
    userMessage = "Order not found"


class NoCommissionableItemsError(MLMError):
    code = "no_commissionable_items"
    userMessage = "Order has no commissionable items"


class CommissionsAlreadyProcessedError(MLMError):
    code = "commissions_already_processed"
    userMessage = "Commissions for this order were already calculated"


class PlanValidationError(MLMError):
    code = "plan_invalid"
    userMessage = "Compensation plan settings are invalid"

    def __init__(self, errors, warnings=None):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__("; ".join(self.errors) or self.userMessage)


class PaymentNotFoundError(MLMError):
    code = "payment_not_found"
    userMessage = "Payment not found"


class InvalidStatusTransition(MLMError):
    code = "invalid_status_transition"
    userMessage = "This status change is not allowed"

    def __init__(self, entity: str, current: str, requested: str):
        self.entity = entity
        self.current = current
        self.requested = requested
        super().__init__(f"{entity} cannot move from '{current}' to '{requested}'")


class PersistenceError(MLMError):
    code = "persistence_error"
    userMessage = "Could not save changes, please try again later"


class CommissionNotFoundError(MLMError):
    code = "commission_not_found"
    userMessage = "Commission not found"


class EmptyPayoutBatchError(MLMError):
    code = "empty_payout_batch"
    userMessage = "No approved commissions available for payout"


class PayoutSubmissionError(MLMError):
    """Raised by a payout submitter when the processor declines a transfer."""

    code = "payout_submission_failed"
    userMessage = "The payout could not be sent"

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or f"Payout declined: {reason}")
