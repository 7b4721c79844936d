"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    code = "DomainError"


# Validation errors: caller input, never retried, no state change


class ValidationError(DomainException):
    """Application or repayment request violates loan terms"""

    code = "ValidationError"


class IneligibleRiskError(ValidationError):
    """Risk profile does not qualify for undercollateralized lending"""

    code = "IneligibleRisk"


class AmountExceedsCapError(ValidationError):
    code = "AmountExceedsCap"


class TermExceedsCapError(ValidationError):
    code = "TermExceedsCap"


class CollateralTooHighError(ValidationError):
    """Collateral must stay strictly below the principal"""

    code = "CollateralTooHigh"


class CollateralTooLowError(ValidationError):
    code = "CollateralTooLow"


class RepaymentExceedsBalanceError(ValidationError):
    code = "RepaymentExceedsBalance"


class InvalidAmountError(ValidationError):
    code = "InvalidAmount"


class InvalidEvaluationTimeError(ValidationError):
    """Default evaluation requested as of a moment later than the current time"""

    code = "InvalidEvaluationTime"


# Conflict errors: wrong state or identity, safe to retry after re-reading the loan


class ConflictError(DomainException):
    code = "Conflict"


class NotFoundError(ConflictError):
    """Loan or repayment record does not exist"""

    code = "NotFound"


class StateConflictError(ConflictError):
    """Loan is not in the source state the transition requires"""

    code = "StateConflict"


class RepaymentPendingError(StateConflictError):
    """An earlier repayment request is still awaiting confirmation"""

    code = "RepaymentPending"


class RequestMismatchError(ConflictError):
    code = "RequestMismatch"


class AuthorizationMismatchError(ConflictError):
    code = "AuthorizationMismatch"


class SettlementNotConfirmedError(ConflictError):
    """Gateway re-verification did not confirm the signed request"""

    code = "SettlementNotConfirmed"


class DefaultNotDueError(ConflictError):
    """Loan is not past due date plus grace period yet"""

    code = "NotYetDue"


# Downstream errors: external collaborators failed


class DownstreamError(DomainException):
    code = "DownstreamError"


class ScoreUnavailableError(DownstreamError):
    code = "ScoreUnavailable"


class GatewayUnavailableError(DownstreamError):
    code = "GatewayUnavailable"


class SettlementFailedError(DownstreamError):
    """Ledger rejected or failed to settle a submitted transaction"""

    code = "SettlementFailed"


class CollateralReleaseError(DownstreamError):
    code = "ReleaseFailed"


class ClaimFailedError(DownstreamError):
    code = "ClaimFailed"


# Operator escalation


class DisbursementFailedError(DomainException):
    """Disbursement failed after a confirmed collateral lock"""

    code = "DisbursementFailed"

    def __init__(self, loan_id: str, reason: str):
        super().__init__(f"Disbursement failed for loan {loan_id}: {reason}")
        self.loan_id = loan_id
        self.reason = reason
