class LedgerServiceError(Exception):
    status_code = 500


class InvalidInputError(LedgerServiceError):
    status_code = 400


class InvalidAmountError(InvalidInputError):
    pass


class UnauthenticatedError(LedgerServiceError):
    status_code = 401


class PermissionDeniedError(LedgerServiceError):
    status_code = 403


class NotFoundError(LedgerServiceError):
    status_code = 404


class ItemNotFoundError(NotFoundError):
    pass


class TransactionNotFoundError(NotFoundError):
    pass


class ProfileNotFoundError(NotFoundError):
    pass


class BusinessRuleViolation(LedgerServiceError):
    status_code = 400


class ItemNotAvailableError(BusinessRuleViolation):
    pass


class SelfPurchaseError(BusinessRuleViolation):
    pass


class InsufficientFundsError(BusinessRuleViolation):
    pass


class SelfTransferError(BusinessRuleViolation):
    pass


class InvalidStateTransitionError(BusinessRuleViolation):
    pass


class ConcurrentConflictError(LedgerServiceError):
    status_code = 409


class IdempotencyConflictError(LedgerServiceError):
    status_code = 409


class LedgerInconsistencyError(LedgerServiceError):
    """Ledger state that needs manual reconciliation before further writes."""


class AccountFrozenError(LedgerInconsistencyError):
    pass
