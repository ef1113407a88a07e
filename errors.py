"""
error taxonomy for the ledger engine.

every business-rule or validation failure is a LedgerError, which is a
ValueError so callers that only care about "bad request vs crash" can keep
catching ValueError. status_code is the HTTP status app.py answers with.
"""


class LedgerError(ValueError):
    status_code = 400


# ---------
# validation (rejected before any ledger mutation)
# ---------

class InvalidAmount(LedgerError):
    pass


class InvalidRequest(LedgerError):
    pass


class InvalidWebhookPayload(LedgerError):
    pass


class MissingBuyerReference(LedgerError):
    pass


class InvalidCommissionConfig(LedgerError):
    pass


class InvalidStatus(LedgerError):
    pass


# ---------
# not found
# ---------

class ProductNotFound(LedgerError):
    status_code = 404


class CustomerNotFound(LedgerError):
    status_code = 404


class OrderNotFound(LedgerError):
    status_code = 404


class RequestNotFound(LedgerError):
    status_code = 404


class CommissionConfigNotFound(LedgerError):
    status_code = 404


# ---------
# authorization / authenticity
# ---------

class NotAuthorized(LedgerError):
    status_code = 403


class InvalidSignature(LedgerError):
    status_code = 401


# ---------
# business rules
# ---------

class InsufficientFunds(LedgerError):
    status_code = 402


class InsufficientBalance(LedgerError):
    status_code = 402


class InvalidStateForCancellation(LedgerError):
    status_code = 409


class RequestAlreadyProcessed(LedgerError):
    status_code = 409


class CommissionConfigInUse(LedgerError):
    status_code = 409


class ProductNotPriced(LedgerError):
    status_code = 422


class ConfigurationMissing(LedgerError):
    # pricing is impossible until an admin activates a config
    status_code = 503
