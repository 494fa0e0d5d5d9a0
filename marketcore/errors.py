"""
Engine exceptions.

Every error the engines raise carries an HTTP-ish status and a
machine-readable code, so the API layer can translate without
string matching.

  4xx: the caller did something the market state does not allow.
       Never retried.
  409: optimistic write conflict. Retried by the store, never surfaced
       unless retries run out (then TransactionFailed, 503).
  500: an internal invariant broke. Always aborts the transaction.
"""

import logging


logger = logging.getLogger(__name__)


class MarketError(Exception):
    status = 400
    code = "bad_request"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class BadRequest(MarketError):
    status = 400
    code = "bad_request"


class AddingAnswersDisabled(BadRequest):
    code = "adding_answers_disabled"


class NotFound(MarketError):
    status = 404
    code = "not_found"


class Forbidden(MarketError):
    status = 403
    code = "forbidden"


class InsufficientBalance(Forbidden):
    code = "insufficient_balance"


class InvariantViolation(MarketError):
    """An internal consistency check failed. A bug, not a user mistake."""
    status = 500
    code = "invariant_violation"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, details)
        logger.error("invariant violation: %s %s", message, self.details)


class TransactionConflict(MarketError):
    status = 409
    code = "transaction_conflict"


class TransactionFailed(MarketError):
    status = 503
    code = "transaction_failed"
