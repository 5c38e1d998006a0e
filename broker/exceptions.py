#  Generation Broker - Custom Exceptions
#
#  Typed exception hierarchy so routes can map business errors to HTTP
#  status codes and the worker pool can decide what is retryable without
#  pattern-matching on message strings.
#
#  Depends on: (none)
#  Used by:    services/*, executors/*, app.py

class BrokerError(Exception):
    """Base exception for all broker business logic errors."""


class NotFoundError(BrokerError):
    """Account, task or model does not exist."""


class InsufficientFundsError(BrokerError):
    """Debit would leave balance + credit_limit below zero."""


class OptimisticConflictError(BrokerError):
    """Account version changed between read and write."""


class InvalidStateError(BrokerError):
    """Operation not allowed in the current resource state."""


class ValidationError(BrokerError):
    """Input is missing required fields or has invalid values."""


class TransientIOError(BrokerError):
    """Database, queue or HTTP failed in a retry-safe way."""


class RemoteFailureError(BrokerError):
    """Third-party API reported a terminal failure status."""


class PollTimeoutError(BrokerError):
    """Remote task did not finish within the executor's budget."""


class PermissionDeniedError(BrokerError):
    """Caller does not own the resource."""
