"""
Reconciliation error types.
"""

from typing import Any, Optional


class ReconciliationError(Exception):
    """Base exception for reconciliation errors"""
    pass


class InvalidTransactionError(ReconciliationError, ValueError):
    """Raised when a transaction cannot be turned into a record."""
    def __init__(self, message: str, field: Optional[str] = None, raw_value: Any = None):
        self.message = message
        self.field = field
        self.raw_value = raw_value
        super().__init__(message)


class ReconciliationCancelled(ReconciliationError):
    """Raised when a run is cancelled between app transactions."""
    pass


class RunAlreadyCompletedError(ReconciliationError):
    """Raised when completing a run that is no longer running"""
    def __init__(self, run_id: str, status: str):
        self.run_id = run_id
        self.status = status
        super().__init__(f"Run {run_id} is already completed with status {status}")


class RunNotFoundError(ReconciliationError, LookupError):
    """Raised when a run id is unknown"""
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Reconciliation run not found: {run_id}")


class GatewayError(ReconciliationError):
    """Raised when the payment gateway cannot answer a status query."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)
