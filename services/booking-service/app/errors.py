class BookingError(Exception):
    """Base class for every failure the booking orchestrator reports."""


class ValidationError(BookingError):
    """Disallowed transition or malformed input. Raised before any mutation."""


class BookingNotFound(ValidationError):
    def __init__(self, booking_id: str):
        super().__init__(f"Booking {booking_id} not found")
        self.booking_id = booking_id


class TransactionNotFound(ValidationError):
    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction {transaction_id} not found")
        self.transaction_id = transaction_id


class WorkerNotEligible(ValidationError):
    def __init__(self, worker_id: str, reason: str):
        super().__init__(f"Worker {worker_id} is not eligible: {reason}")
        self.worker_id = worker_id
        self.reason = reason


class ConflictError(BookingError):
    """A conditional write's precondition no longer held. Re-read and decide."""


class ExternalServiceError(BookingError):
    """Payment gateway (or another remote collaborator) unreachable, declined or errored."""

    def __init__(self, message: str, service: str = "payment-gateway", status_code: int | None = None):
        super().__init__(message)
        self.service = service
        self.status_code = status_code


class PersistenceError(BookingError):
    """Store write or read failed."""


class RollbackFailure(BookingError):
    """
    Compensation itself errored. The transaction is left ``failed`` and
    needs manual intervention.
    """

    def __init__(self, transaction_id: str, cause: BaseException, compensation_errors: list[BaseException]):
        details = "; ".join(str(e) for e in compensation_errors)
        super().__init__(f"Rollback of transaction {transaction_id} failed: {details} (original failure: {cause})")
        self.transaction_id = transaction_id
        self.cause = cause
        self.compensation_errors = compensation_errors


class TimeoutFired(BookingError):
    """
    Internal signal emitted by the task worker when a state's dwell time
    elapsed. Consumed by ``WorkflowEngine.handle_timeout``; never surfaced
    to callers.
    """

    def __init__(self, booking_id: str, status, status_version: int | None = None):
        super().__init__(f"Timeout fired for booking {booking_id} in {getattr(status, 'value', status)}")
        self.booking_id = booking_id
        self.status = status
        self.status_version = status_version
