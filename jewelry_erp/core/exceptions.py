"""
Domain exception hierarchy for scheduling and batch processing.

- CollaboratorError: an external collaborator (invoice generator, PDF
  renderer, communication dispatcher) failed. Schedules are left due for
  the next cycle, batches go through the retry policy.
- CollaboratorTimeout: the collaborator did not answer within the caller
  supplied timeout; handled exactly like any other failed attempt.
- RepositoryUnavailable: persistence failure. The whole cycle or batch
  attempt aborts without writing terminal states.
"""


class JewelryERPError(Exception):
    """Base exception for the application"""


class CollaboratorError(JewelryERPError):
    """An external collaborator call failed."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class CollaboratorTimeout(CollaboratorError):
    """An external collaborator call exceeded its timeout."""

    def __init__(self, operation: str, timeout: float):
        super().__init__(f"{operation} timed out after {timeout:g}s")
        self.operation = operation
        self.timeout = timeout


class RepositoryUnavailable(JewelryERPError):
    """Scheduling or batch state could not be read or written."""


class InvalidStatusTransition(JewelryERPError):
    def __init__(self, batch_id, current, requested):
        super().__init__(f"Batch {batch_id} cannot move from '{current}' to '{requested}'")
        self.batch_id = batch_id
        self.current = current
        self.requested = requested


class BatchNotFound(JewelryERPError):
    def __init__(self, batch_id):
        super().__init__(f"Batch operation {batch_id} not found")
        self.batch_id = batch_id


class ScheduleNotFound(JewelryERPError):
    def __init__(self, schedule_id):
        super().__init__(f"Recurring schedule {schedule_id} not found")
        self.schedule_id = schedule_id


class UnsupportedBatchKind(JewelryERPError):
    pass


class UnsupportedChannel(CollaboratorError):
    def __init__(self, channel: str):
        super().__init__(f"Unsupported communication channel: {channel}", retryable=False)
        self.channel = channel
