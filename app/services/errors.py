from datetime import datetime
from uuid import UUID

from app.domain.enums import QueueStatus
from app.domain.exceptions import ConflictError, NotFoundError


class CustomerNotFoundError(NotFoundError):
    def __init__(self, customer_id: UUID) -> None:
        super().__init__(f"Customer '{customer_id}' not found")
        self.customer_id = customer_id


class ConversationStateNotFoundError(NotFoundError):
    def __init__(self, customer_id: UUID) -> None:
        super().__init__(f"Customer '{customer_id}' has no conversation yet")
        self.customer_id = customer_id


class QueueEntryNotFoundError(NotFoundError):
    def __init__(self, entry_id: UUID) -> None:
        super().__init__(f"Queue entry '{entry_id}' not found")
        self.entry_id = entry_id


class StateVersionConflictError(ConflictError):
    def __init__(self, customer_id: UUID, expected_version: int) -> None:
        super().__init__(
            f"Conversation state of customer '{customer_id}' changed "
            f"since version {expected_version}"
        )
        self.customer_id = customer_id
        self.expected_version = expected_version


class QueueEntryAlreadyClaimedError(ConflictError):
    def __init__(self, entry_id: UUID, operator_id: UUID | None) -> None:
        super().__init__(f"Queue entry '{entry_id}' is already claimed")
        self.entry_id = entry_id
        self.operator_id = operator_id


class LockNotHeldError(ConflictError):
    def __init__(self, entry_id: UUID, operator_id: UUID) -> None:
        super().__init__(
            f"Operator '{operator_id}' does not hold the lock on queue entry '{entry_id}'"
        )
        self.entry_id = entry_id
        self.operator_id = operator_id


class LockExpiredError(ConflictError):
    def __init__(self, entry_id: UUID, expired_at: datetime | None) -> None:
        super().__init__(f"Lock on queue entry '{entry_id}' has expired")
        self.entry_id = entry_id
        self.expired_at = expired_at


class QueueEntryClosedError(ConflictError):
    def __init__(self, entry_id: UUID, status: QueueStatus) -> None:
        super().__init__(f"Queue entry '{entry_id}' is already '{status.value}'")
        self.entry_id = entry_id
        self.status = status


class OperatorCapacityError(ConflictError):
    def __init__(self, operator_id: UUID, max_active_locks: int) -> None:
        super().__init__(
            f"Operator '{operator_id}' already holds {max_active_locks} active locks"
        )
        self.operator_id = operator_id
        self.max_active_locks = max_active_locks
