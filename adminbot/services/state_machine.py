from enum import Enum


class ProcessingStatus(str, Enum):
    IDLE = "idle"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


# Terminal records expire back to idle; a new turn may also overwrite a
# terminal record directly, which is the same hop through idle.
VALID_TRANSITIONS = {
    ProcessingStatus.IDLE: [ProcessingStatus.STARTED],
    ProcessingStatus.STARTED: [ProcessingStatus.COMPLETED, ProcessingStatus.FAILED],
    ProcessingStatus.COMPLETED: [ProcessingStatus.IDLE, ProcessingStatus.STARTED],
    ProcessingStatus.FAILED: [ProcessingStatus.IDLE, ProcessingStatus.STARTED],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_status: ProcessingStatus, to_status: ProcessingStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition: {from_status.value} -> {to_status.value}")


def can_transition(from_status: ProcessingStatus, to_status: ProcessingStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_status, [])
    return to_status in allowed


def transition(from_status: ProcessingStatus, to_status: ProcessingStatus) -> ProcessingStatus:
    """Perform status transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)
    return to_status


def start(current: ProcessingStatus) -> ProcessingStatus:
    return transition(current, ProcessingStatus.STARTED)


def coerce_status(value) -> ProcessingStatus:
    """Map a stored status string to ProcessingStatus; unknown values read as idle."""
    try:
        return ProcessingStatus(value)
    except ValueError:
        return ProcessingStatus.IDLE
