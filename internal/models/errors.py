"""Error taxonomy for the migration control plane.

  MigrationError
    NotFoundError            a required lookup had no match
      NoMatchingSubnetError  no subnet with the requested visibility
    PreconditionFailedError  cutback precondition not met (machine + reason)
    ExternalCallError        an invoked function/workflow returned an error payload
    TransportError           network or serialization failure talking to a collaborator
      SessionExpiredError    replication-service session needs re-authentication
    InvalidTransitionError   lifecycle transition not allowed from current state
"""

from enum import Enum


class MigrationError(Exception):
    pass


class NotFoundError(MigrationError):
    pass


class NoMatchingSubnetError(NotFoundError):
    pass


class PreconditionReason(str, Enum):
    BLUEPRINT_NOT_CONFIGURED = "blueprint-not-configured"
    REPLICATION_INCOMPLETE = "replication-incomplete"
    NO_CONSISTENCY_TIMESTAMP = "no-consistency-timestamp"


_REASON_TEXT = {
    PreconditionReason.BLUEPRINT_NOT_CONFIGURED: "launch blueprint is not configured",
    PreconditionReason.REPLICATION_INCOMPLETE: "data replication is not complete",
    PreconditionReason.NO_CONSISTENCY_TIMESTAMP: "no consistency point has been reached yet",
}


class PreconditionFailedError(MigrationError):
    """Cutback refused because one machine is not ready."""

    def __init__(self, machine_id: str, reason: PreconditionReason):
        self.machine_id = machine_id
        self.reason = reason
        super().__init__(f"Machine {machine_id}: {_REASON_TEXT[reason]}")


class ExternalCallError(MigrationError):
    def __init__(self, function: str, message: str):
        self.function = function
        super().__init__(f"{function}: {message}")


class TransportError(MigrationError):
    pass


class SessionExpiredError(TransportError):
    pass


class InvalidTransitionError(MigrationError):
    pass
