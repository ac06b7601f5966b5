"""Error taxonomy for the app generation workflow.

Every error carries a stable ``code`` that facades put on the wire, and an
optional ``stage`` that the orchestrator fills in when a run fails.
"""

from typing import Optional


class OSGenError(Exception):
    """Base class for all osgen failures."""

    code = "OSGEN_ERROR"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def to_dict(self) -> dict:
        data = {"code": self.code, "message": self.message}
        if self.stage:
            data["stage"] = self.stage
        return data


class ConfigurationError(OSGenError):
    code = "CONFIGURATION_ERROR"


class AuthFailure(OSGenError):
    """The credential provider could not produce a token."""

    code = "AUTH_FAILURE"


class TransportFailure(OSGenError):
    """Non-success HTTP status, timeout or connection error on a remote call."""

    code = "TRANSPORT_FAILURE"

    def __init__(self, message: str, status_code: Optional[int] = None, stage: Optional[str] = None):
        super().__init__(message, stage=stage)
        self.status_code = status_code


class CreationFailure(OSGenError):
    code = "CREATION_FAILURE"


class TriggerFailure(OSGenError):
    code = "TRIGGER_FAILURE"


class MissingArtifact(OSGenError):
    code = "MISSING_ARTIFACT"


class PublicationStartFailure(OSGenError):
    code = "PUBLICATION_START_FAILURE"


class LocationResolutionFailure(OSGenError):
    code = "LOCATION_RESOLUTION_FAILURE"


class StageFailure(OSGenError):
    """The remote system reported a terminal failure phase."""

    code = "STAGE_FAILURE"

    def __init__(self, phase: str, stage: Optional[str] = None, message: Optional[str] = None):
        super().__init__(message or f"Remote reported failure phase '{phase}'", stage=stage)
        self.phase = phase

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["phase"] = self.phase
        return data


class UnknownSession(OSGenError):
    code = "UNKNOWN_SESSION"

    def __init__(self, session_id: str):
        super().__init__(f"Invalid or expired session ID: {session_id}")
        self.session_id = session_id


class StageOrderFailure(OSGenError):
    """A stage was invoked before the identifiers it needs were known."""

    code = "STAGE_ORDER_FAILURE"


class RunCancelled(OSGenError):
    code = "RUN_CANCELLED"


class InvalidTransition(OSGenError):
    code = "INVALID_TRANSITION"


class InvalidRequest(OSGenError):
    code = "VALIDATION_ERROR"


class InternalError(OSGenError):
    code = "INTERNAL_ERROR"
