from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

# Phase vocabularies differ between the job and publication APIs; keep them apart.
READY_PHASE = "ReadyToGenerate"
BUILT_PHASE = "Done"
JOB_FAILED_PHASE = "Failed"
PUBLISHED_PHASE = "Finished"
PUBLICATION_FAILED_PHASE = "FinishedWithError"


class Stage(str, Enum):
    """The seven workflow stages, in execution order."""
    CREATE_JOB = "create_job"
    POLL_READY = "poll_ready"
    TRIGGER_BUILD = "trigger_build"
    POLL_BUILT = "poll_built"
    START_PUBLICATION = "start_publication"
    POLL_PUBLISHED = "poll_published"
    RESOLVE_LOCATION = "resolve_location"


STAGE_COUNT = len(Stage)


class RunState(str, Enum):
    IDLE = "idle"
    JOB_CREATED = "job_created"
    READY_TO_GENERATE = "ready_to_generate"
    GENERATED = "generated"
    PUBLICATION_STARTED = "publication_started"
    PUBLISHED = "published"
    LOCATION_RESOLVED = "location_resolved"
    ERROR = "error"


TERMINAL_RUN_STATES = {RunState.LOCATION_RESOLVED, RunState.ERROR}


class EventType(str, Enum):
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Remote payloads. Only the fields the orchestrator inspects are modelled.
# ---------------------------------------------------------------------------

class _RemoteModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AppSpec(_RemoteModel):
    app_key: Optional[str] = Field(None, alias="appKey")


class JobStatus(_RemoteModel):
    """Body of the create-job and get-job responses."""
    key: Optional[str] = None
    phase: Optional[str] = Field(None, alias="status")
    app_spec: Optional[AppSpec] = Field(None, alias="appSpec")

    @property
    def application_key(self) -> Optional[str]:
        return self.app_spec.app_key if self.app_spec else None


class PublicationStatus(_RemoteModel):
    """Body of the create-publication and get-publication responses."""
    key: Optional[str] = None
    phase: Optional[str] = Field(None, alias="status")


class ApplicationDetails(_RemoteModel):
    key: Optional[str] = None
    name: Optional[str] = None
    url_path: Optional[str] = Field(None, alias="urlPath")


# ---------------------------------------------------------------------------
# Run bookkeeping and the progress stream
# ---------------------------------------------------------------------------

class WorkflowEvent(BaseModel):
    """One item of the ordered progress stream. Exactly one terminal event ends a run."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    type: EventType
    message: str
    run_id: Optional[str] = None
    stage: Optional[Stage] = None
    url: Optional[str] = None
    error_code: Optional[str] = None
    error: Optional[Exception] = Field(None, exclude=True)

    @property
    def terminal(self) -> bool:
        return self.type in (EventType.COMPLETED, EventType.FAILED)


class WorkflowRun(BaseModel):
    """In-memory record of one orchestrated run."""
    run_id: str
    prompt: str
    state: RunState = RunState.IDLE
    session_id: Optional[str] = None
    job_id: Optional[str] = None
    application_key: Optional[str] = None
    publication_key: Optional[str] = None
    phases: List[str] = Field(default_factory=list)
    url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    failed_stage: Optional[Stage] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
