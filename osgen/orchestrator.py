"""
Workflow orchestration engine.

Drives the seven-stage generate/publish workflow strictly in order on top of
the credential cache, the session registry and the stage poller. Each stage
is also callable on its own, addressed by session id, for step-wise tools.
"""

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

import httpx

from osgen.config import Settings
from osgen.credentials import CredentialCache, CredentialProvider
from osgen.errors import (
    CreationFailure,
    InternalError,
    InvalidRequest,
    InvalidTransition,
    LocationResolutionFailure,
    MissingArtifact,
    OSGenError,
    PublicationStartFailure,
    RunCancelled,
    StageOrderFailure,
    TransportFailure,
    TriggerFailure,
)
from osgen.outsystems_client import OutSystemsClient
from osgen.poller import CancellationToken, poll_until
from osgen.registry import SessionEntry, SessionRegistry
from osgen.schemas import (
    BUILT_PHASE,
    JOB_FAILED_PHASE,
    PUBLICATION_FAILED_PHASE,
    PUBLISHED_PHASE,
    READY_PHASE,
    STAGE_COUNT,
    TERMINAL_RUN_STATES,
    EventType,
    JobStatus,
    PublicationStatus,
    RunState,
    Stage,
    WorkflowEvent,
    WorkflowRun,
)

logger = logging.getLogger("osgen")

_MAX_FINISHED_RUNS = 100

_TRANSITIONS: Dict[RunState, Set[RunState]] = {
    RunState.IDLE: {RunState.JOB_CREATED, RunState.ERROR},
    RunState.JOB_CREATED: {RunState.READY_TO_GENERATE, RunState.ERROR},
    RunState.READY_TO_GENERATE: {RunState.GENERATED, RunState.ERROR},
    RunState.GENERATED: {RunState.PUBLICATION_STARTED, RunState.ERROR},
    RunState.PUBLICATION_STARTED: {RunState.PUBLISHED, RunState.ERROR},
    RunState.PUBLISHED: {RunState.LOCATION_RESOLVED, RunState.ERROR},
    RunState.LOCATION_RESOLVED: set(),
    RunState.ERROR: set(),
}


def compose_app_url(base_url: str, url_path: str) -> str:
    """Join the public base address and an application's URL path."""
    return base_url.rstrip("/") + "/" + url_path.lstrip("/")


def transition(run: WorkflowRun, target: RunState) -> None:
    """Move ``run`` forward to ``target``; anything else is a bug."""
    if target not in _TRANSITIONS[run.state]:
        raise InvalidTransition(f"Invalid transition from {run.state.value} to {target.value}")
    run.state = target


def _ignore(_status) -> None:
    return None


class WorkflowOrchestrator:
    """Runs generate/publish workflows against one OutSystems tenant."""

    def __init__(
        self,
        credentials: CredentialCache,
        client: OutSystemsClient,
        base_url: str,
        registry: Optional[SessionRegistry] = None,
        ready_poll_interval: float = 5.0,
        build_poll_interval: float = 10.0,
        publish_poll_interval: float = 10.0,
    ):
        self.credentials = credentials
        self.client = client
        self.base_url = base_url
        self.registry = registry or SessionRegistry()
        self.ready_poll_interval = ready_poll_interval
        self.build_poll_interval = build_poll_interval
        self.publish_poll_interval = publish_poll_interval
        self._runs: "OrderedDict[str, WorkflowRun]" = OrderedDict()
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        provider: Optional[CredentialProvider] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ) -> "WorkflowOrchestrator":
        credentials = CredentialCache.from_settings(settings, provider=provider, clock=clock)
        client = OutSystemsClient(settings.hostname, timeout=settings.request_timeout, transport=transport)
        return cls(
            credentials,
            client,
            base_url=settings.base_url,
            ready_poll_interval=settings.ready_poll_interval,
            build_poll_interval=settings.build_poll_interval,
            publish_poll_interval=settings.publish_poll_interval,
        )

    async def aclose(self) -> None:
        """Cancel in-progress runs and release the HTTP client."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.client.aclose()

    # ------------------------------------------------------------------
    # Individual stages
    # ------------------------------------------------------------------

    async def _bearer(self) -> str:
        credential = await self.credentials.get_token()
        return credential.token

    async def create_job(self, prompt: str) -> Tuple[SessionEntry, JobStatus]:
        """Stage 1: submit the prompt and register the remote job under a new session."""
        if not isinstance(prompt, str) or not prompt.strip():
            raise InvalidRequest("Prompt must be a non-empty string.")
        token = await self._bearer()
        job = await self.client.create_job(token, prompt)
        if not job.key:
            raise CreationFailure("API did not return a valid Job Key.")
        entry = self.registry.create(job.key)
        logger.info(f"Started job. Session {entry.session_id} -> job {job.key}")
        return entry, job

    async def job_status(self, session_id: str) -> JobStatus:
        entry = self.registry.get(session_id)
        status = await self._fetch_job(entry.job_id)
        if status.phase == BUILT_PHASE and status.application_key:
            self.registry.update(session_id, application_key=status.application_key)
        return status

    async def _fetch_job(self, job_id: str) -> JobStatus:
        token = await self._bearer()
        return await self.client.get_job_status(token, job_id)

    async def wait_until_ready(
        self,
        session_id: str,
        on_progress: Callable[[JobStatus], None] = _ignore,
        cancel_token: Optional[CancellationToken] = None,
    ) -> JobStatus:
        """Stage 2: poll the job until it reports ``ReadyToGenerate``."""
        entry = self.registry.get(session_id)
        return await poll_until(
            lambda: self._fetch_job(entry.job_id),
            is_success=lambda s: s.phase == READY_PHASE,
            is_failure=lambda s: s.phase == JOB_FAILED_PHASE,
            interval=self.ready_poll_interval,
            on_progress=on_progress,
            cancel_token=cancel_token,
        )

    async def trigger_build(self, session_id: str) -> None:
        """Stage 3: ask the remote system to generate the application."""
        entry = self.registry.get(session_id)
        token = await self._bearer()
        try:
            await self.client.trigger_generation(token, entry.job_id)
        except TransportFailure as exc:
            if exc.status_code is None:
                raise
            raise TriggerFailure(f"Generation trigger was rejected. {exc.message}") from exc

    async def wait_until_built(
        self,
        session_id: str,
        on_progress: Callable[[JobStatus], None] = _ignore,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """Stage 4: poll the job until ``Done`` and return the application key."""
        entry = self.registry.get(session_id)
        status = await poll_until(
            lambda: self._fetch_job(entry.job_id),
            is_success=lambda s: s.phase == BUILT_PHASE,
            is_failure=lambda s: s.phase == JOB_FAILED_PHASE,
            interval=self.build_poll_interval,
            on_progress=on_progress,
            cancel_token=cancel_token,
        )
        application_key = status.application_key
        if not application_key:
            raise MissingArtifact("Generation succeeded, but no Application Key was provided.")
        self.registry.update(session_id, application_key=application_key)
        return application_key

    def _application_key(self, entry: SessionEntry) -> str:
        if not entry.application_key:
            raise StageOrderFailure(
                f"Session {entry.session_id} has no application key yet; "
                "wait for generation to reach 'Done' first."
            )
        return entry.application_key

    async def start_publication(self, session_id: str) -> PublicationStatus:
        """Stage 5: publish the generated application."""
        entry = self.registry.get(session_id)
        application_key = self._application_key(entry)
        token = await self._bearer()
        publication = await self.client.create_publication(token, application_key)
        if not publication.key:
            raise PublicationStartFailure("API did not return a valid Publication Key.")
        self.registry.update(session_id, publication_key=publication.key)
        return publication

    async def publication_status(self, session_id: str) -> PublicationStatus:
        entry = self.registry.get(session_id)
        return await self._fetch_publication(self._publication_key(entry))

    def _publication_key(self, entry: SessionEntry) -> str:
        if not entry.publication_key:
            raise StageOrderFailure(
                f"Session {entry.session_id} has no publication yet; start the publication first."
            )
        return entry.publication_key

    async def _fetch_publication(self, publication_key: str) -> PublicationStatus:
        token = await self._bearer()
        return await self.client.get_publication_status(token, publication_key)

    async def wait_until_published(
        self,
        session_id: str,
        on_progress: Callable[[PublicationStatus], None] = _ignore,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PublicationStatus:
        """Stage 6: poll the publication until ``Finished``."""
        entry = self.registry.get(session_id)
        publication_key = self._publication_key(entry)
        return await poll_until(
            lambda: self._fetch_publication(publication_key),
            is_success=lambda s: s.phase == PUBLISHED_PHASE,
            is_failure=lambda s: s.phase == PUBLICATION_FAILED_PHASE,
            interval=self.publish_poll_interval,
            on_progress=on_progress,
            cancel_token=cancel_token,
        )

    async def resolve_location(self, session_id: str) -> str:
        """Stage 7: look up the application's URL path and build its public address."""
        entry = self.registry.get(session_id)
        application_key = self._application_key(entry)
        token = await self._bearer()
        details = await self.client.get_application_details(token, application_key)
        if not details.url_path:
            raise LocationResolutionFailure("Could not retrieve final application URL.")
        return compose_app_url(self.base_url, details.url_path)

    # ------------------------------------------------------------------
    # Full runs
    # ------------------------------------------------------------------

    async def run(
        self,
        prompt: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[WorkflowEvent]:
        """Run the whole workflow, yielding progress events in emission order.

        The last event is always terminal: ``completed`` with the URL, or
        ``failed`` naming the stage. Closing the iterator early cancels the run;
        a request already on the wire completes and its result is dropped.
        """
        token = cancel_token or CancellationToken()
        record = self._register_run(prompt)
        queue: "asyncio.Queue[WorkflowEvent]" = asyncio.Queue()
        task = asyncio.create_task(self._drive(record, token, queue.put_nowait))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        try:
            while True:
                event = await queue.get()
                yield event
                if event.terminal:
                    break
        finally:
            if not task.done():
                token.request_cancel("Caller detached from the progress stream.")

    async def create_and_deploy(
        self,
        prompt: str,
        on_progress: Optional[Callable[[str], None]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """Run the workflow to completion. Returns the URL or raises the failing stage's error."""
        stream = self.run(prompt, cancel_token)
        try:
            async for event in stream:
                if event.type is EventType.COMPLETED:
                    return event.url
                if on_progress:
                    on_progress(event.message)
                if event.type is EventType.FAILED:
                    raise event.error or OSGenError(event.message, stage=event.stage)
        finally:
            await stream.aclose()
        raise InternalError("Progress stream ended without a terminal event.")

    async def _drive(
        self,
        run: WorkflowRun,
        cancel_token: CancellationToken,
        emit: Callable[[WorkflowEvent], None],
    ) -> None:
        stage = Stage.CREATE_JOB

        def progress(message: str) -> None:
            emit(WorkflowEvent(type=EventType.PROGRESS, message=message, run_id=run.run_id, stage=stage))

        def observe(status) -> None:
            run.phases.append(status.phase or "unknown")
            progress(f"  -> Current status: {status.phase}")

        try:
            progress(f"Step 1/{STAGE_COUNT}: Creating generation job...")
            cancel_token.raise_if_cancelled()
            entry, _ = await self.create_job(run.prompt)
            session_id = entry.session_id
            run.session_id, run.job_id = session_id, entry.job_id
            transition(run, RunState.JOB_CREATED)
            progress(f"  -> Job created: {entry.job_id}")

            stage = Stage.POLL_READY
            progress(f"Step 2/{STAGE_COUNT}: Polling for '{READY_PHASE}' status...")
            await self.wait_until_ready(session_id, observe, cancel_token)
            transition(run, RunState.READY_TO_GENERATE)
            progress(f"  -> Status is {READY_PHASE}. Proceeding to next step.")

            stage = Stage.TRIGGER_BUILD
            progress(f"Step 3/{STAGE_COUNT}: Triggering OML generation...")
            cancel_token.raise_if_cancelled()
            await self.trigger_build(session_id)
            progress("  -> Generation triggered.")

            stage = Stage.POLL_BUILT
            progress(f"Step 4/{STAGE_COUNT}: Polling for generation completion status '{BUILT_PHASE}'...")
            run.application_key = await self.wait_until_built(session_id, observe, cancel_token)
            transition(run, RunState.GENERATED)
            progress(f"  -> Generation succeeded. Acquired Application Key: {run.application_key}")

            stage = Stage.START_PUBLICATION
            progress(f"Step 5/{STAGE_COUNT}: Starting application publication...")
            cancel_token.raise_if_cancelled()
            publication = await self.start_publication(session_id)
            run.publication_key = publication.key
            transition(run, RunState.PUBLICATION_STARTED)
            suffix = f" (status: {publication.phase})" if publication.phase else ""
            progress(f"  -> Publication started with Key: {publication.key}{suffix}")

            stage = Stage.POLL_PUBLISHED
            progress(f"Step 6/{STAGE_COUNT}: Polling for publication completion status '{PUBLISHED_PHASE}'...")
            await self.wait_until_published(session_id, observe, cancel_token)
            transition(run, RunState.PUBLISHED)
            progress("  -> Publication succeeded.")

            stage = Stage.RESOLVE_LOCATION
            progress(f"Step 7/{STAGE_COUNT}: Retrieving final application URL...")
            cancel_token.raise_if_cancelled()
            url = await self.resolve_location(session_id)
            run.url = url
            transition(run, RunState.LOCATION_RESOLVED)
            run.finished_at = datetime.now(timezone.utc)
            logger.info(f"Run {run.run_id} finished: {url}")
            emit(WorkflowEvent(
                type=EventType.COMPLETED,
                message=f"Application is live! URL: {url}",
                run_id=run.run_id,
                stage=stage,
                url=url,
            ))
        except OSGenError as exc:
            self._fail(run, stage, exc, emit)
        except asyncio.CancelledError:
            self._fail(run, stage, RunCancelled("Run cancelled."), emit)
            raise
        except Exception as exc:
            logger.error(f"Run {run.run_id} failed unexpectedly during {stage.value}: {exc}", exc_info=True)
            self._fail(run, stage, InternalError(f"Unexpected error: {exc}"), emit)
        finally:
            self._evict_finished()

    def _fail(
        self,
        run: WorkflowRun,
        stage: Stage,
        exc: OSGenError,
        emit: Callable[[WorkflowEvent], None],
    ) -> None:
        exc.stage = exc.stage or stage.value
        if run.state is not RunState.ERROR:
            transition(run, RunState.ERROR)
        run.error = exc.message
        run.error_code = exc.code
        run.failed_stage = stage
        run.finished_at = datetime.now(timezone.utc)
        if isinstance(exc, RunCancelled):
            logger.info(f"Run {run.run_id} cancelled during {stage.value}")
        else:
            logger.warning(f"Run {run.run_id} failed during {stage.value}: [{exc.code}] {exc.message}")
        emit(WorkflowEvent(
            type=EventType.FAILED,
            message=f"Error during {stage.value}: {exc.message}",
            run_id=run.run_id,
            stage=stage,
            error_code=exc.code,
            error=exc,
        ))

    # ------------------------------------------------------------------
    # Run bookkeeping
    # ------------------------------------------------------------------

    def _register_run(self, prompt: str) -> WorkflowRun:
        run = WorkflowRun(run_id=f"run-{uuid.uuid4().hex[:12]}", prompt=prompt)
        self._runs[run.run_id] = run
        return run

    def _evict_finished(self) -> None:
        finished = [rid for rid, r in self._runs.items() if r.state in TERMINAL_RUN_STATES]
        for rid in finished[:max(0, len(finished) - _MAX_FINISHED_RUNS)]:
            del self._runs[rid]

    def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    def list_runs(self, limit: int = 50) -> List[WorkflowRun]:
        runs = sorted(self._runs.values(), key=lambda r: r.started_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs[:limit]]
