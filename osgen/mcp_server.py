"""
osgen MCP Server: exposes OutSystems app generation via Model Context Protocol.

Run with: osgen-mcp (stdio transport)
"""

import json
import sys
from typing import Optional

from mcp.server.fastmcp import Context, FastMCP

from osgen.errors import ConfigurationError, OSGenError, StageFailure
from osgen.schemas import BUILT_PHASE, READY_PHASE, PUBLISHED_PHASE, EventType

server = FastMCP(
    name="osgen",
    instructions=(
        "osgen: create and deploy OutSystems applications from a text prompt. "
        "Use osgen_create_and_deploy_app for the whole flow, or the step tools "
        "(start generation, check status, trigger generation, publish, get URL) "
        "to drive it one stage at a time."
    ),
)

# ---------------------------------------------------------------------------
# Lazy-initialized orchestrator (avoid import-time configuration access)
# ---------------------------------------------------------------------------

_orch = None


def _orchestrator():
    global _orch
    if _orch is None:
        from osgen.config import Settings
        from osgen.orchestrator import WorkflowOrchestrator
        _orch = WorkflowOrchestrator.from_settings(Settings.from_env())
    return _orch


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_SUGGESTIONS = {
    "CONFIGURATION_ERROR": "Set OS_HOSTNAME and either OSGEN_TOKEN or OSGEN_CREDENTIAL_PROVIDER.",
    "AUTH_FAILURE": "Check the OutSystems credentials; the next call retries authentication.",
    "UNKNOWN_SESSION": "Use osgen_start_generation to obtain a session ID.",
    "STAGE_ORDER_FAILURE": "Follow the stage order: generation, publication, then URL lookup.",
    "STAGE_FAILURE": "The remote workflow failed; start a new generation with a revised prompt.",
}


def _success(**kwargs) -> str:
    return json.dumps({"success": True, **kwargs}, default=str)


def _error(code: str, message: str, suggestion: str = "", **extra) -> str:
    err = {"code": code, "message": message}
    if suggestion:
        err["suggestion"] = suggestion
    err.update(extra)
    return json.dumps({"success": False, "error": err}, default=str)


def _fail(exc: OSGenError) -> str:
    extra = {}
    if exc.stage:
        extra["stage"] = exc.stage
    if isinstance(exc, StageFailure):
        extra["phase"] = exc.phase
    return _error(exc.code, exc.message, _SUGGESTIONS.get(exc.code, ""), **extra)


# ===================================================================
# Full workflow
# ===================================================================

@server.tool(
    name="osgen_create_and_deploy_app",
    description=(
        "Create and deploy a complete OutSystems application from a text prompt. "
        "Runs every stage (generation, build, publication) and reports progress as it goes. "
        "Returns the live application URL."
    ),
)
async def osgen_create_and_deploy_app(prompt: str, ctx: Context = None) -> str:
    """Run the whole workflow, relaying each progress line as a log notification."""
    try:
        orch = _orchestrator()
    except ConfigurationError as exc:
        return _fail(exc)

    progress = []
    stream = orch.run(prompt)
    try:
        async for event in stream:
            progress.append(event.message)
            if ctx is not None:
                await ctx.info(event.message)
            if event.type is EventType.COMPLETED:
                return _success(url=event.url, run_id=event.run_id, progress=progress)
            if event.type is EventType.FAILED:
                return _error(
                    event.error_code or "RUN_ERROR",
                    event.message,
                    _SUGGESTIONS.get(event.error_code or "", ""),
                    stage=event.stage.value if event.stage else None,
                    run_id=event.run_id,
                    progress=progress,
                )
    finally:
        await stream.aclose()
    return _error("RUN_ERROR", "Workflow ended without a result.", progress=progress)


# ===================================================================
# Step-wise tools
# ===================================================================

@server.tool(
    name="osgen_start_generation",
    description=(
        "Step 1: Start the OutSystems application generation process from a text prompt. "
        "Returns a session ID to use with the other step tools."
    ),
)
async def osgen_start_generation(prompt: str) -> str:
    """Create the remote generation job."""
    try:
        entry, job = await _orchestrator().create_job(prompt)
        return _success(session_id=entry.session_id, job_id=entry.job_id, status=job.phase)
    except OSGenError as exc:
        return _fail(exc)
    except Exception as exc:
        return _error("START_GENERATION_ERROR", str(exc))


@server.tool(
    name="osgen_get_job_status",
    description=(
        f"Step 2: Check the status of a generation job. Poll until the status is '{READY_PHASE}' "
        f"before triggering generation; once it is '{BUILT_PHASE}' the application key is available."
    ),
)
async def osgen_get_job_status(session_id: str) -> str:
    """Fetch the job status once."""
    try:
        status = await _orchestrator().job_status(session_id)
        return _success(
            session_id=session_id,
            status=status.phase,
            application_key=status.application_key,
        )
    except OSGenError as exc:
        return _fail(exc)
    except Exception as exc:
        return _error("GET_JOB_STATUS_ERROR", str(exc))


@server.tool(
    name="osgen_trigger_generation",
    description=(
        f"Step 3: Trigger code generation for a job whose status is '{READY_PHASE}'. "
        f"Afterwards poll osgen_get_job_status until the status is '{BUILT_PHASE}'."
    ),
)
async def osgen_trigger_generation(session_id: str) -> str:
    """Trigger generation for the session's job."""
    try:
        await _orchestrator().trigger_build(session_id)
        return _success(session_id=session_id, message="Generation triggered.")
    except OSGenError as exc:
        return _fail(exc)
    except Exception as exc:
        return _error("TRIGGER_GENERATION_ERROR", str(exc))


@server.tool(
    name="osgen_wait_for_generation",
    description=(
        f"Wait until the session's job reaches '{BUILT_PHASE}' and record its application key. "
        "Use after osgen_trigger_generation."
    ),
)
async def osgen_wait_for_generation(session_id: str, ctx: Context = None) -> str:
    """Poll the job until generation is done."""
    phases = []

    def _observe(status):
        phases.append(status.phase)

    try:
        application_key = await _orchestrator().wait_until_built(session_id, _observe)
        if ctx is not None:
            await ctx.info(f"Observed phases: {', '.join(str(p) for p in phases)}")
        return _success(session_id=session_id, application_key=application_key, phases=phases)
    except OSGenError as exc:
        return _fail(exc)
    except Exception as exc:
        return _error("WAIT_FOR_GENERATION_ERROR", str(exc))


@server.tool(
    name="osgen_start_publication",
    description=(
        "Step 4: Begin publishing the generated application. "
        "The session must already have an application key."
    ),
)
async def osgen_start_publication(session_id: str) -> str:
    """Start publishing the session's application."""
    try:
        publication = await _orchestrator().start_publication(session_id)
        return _success(
            session_id=session_id,
            publication_key=publication.key,
            status=publication.phase,
        )
    except OSGenError as exc:
        return _fail(exc)
    except Exception as exc:
        return _error("START_PUBLICATION_ERROR", str(exc))


@server.tool(
    name="osgen_get_publication_status",
    description=f"Step 5: Check the publication status. Poll until the status is '{PUBLISHED_PHASE}'.",
)
async def osgen_get_publication_status(session_id: str) -> str:
    """Fetch the publication status once."""
    try:
        status = await _orchestrator().publication_status(session_id)
        return _success(session_id=session_id, publication_key=status.key, status=status.phase)
    except OSGenError as exc:
        return _fail(exc)
    except Exception as exc:
        return _error("GET_PUBLICATION_STATUS_ERROR", str(exc))


@server.tool(
    name="osgen_get_application_url",
    description="Step 6: Retrieve the public URL of a published application.",
)
async def osgen_get_application_url(session_id: str) -> str:
    """Resolve the final application address."""
    try:
        url = await _orchestrator().resolve_location(session_id)
        return _success(session_id=session_id, url=url)
    except OSGenError as exc:
        return _fail(exc)
    except Exception as exc:
        return _error("GET_APPLICATION_URL_ERROR", str(exc))


# ===================================================================
# Sessions and runs
# ===================================================================

@server.tool(
    name="osgen_end_session",
    description="Forget a session ID once its workflow is finished.",
)
def osgen_end_session(session_id: str) -> str:
    """Discard the session's registry entry."""
    try:
        if not _orchestrator().registry.discard(session_id):
            return _error(
                "UNKNOWN_SESSION",
                f"Invalid or expired session ID: {session_id}",
                _SUGGESTIONS["UNKNOWN_SESSION"],
            )
        return _success(session_id=session_id, message=f"Session '{session_id}' ended.")
    except OSGenError as exc:
        return _fail(exc)
    except Exception as exc:
        return _error("END_SESSION_ERROR", str(exc))


@server.tool(
    name="osgen_list_runs",
    description="List recent create-and-deploy runs with their state, URL or error.",
)
def osgen_list_runs(limit: int = 20, state: Optional[str] = None) -> str:
    """List runs held in memory."""
    try:
        runs = _orchestrator().list_runs(limit=max(1, limit))
        if state:
            runs = [r for r in runs if r.state.value == state]
        return _success(
            runs=[json.loads(r.model_dump_json()) for r in runs],
            count=len(runs),
        )
    except OSGenError as exc:
        return _fail(exc)
    except Exception as exc:
        return _error("LIST_RUNS_ERROR", str(exc))


# ===================================================================
# Entry point
# ===================================================================

def main():
    """Run the osgen MCP server (stdio transport)."""
    debug = "--debug" in sys.argv
    if debug:
        server.settings.log_level = "DEBUG"
    server.run(transport="stdio")


if __name__ == "__main__":
    main()
