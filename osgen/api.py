import json
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import AliasChoices, BaseModel, Field, ValidationError

from osgen.config import Settings
from osgen.errors import ConfigurationError
from osgen.orchestrator import WorkflowOrchestrator
from osgen.schemas import EventType, WorkflowRun

router = APIRouter()


class CreateAppInput(BaseModel):
    """Input of the createOutSystemsApp tool."""
    prompt: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("prompt", "description"),
        description="A detailed description of the application to generate.",
    )


class ToolDefinition(BaseModel):
    name: str
    description: str
    input_schema: Dict[str, Any]


class ExecuteToolRequest(BaseModel):
    tool_name: str
    input: Dict[str, Any] = Field(default_factory=dict)


TOOLS: Dict[str, ToolDefinition] = {
    "createOutSystemsApp": ToolDefinition(
        name="createOutSystemsApp",
        description="Creates and deploys a complete OutSystems application from a text prompt.",
        input_schema=CreateAppInput.model_json_schema(),
    ),
}


def get_orchestrator(request: Request) -> WorkflowOrchestrator:
    """FastAPI dependency: one orchestrator per application, created on first use."""
    orch = getattr(request.app.state, "orchestrator", None)
    if orch is None:
        try:
            orch = WorkflowOrchestrator.from_settings(Settings.from_env())
        except ConfigurationError as e:
            raise HTTPException(status_code=503, detail=e.message)
        request.app.state.orchestrator = orch
    return orch


def _sse(event_id: int, event: str, data: dict) -> str:
    return f"id: {event_id}\nevent: {event}\ndata: {json.dumps(data)}\n\n"


async def _event_stream(orch: WorkflowOrchestrator, prompt: str) -> AsyncIterator[str]:
    """Relay the run as SSE: ``update`` per progress line, then ``done`` or ``error``."""
    stream = orch.run(prompt)
    event_id = 0
    try:
        async for event in stream:
            if event.type is EventType.PROGRESS:
                yield _sse(event_id, "update", {"content": event.message})
            elif event.type is EventType.COMPLETED:
                yield _sse(event_id, "done", {
                    "content": event.message,
                    "url": event.url,
                    "run_id": event.run_id,
                })
            else:
                yield _sse(event_id, "error", {
                    "content": event.message,
                    "code": event.error_code,
                    "stage": event.stage.value if event.stage else None,
                    "run_id": event.run_id,
                })
            event_id += 1
    finally:
        # Disconnects close this generator; closing the run stream cancels the run.
        await stream.aclose()


@router.get("/tools", response_model=List[ToolDefinition], summary="List tools")
async def list_tools():
    """
    List the tools this server can execute, with their JSON input schemas.
    """
    return list(TOOLS.values())


@router.post("/execute-tool", summary="Execute a tool and stream progress")
async def execute_tool(body: ExecuteToolRequest, orch: WorkflowOrchestrator = Depends(get_orchestrator)):
    """
    Execute a tool, streaming Server-Sent Events.
    - **update**: one per progress line, in order.
    - **done**: the application is live; carries the URL.
    - **error**: the run failed; carries the error code and failing stage.
    """
    if body.tool_name not in TOOLS:
        raise HTTPException(status_code=404, detail=f"Tool '{body.tool_name}' not found.")
    try:
        args = CreateAppInput.model_validate(body.input)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid input for '{body.tool_name}': {e.errors()[0]['msg']}")
    if not args.prompt.strip():
        raise HTTPException(status_code=400, detail="Prompt must be a non-empty string.")

    return StreamingResponse(
        _event_stream(orch, args.prompt),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@router.get("/runs", response_model=List[WorkflowRun], summary="List recent runs")
async def list_runs(
    limit: int = Query(20, ge=1, le=100, description="Maximum number of runs to return."),
    orch: WorkflowOrchestrator = Depends(get_orchestrator),
):
    """
    List recent create-and-deploy runs, newest first.
    """
    return orch.list_runs(limit=limit)


@router.get("/runs/{run_id}", response_model=WorkflowRun, summary="Get a run")
async def get_run(run_id: str, orch: WorkflowOrchestrator = Depends(get_orchestrator)):
    """
    Get one run by ID.
    """
    run: Optional[WorkflowRun] = orch.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found.")
    return run
