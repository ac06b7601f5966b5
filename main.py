from contextlib import asynccontextmanager

from fastapi import FastAPI

from osgen.api import router as osgen_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    orch = getattr(app.state, "orchestrator", None)
    if orch is not None:
        await orch.aclose()


app = FastAPI(
    title="osgen API",
    description="Create and deploy OutSystems applications from a prompt, with streamed progress.",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(osgen_router, tags=["osgen"])


@app.get("/", summary="Root endpoint")
def read_root():
    """
    Root endpoint of the osgen API.
    """
    return {"message": "Welcome to osgen API"}
