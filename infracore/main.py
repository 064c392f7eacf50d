"""
infracore - FastAPI Application

HTTP entry point for the infrastructure engine.
Provides endpoints for validating, planning and applying configurations and
for inspecting and manipulating state and workspaces.
"""

from __future__ import annotations
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.responses import JSONResponse

from infracore.errors import (
    AddressConflictError,
    ApplyError,
    ConfigurationError,
    DriftDetectedError,
    GraphError,
    InfraCoreError,
    LockedError,
    NotFoundError,
    PlanError,
    ProviderError,
    StateConflictError,
    WorkspaceError,
)
from infracore.models import (
    ApplyRunRequest,
    ApplySummary,
    ConfigRequest,
    DriftEntry,
    Plan,
    PlanRequest,
    ResourceRecord,
    StateMoveRequest,
    ValidateResponse,
    WorkspaceCreateRequest,
    WorkspaceInfo,
    WorkspaceSelectRequest,
)
from infracore.service import Engine, get_engine
from infracore.settings import get_settings

# Configure logging
logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION SETUP
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()
    logger.info("infracore starting...")
    logger.info(f"State backend: {settings.backend} ({settings.state_path})")
    yield
    logger.info("infracore shutting down...")


app = FastAPI(
    title="infracore",
    description="""
    ## Declarative Infrastructure Engine

    This API provides endpoints for:
    - **Validating and planning** YAML configurations against recorded state
    - **Applying and destroying** planned changes through providers
    - **Inspecting and editing state** (list, show, rm, mv, taint)
    - **Managing workspaces**

    ### Execution Flow
    1. Submit YAML configuration via POST /plan to review changes
    2. Submit the same configuration via POST /apply
    3. Inspect results via GET /state and GET /outputs
    """,
    version="1.0.0",
    lifespan=lifespan,
)


# Status code per error class, most specific first
ERROR_STATUS = [
    (ApplyError, status.HTTP_502_BAD_GATEWAY),
    (LockedError, status.HTTP_423_LOCKED),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AddressConflictError, status.HTTP_409_CONFLICT),
    (StateConflictError, status.HTTP_409_CONFLICT),
    (PlanError, status.HTTP_409_CONFLICT),
    (WorkspaceError, status.HTTP_400_BAD_REQUEST),
    (ConfigurationError, status.HTTP_400_BAD_REQUEST),
    (GraphError, status.HTTP_400_BAD_REQUEST),
    (ProviderError, status.HTTP_400_BAD_REQUEST),
]


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

async def run_blocking(func, *args, **kwargs) -> Any:
    """
    Run a blocking engine call in the thread pool.

    Lock acquisition and provider calls block; they must not stall the
    event loop.
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


# =============================================================================
# API ENDPOINTS
# =============================================================================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "infracore",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "validate": "POST /validate",
            "plan": "POST /plan",
            "apply": "POST /apply",
            "destroy": "POST /destroy",
            "state": "GET /state",
            "workspaces": "GET /workspaces",
        },
    }


@app.get("/health", tags=["Health"])
async def health_check(engine: Engine = Depends(get_engine)):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "workspace": engine.workspace,
    }


@app.post("/validate", response_model=ValidateResponse, tags=["Configuration"])
async def validate(request: ConfigRequest, engine: Engine = Depends(get_engine)) -> ValidateResponse:
    """
    Validate a configuration without touching state.

    Problems are reported in the response body, not as an error status.
    """
    return await run_blocking(engine.validate, request.config_yaml, variables=request.variables)


@app.post("/plan", response_model=Plan, tags=["Plan"])
async def plan(request: PlanRequest, engine: Engine = Depends(get_engine)) -> Plan:
    """
    Compute the changes needed to reach the configuration.

    **Request Body:**
    - `config_yaml`: YAML configuration string
    - `variables`: Values for root variables
    - `destroy`: Plan deletion of every recorded resource
    - `refresh`: Check for drift first (server default when omitted)
    """
    config = None
    if not request.destroy or request.config_yaml.strip():
        config = await run_blocking(engine.load, request.config_yaml, variables=request.variables)
    return await run_blocking(
        engine.plan,
        config,
        destroy=request.destroy,
        refresh=request.refresh,
    )


@app.post("/apply", response_model=ApplySummary, tags=["Apply"])
async def apply(request: ApplyRunRequest, engine: Engine = Depends(get_engine)) -> ApplySummary:
    """
    Plan and apply a configuration under the workspace lock.

    Returns the apply summary; failed operations yield 502 with the summary
    attached.
    """
    if request.destroy:
        return await run_blocking(engine.destroy, parallelism=request.parallelism, refresh=request.refresh)
    config = await run_blocking(engine.load, request.config_yaml, variables=request.variables)
    return await run_blocking(
        engine.apply,
        config,
        parallelism=request.parallelism,
        refresh=request.refresh,
    )


@app.post("/destroy", response_model=ApplySummary, tags=["Apply"])
async def destroy(
    parallelism: Optional[int] = None,
    refresh: Optional[bool] = None,
    engine: Engine = Depends(get_engine),
) -> ApplySummary:
    """Delete every recorded resource of the current workspace."""
    return await run_blocking(engine.destroy, parallelism=parallelism, refresh=refresh)


@app.post("/refresh", response_model=List[DriftEntry], tags=["Apply"])
async def refresh(engine: Engine = Depends(get_engine)) -> List[DriftEntry]:
    """Accept real-world values into state; returns the reconciled drift."""
    return await run_blocking(engine.refresh)


@app.get("/state", tags=["State"])
async def list_state(prefix: Optional[str] = None, engine: Engine = Depends(get_engine)):
    """List recorded addresses, optionally under a module or resource prefix."""
    addresses = engine.state_list(prefix)
    return {"workspace": engine.workspace, "resources": addresses, "total": len(addresses)}


@app.post("/state/move", tags=["State"])
async def move_state(request: StateMoveRequest, engine: Engine = Depends(get_engine)):
    """Rename a resource or a whole module in state."""
    moved = await run_blocking(engine.state_mv, request.source, request.destination)
    return {"moved": moved}


@app.post("/state/{address:path}/taint", tags=["State"])
async def taint(address: str, engine: Engine = Depends(get_engine)):
    """Mark a resource for destroy-and-recreate on the next apply."""
    await run_blocking(engine.taint, address)
    return {"message": f"Resource {address} has been marked as tainted"}


@app.delete("/state/{address:path}/taint", tags=["State"])
async def untaint(address: str, engine: Engine = Depends(get_engine)):
    """Clear the taint marker of a resource."""
    await run_blocking(engine.untaint, address)
    return {"message": f"Resource {address} has been successfully untainted"}


@app.get("/state/{address:path}", response_model=ResourceRecord, tags=["State"])
async def show_state(address: str, engine: Engine = Depends(get_engine)) -> ResourceRecord:
    """Show one recorded resource."""
    return engine.state_show(address)


@app.delete("/state/{address:path}", tags=["State"])
async def remove_state(address: str, engine: Engine = Depends(get_engine)):
    """
    Forget a resource without destroying it.

    **Warning:** The real resource keeps existing but is no longer managed.
    """
    record = await run_blocking(engine.state_rm, address)
    return {"message": f"Removed {record.address}"}


@app.get("/outputs", tags=["State"])
async def list_outputs(engine: Engine = Depends(get_engine)) -> Dict[str, Any]:
    """Recorded root outputs."""
    return engine.output()


@app.get("/outputs/{name}", tags=["State"])
async def get_output(name: str, engine: Engine = Depends(get_engine)):
    """One recorded root output."""
    try:
        value = engine.output(name)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Output not found: {name}",
        )
    return {"name": name, "value": value}


@app.get("/workspaces", response_model=List[WorkspaceInfo], tags=["Workspaces"])
async def list_workspaces(engine: Engine = Depends(get_engine)) -> List[WorkspaceInfo]:
    """List workspaces; the selected one is flagged as current."""
    return engine.workspace_list()


@app.post(
    "/workspaces",
    response_model=WorkspaceInfo,
    status_code=status.HTTP_201_CREATED,
    tags=["Workspaces"],
)
async def create_workspace(
    request: WorkspaceCreateRequest,
    engine: Engine = Depends(get_engine),
) -> WorkspaceInfo:
    """Create a workspace and select it."""
    return engine.workspace_new(request.name)


@app.put("/workspaces/current", response_model=WorkspaceInfo, tags=["Workspaces"])
async def select_workspace(
    request: WorkspaceSelectRequest,
    engine: Engine = Depends(get_engine),
) -> WorkspaceInfo:
    """Select the workspace later commands operate on."""
    return engine.workspace_select(request.name)


@app.delete("/workspaces/{name}", tags=["Workspaces"])
async def delete_workspace(name: str, force: bool = False, engine: Engine = Depends(get_engine)):
    """
    Delete a workspace and its state history.

    **Warning:** This action cannot be undone.
    """
    await run_blocking(engine.workspace_delete, name, force=force)
    return {"message": f"Workspace {name} deleted successfully"}


@app.delete("/locks/{lock_id}", tags=["State"])
async def force_unlock(lock_id: str, engine: Engine = Depends(get_engine)):
    """Release a state lock left behind by a crashed holder."""
    engine.force_unlock(lock_id)
    return {"message": f"Lock {lock_id} released"}


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(InfraCoreError)
async def engine_exception_handler(request, exc: InfraCoreError):
    """Map engine errors to HTTP statuses."""
    status_code = next(
        (code for error_class, code in ERROR_STATUS if isinstance(exc, error_class)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    content = exc.to_dict()
    if isinstance(exc, ApplyError):
        content["summary"] = exc.summary.model_dump(mode="json")
    elif isinstance(exc, DriftDetectedError):
        content["drifts"] = [d.model_dump(mode="json") for d in exc.drifts]
    elif isinstance(exc, LockedError):
        content["holder"] = exc.holder

    logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request, exc: Exception):
    """Global exception handler."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": str(exc),
        },
    )


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "infracore.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
