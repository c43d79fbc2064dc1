import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Path, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

import vsphere_check
from vsphere_checks import CheckResult

# --- Logging Configuration ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# --- Application State ---
app_state = {
    "last_report": None,
    "last_run_timestamp_utc": None,
    "last_run_status": "Not yet run",
    "last_run_message": "",
    "is_running": False,
}


def reset_state():
    app_state.update(
        last_report=None,
        last_run_timestamp_utc=None,
        last_run_status="Not yet run",
        last_run_message="",
        is_running=False,
    )


# Strong references to triggered runs until they finish
background_tasks = set()

# --- Check Run Logic ---
async def run_and_cache_checks():
    if app_state["is_running"]:
        logger.warning("Check run attempt while another is in progress.")
        return False, "A check run is already in progress."
    app_state["is_running"] = True
    logger.info("Starting vSphere configuration checks...")
    start_time = datetime.now(timezone.utc)
    try:
        report = await asyncio.to_thread(vsphere_check.run_once)
        end_time = datetime.now(timezone.utc)
        duration = end_time - start_time
        app_state["last_report"] = report
        app_state["last_run_timestamp_utc"] = end_time
        failed = [r.name for r in report.results if not r.passed]
        if failed:
            app_state["last_run_status"] = "Failed"
            app_state["last_run_message"] = f"Checks failed: {', '.join(failed)} (took {duration.total_seconds():.2f}s)"
            logger.error(app_state["last_run_message"])
        else:
            app_state["last_run_status"] = "Success"
            app_state["last_run_message"] = f"All checks passed at {end_time.isoformat()} (took {duration.total_seconds():.2f}s)"
            logger.info(app_state["last_run_message"])
        return report.passed, app_state["last_run_message"]
    except Exception as e:
        duration = datetime.now(timezone.utc) - start_time
        error_message = f"Exception during check run: {e} (took {duration.total_seconds():.2f}s)"
        app_state["last_run_status"] = "Failed (Exception)"
        app_state["last_run_message"] = error_message
        logger.error(error_message, exc_info=True)
        return False, error_message
    finally:
        app_state["is_running"] = False


# --- Application Lifespan ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("API Server starting up, running first check pass...")
    await run_and_cache_checks()
    yield
    logger.info("API Server shutting down...")


# --- FastAPI Application Setup ---
app = FastAPI(
    title="vSphere Config Check API",
    description="Results of the vSphere cloud-provider configuration checks of a cluster.",
    version="0.1.0",
    lifespan=lifespan,
)

# --- CORS Middleware ---
origins = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Pydantic Models ---
class RunStatus(BaseModel):
    last_run_timestamp_utc: Optional[str] = None
    last_run_status: str
    last_run_message: str
    is_currently_running: bool


class CheckReportResponse(BaseModel):
    started_at: datetime
    duration_seconds: float
    passed: bool
    results: List[CheckResult]


def get_last_report():
    report = app_state["last_report"]
    if report is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="No check run has completed yet.")
    return report


# --- API Endpoints ---
@app.get("/api/v1/status", response_model=RunStatus, summary="Status of the check runs", tags=["Status"])
async def get_run_status():
    timestamp_iso = (
        app_state["last_run_timestamp_utc"].isoformat()
        if app_state["last_run_timestamp_utc"]
        else None
    )
    return RunStatus(
        last_run_timestamp_utc=timestamp_iso,
        last_run_status=app_state["last_run_status"],
        last_run_message=app_state["last_run_message"],
        is_currently_running=app_state["is_running"],
    )


@app.get("/api/v1/checks", response_model=CheckReportResponse, summary="Results of the last check run", tags=["Checks"])
async def get_checks():
    return get_last_report().model_dump()


@app.get("/api/v1/checks/{name}", response_model=CheckResult, summary="Result of one check", tags=["Checks"])
async def get_check(name: str = Path(..., description="Check name, e.g. StorageClasses")):
    for result in get_last_report().results:
        if result.name.lower() == name.lower():
            return result
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown check {name!r}.")


@app.post(
    "/api/v1/checks/run",
    summary="Start a new check run",
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Admin"],
)
async def run_checks_endpoint():
    if app_state["is_running"]:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A check run is already in progress.",
        )
    task = asyncio.create_task(run_and_cache_checks())
    background_tasks.add(task)
    task.add_done_callback(background_tasks.discard)
    return {"message": "Check run initiated. Check /api/v1/status for updates."}

# --- Uvicorn Command (for reference) ---
# uvicorn api_server:app --host 0.0.0.0 --port 8000
