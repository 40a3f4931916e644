"""
FastAPI application factory and HTTP schemas for the relay control API.

The module exposes a `create_app` function that builds the REST API used to
inspect the job queue, drive the dispatcher, edit the operator JSON
documents and read the service log files. Authentication is enforced through
a configurable API token carried in the ``X-API-Token`` header.
"""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any, List, Callable, AsyncContextManager

import aiohttp
from fastapi import FastAPI, HTTPException, APIRouter, Depends, Query, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .config_store import (
    DEFAULT_SETTINGS_FILE,
    FOLDER_CONFIG_FILE,
    OPERATIONS_FILE,
    SECTION_OPERATIONS_FILE,
    STOCK_MAPPING_FILE,
    ConfigError,
    ConfigStore,
)
from .core import RelayCore
from .graph import GraphError
from .models import Job, JobStatus

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class RunNowResponse(CommandStatus):
    skipped: Optional[bool] = None


class ActiveResponse(CommandStatus):
    active: bool


class JobsResponse(CommandStatus):
    jobs: List[Job]


class JobResponse(CommandStatus):
    job: Job


class SummaryResponse(CommandStatus):
    """Job counts per status plus dispatcher state."""
    counts: Dict[str, int]
    active: bool
    tick_running: bool


class JobIdsPayload(BaseModel):
    ids: Optional[List[str]] = None


class DeleteJobsPayload(BaseModel):
    ids: List[str] = Field(default_factory=list)


class RetryErrorsResponse(CommandStatus):
    reset: int


class DeleteJobsResponse(CommandStatus):
    removed: int
    not_found: Optional[List[str]] = None


class FolderConfig(BaseModel):
    selectedFolderId: str = Field(min_length=1)
    selectedFolderName: Optional[str] = None


_CONFIG_DOCUMENTS = {
    "stock-mapping": STOCK_MAPPING_FILE,
    "operations": OPERATIONS_FILE,
    "section-operations": SECTION_OPERATIONS_FILE,
    "default-settings": DEFAULT_SETTINGS_FILE,
}


def create_app(
    svc: RelayCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
    config_store: ConfigStore | None = None,
    mailbox_client: Any = None,
    mailbox: str | None = None,
    log_dir: str | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`quote_relay.core.RelayCore` that implements the
        business logic for each command.
    api_token:
        Optional secret used to protect every endpoint. When provided, the
        ``X-API-Token`` header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    config_store:
        Optional :class:`quote_relay.config_store.ConfigStore`; the
        ``/config`` editors are only mounted when it is given.
    mailbox_client, mailbox:
        Optional mail provider client (anything with ``list_folders``) and the
        mailbox it reads, used by ``/config/folders``.
    log_dir:
        Directory holding the daily ``app-*.log`` files served read-only under
        ``/logs``.
    """
    service = svc
    api = FastAPI(title="Quote Relay", lifespan=lifespan)
    api.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.get("/status", response_model=SummaryResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_():
        """Return job counts and dispatcher state."""
        result = await service.handle_command("summary", {})
        return SummaryResponse.model_validate(result)

    @api.get("/jobs", response_model=JobsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_jobs(status: Optional[JobStatus] = None, limit: Optional[int] = None):
        """List jobs, oldest first, optionally filtered by status."""
        result = await service.handle_command(
            "listJobs", {"status": status.value if status else None, "limit": limit}
        )
        return JobsResponse.model_validate(result)

    @api.get("/jobs/summary", response_model=SummaryResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def jobs_summary():
        result = await service.handle_command("summary", {})
        return SummaryResponse.model_validate(result)

    @api.get("/jobs/{job_id}", response_model=JobResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_job(job_id: str):
        """Return a single job including its latest diagnostic."""
        result = await service.handle_command("getJob", {"id": job_id})
        if not result.get("ok"):
            raise HTTPException(status.HTTP_404_NOT_FOUND, result.get("error") or "job not found")
        return JobResponse.model_validate(result)

    @router.post("/run-now", response_model=RunNowResponse, response_model_exclude_none=True)
    async def run_now():
        """Wake the dispatch loop for an immediate tick."""
        result = await service.handle_command("run now", {})
        return RunNowResponse.model_validate(result)

    @router.post("/suspend", response_model=ActiveResponse, response_model_exclude_none=True)
    async def suspend():
        """Suspend ingestion and dispatch; ticks become no-ops."""
        result = await service.handle_command("suspend", {})
        return ActiveResponse.model_validate(result)

    @router.post("/activate", response_model=ActiveResponse, response_model_exclude_none=True)
    async def activate():
        result = await service.handle_command("activate", {})
        return ActiveResponse.model_validate(result)

    @router.post("/retry-errors", response_model=RetryErrorsResponse, response_model_exclude_none=True)
    async def retry_errors(payload: JobIdsPayload | None = None):
        """Return ``error`` jobs (all, or the given ids) to ``pending``."""
        ids = payload.ids if payload is not None else None
        result = await service.handle_command("retryErrors", {"ids": ids})
        return RetryErrorsResponse.model_validate(result)

    @router.post("/delete-jobs", response_model=DeleteJobsResponse, response_model_exclude_none=True)
    async def delete_jobs(payload: DeleteJobsPayload):
        result = await service.handle_command("deleteJobs", payload.model_dump())
        return DeleteJobsResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the dispatcher."""
        return Response(content=service.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    if config_store is not None:
        api.include_router(_config_router(config_store, mailbox_client, mailbox))
    api.include_router(_logs_router(log_dir))
    return api


def _config_router(store: ConfigStore, mailbox_client: Any = None, mailbox: str | None = None) -> APIRouter:
    """GET/PUT editors for the operator JSON documents."""
    router = APIRouter(prefix="/config", tags=["config"], dependencies=[auth_dependency])

    def _register(slug: str, filename: str) -> None:
        async def read_document():
            data = store.read(filename)
            if data is None:
                raise HTTPException(status.HTTP_404_NOT_FOUND, f"{filename} not found")
            return data

        async def write_document(request: Request):
            try:
                data = await request.json()
            except ValueError:
                raise HTTPException(status.HTTP_400_BAD_REQUEST, "Body must be valid JSON")
            try:
                store.write(filename, data)
            except ConfigError as exc:
                raise HTTPException(status.HTTP_400_BAD_REQUEST, str(exc))
            return {"ok": True}

        router.add_api_route(f"/{slug}", read_document, methods=["GET"], name=f"get_{slug}")
        router.add_api_route(f"/{slug}", write_document, methods=["PUT"], name=f"put_{slug}")

    for slug, filename in _CONFIG_DOCUMENTS.items():
        _register(slug, filename)

    @router.get("/folder")
    async def get_folder():
        return store.folder_config()

    @router.put("/folder")
    async def put_folder(payload: FolderConfig):
        """Select the mailbox folder polled from the next tick on."""
        config = {
            "selectedFolderId": payload.selectedFolderId,
            "selectedFolderName": payload.selectedFolderName or payload.selectedFolderId,
        }
        store.write(FOLDER_CONFIG_FILE, config)
        return {"ok": True, "config": config}

    @router.get("/folders")
    async def list_folders():
        """List the folders of the configured mailbox for the folder picker."""
        if mailbox_client is None or not mailbox:
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Mailbox client not configured")
        try:
            folders = await mailbox_client.list_folders(mailbox)
        except (GraphError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise HTTPException(status.HTTP_502_BAD_GATEWAY, f"Could not list folders: {exc}")
        return {"folders": folders}

    return router


def _log_lines(path: Path) -> List[str]:
    with path.open("r", encoding="utf-8", errors="replace") as fh:
        return [line.rstrip("\n") for line in fh if line.strip()]


def _logs_router(log_dir: str | None) -> APIRouter:
    """Read-only view over the daily log files."""
    router = APIRouter(prefix="/logs", tags=["logs"], dependencies=[auth_dependency])
    root = Path(log_dir) if log_dir else None

    def _log_files() -> List[Path]:
        if root is None or not root.is_dir():
            return []
        files = [p for p in root.iterdir() if p.is_file() and p.name.endswith(".log")]
        return sorted(files, key=lambda p: p.stat().st_mtime, reverse=True)

    @router.get("/files")
    async def log_files():
        """List log files, newest first."""
        files = []
        for path in _log_files():
            stat = path.stat()
            files.append({
                "name": path.name,
                "size": stat.st_size,
                "modified": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
            })
        return {"files": files}

    @router.get("/latest")
    async def latest_log(lines: int = Query(100, ge=1)):
        """Return the last ``lines`` non-empty lines of the newest log file."""
        files = _log_files()
        if not files:
            return {"filename": None, "lines": [], "totalLines": 0}
        all_lines = _log_lines(files[0])
        return {"filename": files[0].name, "lines": all_lines[-lines:], "totalLines": len(all_lines)}

    @router.get("/{filename}")
    async def read_log(filename: str, lines: Optional[int] = Query(None, ge=1)):
        """Return the non-empty lines of one log file, or only the last ``lines``."""
        if not filename.endswith(".log") or ".." in filename or "/" in filename or "\\" in filename:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid filename")
        path = root / filename if root is not None else None
        if path is None or not path.is_file():
            raise HTTPException(status.HTTP_404_NOT_FOUND, "Log file not found")
        all_lines = _log_lines(path)
        shown = all_lines[-lines:] if lines else all_lines
        return {"filename": filename, "lines": shown, "totalLines": len(all_lines)}

    return router
