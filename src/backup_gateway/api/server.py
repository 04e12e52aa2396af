"""FastAPI application exposing the backup control plane.

Every JSON endpoint answers with the :class:`ApiResult` envelope. Mutating
endpoints run under the process-wide :class:`OperationLock`; a call that finds
it held is rejected with 503 instead of queueing. Handler failures become a
500 envelope carrying the error message.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from backup_gateway import __version__
from backup_gateway.core.config import (
    config_to_dict,
    default_config,
    parse_config_text,
    restore_masked_secrets,
)
from backup_gateway.core.exceptions import BackupError, ConfigError, LockContentionError
from backup_gateway.core.models import ApiResult, StorageType
from backup_gateway.logging import get_logger

if TYPE_CHECKING:
    from backup_gateway.api.control import ControlServer, Generation

log = get_logger(__name__)

ENDPOINTS: list[dict[str, str]] = [
    {"method": "GET", "path": "/", "description": "list endpoints"},
    {"method": "GET", "path": "/backup/tables", "description": "list tables"},
    {"method": "GET", "path": "/backup/list", "description": "list local and remote backups"},
    {
        "method": "POST",
        "path": "/backup/create?table=&name=&freeze_one_by_one",
        "description": "create backup",
    },
    {"method": "POST", "path": "/backup/freeze?table=&freeze_one_by_one", "description": "freeze tables"},
    {"method": "POST", "path": "/backup/clean", "description": "clear staging area"},
    {"method": "POST", "path": "/backup/upload/{name}?diff-from=", "description": "upload backup"},
    {"method": "POST", "path": "/backup/download/{name}", "description": "download backup"},
    {
        "method": "POST",
        "path": "/backup/restore/{name}?table=&schema&data",
        "description": "restore schema and/or data",
    },
    {"method": "POST", "path": "/backup/delete/{where}/{name}", "description": "delete backup"},
    {"method": "GET", "path": "/backup/config/default", "description": "default configuration"},
    {"method": "GET", "path": "/backup/config", "description": "current configuration"},
    {"method": "POST", "path": "/backup/config", "description": "validate and reload configuration"},
    {"method": "GET", "path": "/health", "description": "server state"},
    {"method": "GET", "path": "/metrics", "description": "prometheus metrics"},
]


def envelope(
        status_code: int,
        success: bool,
        result: Any = None,
        message: str | None = None,
) -> JSONResponse:
    body = ApiResult(success=success, result=result, message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def create_app(control: ControlServer, generation: Generation) -> FastAPI:
    """Build the application serving one configuration generation."""
    app = FastAPI(title="backup-gateway", version=__version__, docs_url=None, redoc_url=None)
    engine = generation.engine
    config = generation.config

    def run(operation: str, fn: Callable[[], Any]) -> JSONResponse:
        try:
            result = fn()
        except Exception as exc:
            log.error("operation_failed", operation=operation, error=str(exc))
            return envelope(500, False, message=str(exc))
        return envelope(200, True, result=result)

    def run_locked(operation: str, fn: Callable[[], Any]) -> JSONResponse:
        try:
            with control.lock.hold():
                log.info("operation_start", operation=operation)
                result = fn()
        except LockContentionError as exc:
            log.warning("operation_rejected", operation=operation)
            return envelope(503, False, message=str(exc))
        except Exception as exc:
            log.error("operation_failed", operation=operation, error=str(exc))
            return envelope(500, False, message=str(exc))
        log.info("operation_complete", operation=operation)
        return envelope(200, True, result=result)

    # ────────────── Read-only ───────────────

    @app.get("/")
    def index() -> JSONResponse:
        return envelope(200, True, result=ENDPOINTS)

    @app.get("/health")
    def health() -> JSONResponse:
        return envelope(200, True, result={
            "state": control.state.value,
            "listen_addr": config.api.listen_addr,
            "busy": control.lock.held,
        })

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(content=control.metrics.render(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/backup/tables")
    def tables() -> JSONResponse:
        return run("tables", engine.list_tables)

    @app.get("/backup/list")
    def list_backups() -> JSONResponse:
        def collect() -> list[dict[str, Any]]:
            backups = engine.list_local_backups()
            if config.general.remote_storage != StorageType.NONE:
                backups = backups + engine.list_remote_backups()
            return [b.model_dump(mode="json") for b in backups]

        return run("list", collect)

    @app.get("/backup/config/default")
    def config_default() -> JSONResponse:
        return envelope(200, True, result=config_to_dict(default_config()))

    @app.get("/backup/config")
    def config_current() -> JSONResponse:
        return envelope(200, True, result=config_to_dict(config))

    # ────────────── Mutating ────────────────

    @app.post("/backup/create")
    def create(request: Request, table: str = "", name: str = "") -> JSONResponse:
        freeze_one_by_one = "freeze_one_by_one" in request.query_params

        def create_tracked() -> dict[str, str]:
            with control.metrics.track_backup():
                return {"name": engine.create_backup(
                    name=name,
                    table_pattern=table,
                    freeze_one_by_one=freeze_one_by_one,
                )}

        return run_locked("create", create_tracked)

    @app.post("/backup/freeze")
    def freeze(request: Request, table: str = "") -> JSONResponse:
        freeze_one_by_one = "freeze_one_by_one" in request.query_params
        return run_locked("freeze", lambda: engine.freeze(
            table_pattern=table,
            freeze_one_by_one=freeze_one_by_one,
        ))

    @app.post("/backup/clean")
    def clean() -> JSONResponse:
        return run_locked("clean", engine.clean)

    @app.post("/backup/upload/{name}")
    def upload(name: str, diff_from: str = Query("", alias="diff-from")) -> JSONResponse:
        return run_locked("upload", lambda: engine.upload(name, diff_from=diff_from))

    @app.post("/backup/download/{name}")
    def download(name: str) -> JSONResponse:
        return run_locked("download", lambda: engine.download(name))

    @app.post("/backup/restore/{name}")
    def restore(name: str, request: Request, table: str = "") -> JSONResponse:
        # schema and data are presence flags: "?schema" alone enables them
        schema_only = "schema" in request.query_params
        data_only = "data" in request.query_params
        return run_locked("restore", lambda: engine.restore(
            name,
            table_pattern=table,
            schema_only=schema_only,
            data_only=data_only,
        ))

    @app.post("/backup/delete/{where}/{name}")
    def delete(where: str, name: str) -> JSONResponse:
        def remove() -> None:
            if where == "local":
                engine.remove_local(name)
            elif where == "remote":
                engine.remove_remote(name)
            else:
                raise BackupError(f"Unknown backup location {where!r}, expected 'local' or 'remote'")

        return run_locked("delete", remove)

    @app.post("/backup/config")
    async def update_config(request: Request) -> JSONResponse:
        content_type = request.headers.get("content-type", "")
        fmt = "json" if content_type.startswith("application/json") else "toml"
        try:
            body = (await request.body()).decode("utf-8")
            new_config = restore_masked_secrets(parse_config_text(body, fmt), config)
        except (ConfigError, UnicodeDecodeError) as exc:
            log.warning("config_rejected", error=str(exc))
            return envelope(500, False, message=str(exc))

        if not control.lock.try_acquire():
            log.warning("operation_rejected", operation="config")
            return envelope(503, False, message="Another operation is currently running")
        try:
            await control.request_reload(new_config)
        except Exception as exc:
            log.error("operation_failed", operation="config", error=str(exc))
            return envelope(500, False, message=str(exc))
        finally:
            control.lock.release()

        log.info("config_reload_requested", listen_addr=new_config.api.listen_addr)
        return envelope(200, True, message="configuration accepted, reloading")

    return app
