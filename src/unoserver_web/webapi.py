import asyncio
import logging
import mimetypes
import os
import re
import shutil
import tempfile
from contextlib import asynccontextmanager, suppress
from pathlib import Path

from fastapi import FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse
from starlette.background import BackgroundTask

from unoserver_web import __version__
from unoserver_web.conversion import (
    ConversionAborted,
    ConversionError,
    ConversionPool,
    PoolConfig,
    ProcessUnavailable,
    convert_file,
)
from unoserver_web.logging_config import setup_logging

logger = logging.getLogger(__name__)

# Global configuration defaults
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "300"))
DISCONNECT_POLL_SEC = float(os.getenv("DISCONNECT_POLL_SEC", "0.5"))
BASE_PATH = os.getenv("BASE_PATH", "")

CHUNK = 1024 * 1024
FORMAT_RE = re.compile(r"[A-Za-z0-9]+")

# 499 is nginx's "client closed request"; there is no standard code for it.
CLIENT_CLOSED_REQUEST = 499


def _safe_filename(name: str | None) -> str:
    base = Path(name or "").name.strip()
    if base in ("", ".", ".."):
        return "uploaded-file"
    return base


async def _save_upload(file: UploadFile, dest: Path) -> None:
    size_bytes = 0
    max_bytes = MAX_UPLOAD_MB * 1024 * 1024
    with dest.open("wb") as f_out:
        while True:
            chunk = await file.read(CHUNK)
            if not chunk:
                break
            size_bytes += len(chunk)
            if size_bytes > max_bytes:
                raise HTTPException(
                    status_code=413,
                    detail={"code": "payload_too_large", "message": f"upload exceeds {MAX_UPLOAD_MB} MB"},
                )
            f_out.write(chunk)


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SEC)
    logger.info("client disconnected, cancelling conversion")
    cancel_event.set()


def create_app(
    pool: ConversionPool | None = None,
    config: PoolConfig | None = None,
    base_path: str = BASE_PATH,
) -> FastAPI:
    """Build the HTTP application around one explicitly owned ConversionPool.

    The pool is started when the app starts serving and `stop_server()` is
    called exactly once on shutdown.
    """
    setup_logging()
    if pool is None:
        pool = ConversionPool(config or PoolConfig.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await pool.start()
        logger.info(
            "conversion pool started: %d workers from port %d",
            len(pool.instances),
            pool.config.starting_port,
        )
        try:
            yield
        finally:
            await pool.stop_server()
            logger.info("conversion pool stopped")

    app = FastAPI(
        title="unoserver-web",
        version=__version__,
        description="Converts documents with a pool of LibreOffice unoserver instances.",
        root_path=base_path,
        lifespan=lifespan,
    )
    app.state.pool = pool
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"], max_age=60 * 60)

    @app.get("/", include_in_schema=False)
    def index() -> RedirectResponse:
        return RedirectResponse(url=f"{base_path}/docs")

    @app.get("/health")
    def health() -> dict[str, str]:
        """Basic health check endpoint."""
        return {"status": "ok"}

    @app.post("/convert/{format}", summary="Converts file using LibreOffice")
    async def convert(
        request: Request,
        format: str,
        file: UploadFile | None = File(None),
        filter: str | None = Query(None),
    ):
        """Convert the uploaded multipart part named "file" to `format`.

        The optional `filter` query parameter is passed to unoconvert as the
        LibreOffice export filter name. Responds 499 if the client goes away
        before the conversion finishes.
        """
        if file is None:
            raise HTTPException(status_code=400, detail={"code": "bad_request", "message": "Expected file"})
        if not FORMAT_RE.fullmatch(format):
            raise HTTPException(
                status_code=400,
                detail={"code": "invalid_format", "message": f"unsupported target format {format!r}"},
            )

        workdir = Path(tempfile.mkdtemp(prefix="upload-"))
        cancel_event = asyncio.Event()
        watcher: asyncio.Task | None = None
        try:
            input_dir = workdir / "input"
            output_dir = workdir / "output"
            input_dir.mkdir()
            output_dir.mkdir()
            src_path = input_dir / _safe_filename(file.filename)
            await _save_upload(file, src_path)

            watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
            target_path = await convert_file(
                pool,
                src_path,
                format,
                filter=filter,
                cancel_event=cancel_event,
                output_dir=output_dir,
            )
        except ConversionAborted:
            shutil.rmtree(workdir, ignore_errors=True)
            return JSONResponse(status_code=CLIENT_CLOSED_REQUEST, content={"error": "Client disconnected"})
        except ProcessUnavailable as e:
            shutil.rmtree(workdir, ignore_errors=True)
            raise HTTPException(status_code=503, detail={"code": "service_unavailable", "message": str(e)})
        except ConversionError as e:
            shutil.rmtree(workdir, ignore_errors=True)
            logger.warning("conversion to %s failed: %s", format, e)
            raise HTTPException(
                status_code=500,
                detail={"code": "conversion_failed", "message": "conversion failed"},
            )
        except BaseException:
            shutil.rmtree(workdir, ignore_errors=True)
            raise
        finally:
            if watcher is not None:
                watcher.cancel()
                with suppress(asyncio.CancelledError):
                    await watcher

        media_type = mimetypes.guess_type(f"file.{format}")[0] or "application/octet-stream"
        return FileResponse(
            target_path,
            media_type=media_type,
            filename=target_path.name,
            background=BackgroundTask(shutil.rmtree, workdir, ignore_errors=True),
        )

    @app.get("/queue/status", summary="Get current queue status")
    async def queue_status() -> dict[str, object]:
        return pool.status().as_dict()

    return app


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:3000). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3000"))
    reload = os.getenv("RELOAD", "false").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("unoserver_web.webapi:create_app", factory=True, host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
