import logging
import threading

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from vm_orchestrator import models  # noqa: F401
from vm_orchestrator.api import router
from vm_orchestrator.config import get_settings
from vm_orchestrator.db import init_schema
from vm_orchestrator.errors import InvalidRequest, LifecycleError
from vm_orchestrator.logging_config import configure_logging
from vm_orchestrator.loops import start_sweeper


logger = logging.getLogger(__name__)
stop_event = threading.Event()
sweeper_thread: threading.Thread | None = None


app = FastAPI(title="Ephemeral VM Orchestrator")
app.include_router(router)


@app.exception_handler(LifecycleError)
def lifecycle_error_handler(_request: Request, exc: LifecycleError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("request failed kind=%s: %s", exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
def validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    problems = [
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    ]
    error = InvalidRequest("; ".join(problems) or "invalid request")
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    settings = get_settings()
    if not settings.azure_subscription_id or not settings.azure_resource_group:
        raise RuntimeError("AZURE_SUBSCRIPTION_ID and AZURE_RESOURCE_GROUP are required")
    if not settings.api_key:
        logger.warning("API_KEY is not set; every /api request will be rejected")

    init_schema()

    if settings.run_sweeper_in_process:
        global sweeper_thread
        sweeper_thread = start_sweeper(stop_event)
    logger.info("orchestrator startup complete")


@app.on_event("shutdown")
def shutdown() -> None:
    stop_event.set()
    if sweeper_thread:
        sweeper_thread.join(timeout=1)
