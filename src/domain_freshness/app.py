"""
HTTP surface for the freshness system.

Routes:
- GET  /api/domains/{domain}/{section}       SWR read; records the access after responding
- GET  /api/cron/warm-cache                   bearer-protected warm-cache sweep
- POST /api/workflows/section-revalidate      bearer-protected push-backend callback
- GET  /health
"""

import hmac
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .audit_logger import AuditLogger
from .domain_validator import normalize_domain
from .enums import LogLevel, Section
from .exceptions import ValidationError
from .orchestrator import FreshnessOrchestrator


COMPONENT = "http"


def is_authorized(request: Request, secret: Optional[str]) -> bool:
    """Bearer check against the cron secret; an unset secret rejects everything."""
    if not secret:
        return False
    header = request.headers.get("Authorization", "")
    return hmac.compare_digest(header.encode(), f"Bearer {secret}".encode())


def create_app(
    orchestrator: FreshnessOrchestrator,
    logger: Optional[AuditLogger] = None,
) -> FastAPI:
    """Build the FastAPI application around an orchestrator."""

    def log(level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if logger:
            logger.log(level, COMPONENT, message, data)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await orchestrator.close()

    app = FastAPI(
        title="Domain Freshness",
        description="Access-driven revalidation and decay scheduling for cached domain data.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "backend": orchestrator.backend.kind.value,
            "timestamp": int(time.time()),
        }

    @app.get("/api/domains/{domain}/{section}", tags=["Domains"])
    async def read_section(domain: str, section: str, background_tasks: BackgroundTasks):
        try:
            parsed_section = Section.parse(section)
            canonical = normalize_domain(domain)
        except (ValueError, ValidationError) as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        result = await orchestrator.get_section(parsed_section, canonical)
        background_tasks.add_task(orchestrator.access_recorder.record_access_now, canonical)
        return result.to_dict()

    @app.get("/api/cron/warm-cache", tags=["Cron"])
    async def warm_cache(request: Request):
        if not is_authorized(request, orchestrator.config.cron.secret):
            log(LogLevel.WARN, "Unauthorized cron request")
            return JSONResponse({"error": "Unauthorized"}, status_code=401)

        try:
            summary = await orchestrator.sweep()
        except Exception as e:
            if logger:
                logger.log_error(COMPONENT, "Warm-cache cron failed", e)
            return JSONResponse({"error": "Failed to warm cache"}, status_code=500)

        return summary.to_response()

    @app.post("/api/workflows/section-revalidate", tags=["Workflows"])
    async def section_revalidate(request: Request):
        if not is_authorized(request, orchestrator.config.cron.secret):
            log(LogLevel.WARN, "Unauthorized workflow callback")
            return JSONResponse({"error": "Unauthorized"}, status_code=401)

        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(payload, dict):
            return JSONResponse({"error": "Expected a JSON object"}, status_code=400)

        # Event envelopes carry the payload under "data"
        data = payload.get("data", payload)
        result = await orchestrator.handle_revalidate_event(data)
        if result.get("error") == "invalid_event":
            return JSONResponse(result, status_code=400)
        return result

    return app
