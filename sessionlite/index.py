"""
SessionLite Operations Service

Wires the expiration subsystem together and exposes an administrative HTTP
surface:
- Backing store (Redis, or in-memory for development)
- Expiration policy + reconciliation scheduler
- Session repository with lifecycle events
- Prometheus / JSON metrics
"""

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from sessionlite.backing_store import BackingStore, StoreUnavailableError
from sessionlite.config import SessionLiteConfig, StoreBackend
from sessionlite.keys import KeyNaming
from sessionlite.memory_store import InMemoryBackingStore
from sessionlite.metrics import MetricsCollector, StructuredLogger
from sessionlite.policy import ExpirationPolicy
from sessionlite.record import Record
from sessionlite.redis_store import RedisBackingStore
from sessionlite.repository import SessionRepository
from sessionlite.scheduler import ReconciliationScheduler

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# ============================================================================
# Component wiring
# ============================================================================

@dataclass
class SessionLiteServices:
    config: SessionLiteConfig
    store: BackingStore
    policy: ExpirationPolicy
    repository: SessionRepository
    scheduler: ReconciliationScheduler
    metrics: MetricsCollector
    structured: StructuredLogger
    started_at: float


def build_services(
    config: SessionLiteConfig,
    store: Optional[BackingStore] = None,
) -> SessionLiteServices:
    """Construct every component from configuration."""
    structured = StructuredLogger("sessionlite-events")
    metrics = MetricsCollector()

    if store is None:
        if config.store_backend == StoreBackend.MEMORY:
            store = InMemoryBackingStore()
            store.start()
        else:
            store = RedisBackingStore.from_config(config)
            if config.configure_keyspace_notifications:
                store.configure_keyspace_notifications()

    policy = ExpirationPolicy(
        store,
        keys=KeyNaming(config.namespace),
        safety_margin_secs=config.safety_margin_secs,
        metrics=metrics if config.metrics_enabled else None,
    )
    repository = SessionRepository(
        store,
        policy,
        default_max_inactive_interval=config.default_max_inactive_interval_secs,
        structured_logger=structured,
    )
    scheduler = ReconciliationScheduler(
        policy,
        interval_secs=config.sweep_interval_secs,
        lookback_minutes=config.sweep_lookback_minutes,
        sweep_timeout_secs=config.sweep_timeout_secs,
        metrics=metrics,
        structured_logger=structured,
    )
    return SessionLiteServices(
        config=config,
        store=store,
        policy=policy,
        repository=repository,
        scheduler=scheduler,
        metrics=metrics,
        structured=structured,
        started_at=time.time(),
    )


# ============================================================================
# Pydantic Models
# ============================================================================

class CreateSessionRequest(BaseModel):
    """Request model for creating a record."""
    max_inactive_interval: Optional[int] = Field(
        None, description="Seconds of inactivity before expiry (<0 = never, 0 = immediately)"
    )
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Application attributes")


class SweepRequest(BaseModel):
    """Request model for a manual sweep."""
    minute_ms: Optional[int] = Field(None, description="Bucket instant (epoch ms); defaults to previous minute")


class SessionResponse(BaseModel):
    id: str
    creation_time: float
    last_accessed_time: float
    max_inactive_interval: int
    expires_at_ms: Optional[int]
    attributes: Dict[str, Any]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    store_backend: str
    uptime_seconds: float
    scheduler_running: bool


def _session_response(record: Record) -> SessionResponse:
    return SessionResponse(
        id=record.id,
        creation_time=record.creation_time,
        last_accessed_time=record.last_accessed_time,
        max_inactive_interval=record.max_inactive_interval,
        expires_at_ms=record.expiry_millis(),
        attributes=record.attributes,
    )


# ============================================================================
# FastAPI Application
# ============================================================================

def create_app(
    config: Optional[SessionLiteConfig] = None,
    store: Optional[BackingStore] = None,
) -> FastAPI:
    """Build the FastAPI application. Components start in the lifespan hook."""
    config = config or SessionLiteConfig.from_env()
    config.validate()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = build_services(config, store=store)
        app.state.services = services

        logger.info("=" * 60)
        logger.info("SessionLite Starting")
        logger.info("=" * 60)
        services.structured.log_startup(config.to_dict())

        try:
            services.repository.subscribe_to_store()
        except NotImplementedError:
            logger.warning("Backing store has no expiry notifications, relying on sweeps only")

        if config.sweep_enabled:
            services.scheduler.start()

        yield

        logger.info("SessionLite shutting down")
        services.scheduler.stop()
        services.structured.log_shutdown("shutdown", services.metrics.get_sweep_stats())
        services.store.close()

    app = FastAPI(
        title="SessionLite",
        description="Sliding-TTL record expiration with bucketed reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
        logger.warning(f"Backing store unavailable during {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    def services_of(request: Request) -> SessionLiteServices:
        return request.app.state.services

    # ------------------------------------------------------------------
    # Health & metrics
    # ------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    def health(request: Request):
        services = services_of(request)
        return HealthResponse(
            status="healthy",
            version=VERSION,
            store_backend=config.store_backend.value,
            uptime_seconds=time.time() - services.started_at,
            scheduler_running=services.scheduler.is_running,
        )

    @app.get("/api/stats")
    def stats(request: Request):
        services = services_of(request)
        result = {
            "scheduler": services.scheduler.get_stats(),
            "sweep": services.metrics.get_sweep_stats(),
            "config": config.to_dict(),
        }
        if isinstance(services.store, InMemoryBackingStore):
            result["store"] = services.store.get_stats()
        return result

    @app.get("/api/metrics")
    def metrics(request: Request):
        """Prometheus format metrics."""
        return PlainTextResponse(services_of(request).metrics.export_prometheus())

    @app.get("/api/metrics/json")
    def metrics_json(request: Request):
        return JSONResponse(json.loads(services_of(request).metrics.export_json()))

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    @app.post("/api/sweep")
    def sweep(request: Request, body: Optional[SweepRequest] = None):
        """Sweep one expiration bucket now."""
        services = services_of(request)
        minute_ms = body.minute_ms if body else None
        if minute_ms is not None and minute_ms < 0:
            raise HTTPException(status_code=400, detail="minute_ms must be a non-negative epoch instant")
        deadline = time.monotonic() + config.sweep_timeout_secs
        result = services.policy.sweep(minute_ms=minute_ms, deadline=deadline)
        services.metrics.record_sweep(result)
        return result.to_dict()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    @app.post("/api/sessions", response_model=SessionResponse, status_code=201)
    def create_session(request: Request, body: CreateSessionRequest):
        repository = services_of(request).repository
        if body.max_inactive_interval == 0:
            raise HTTPException(status_code=400, detail="A record with a zero inactivity window is never stored")
        record = repository.create_session(body.max_inactive_interval)
        record.attributes.update(body.attributes)
        repository.save(record)
        return _session_response(record)

    @app.get("/api/sessions/{record_id}", response_model=SessionResponse)
    def get_session(request: Request, record_id: str):
        record = services_of(request).repository.find_by_id(record_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Record {record_id} not found")
        return _session_response(record)

    @app.post("/api/sessions/{record_id}/touch", response_model=SessionResponse)
    def touch_session(request: Request, record_id: str):
        record = services_of(request).repository.touch(record_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Record {record_id} not found")
        return _session_response(record)

    @app.delete("/api/sessions/{record_id}")
    def delete_session(request: Request, record_id: str):
        if not services_of(request).repository.delete_by_id(record_id):
            raise HTTPException(status_code=404, detail=f"Record {record_id} not found")
        return {"id": record_id, "deleted": True}

    @app.get("/")
    def root():
        return {
            "name": "SessionLite",
            "version": VERSION,
            "status": "running",
            "documentation": "/docs",
            "config": config.to_dict(),
        }

    return app
