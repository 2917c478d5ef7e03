from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from regularization.data_models import (
    CompletionStatus,
    PairAssignment,
    RegularizationMapping,
    Triplet,
    UncuratedPair,
)
from regularization.errors import ComputationError, NotFoundError, RegularizationError, ValidationError
from regularization.hierarchy import CanonicalModel
from regularization.scheduler import build_sweep_scheduler
from regservice.engine import RegularizationEngine
from regservice.logging_config import configure_logging, new_operation_id, operation_id
from regservice.messaging import KafkaBus
from regservice.query_expander import FilterSelection
from regservice.settings import ServiceSettings

logger = logging.getLogger(__name__)


# ── Request / Response Models ───────────────────────────────────────

class AssignmentRequest(BaseModel):
    canonical_make_id: int
    canonical_model_id: int
    vehicle_type_id: int | None = None
    fuel_types_by_year: dict[int, int | None] = Field(default_factory=dict)


class QueryRequest(BaseModel):
    make_ids: list[int] = Field(default_factory=list)
    model_ids: list[int] = Field(default_factory=list)
    model_year_ids: list[int] = Field(default_factory=list)
    fuel_type_ids: list[int] = Field(default_factory=list)
    vehicle_type_ids: list[int] = Field(default_factory=list)
    regularization_enabled: bool = True
    limit_to_trusted_years: bool = False
    coupling: bool = True


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


_ERROR_STATUS = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ComputationError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# ── Payload helpers ─────────────────────────────────────────────────

def _pair_payload(pair: UncuratedPair, pair_status: CompletionStatus | None = None) -> dict[str, Any]:
    payload = {
        "make_id": pair.make_id,
        "model_id": pair.model_id,
        "make_name": pair.make_name,
        "model_name": pair.model_name,
        "record_count": pair.record_count,
        "percentage_of_total": pair.percentage_of_total,
        "model_years": list(pair.raw_model_years_present),
        "earliest_year": pair.earliest_year,
        "latest_year": pair.latest_year,
        "has_trusted_match": pair.has_trusted_match,
    }
    if pair_status is not None:
        payload["status"] = pair_status.value
    return payload


def _mapping_payload(mapping: RegularizationMapping) -> dict[str, Any]:
    kind = mapping.kind
    return {
        "id": mapping.id,
        "uncurated_make_id": mapping.uncurated_make_id,
        "uncurated_model_id": mapping.uncurated_model_id,
        "model_year": kind.model_year if isinstance(kind, Triplet) else None,
        "wildcard": mapping.is_wildcard,
        "canonical_make_id": mapping.canonical_make_id,
        "canonical_model_id": mapping.canonical_model_id,
        "fuel_type_id": mapping.fuel_type_id,
        "vehicle_type_id": mapping.vehicle_type_id,
        "record_count": mapping.record_count,
        "year_range_start": mapping.year_range_start,
        "year_range_end": mapping.year_range_end,
        "created_at": mapping.created_at.isoformat() if mapping.created_at else None,
    }


def _options_payload(options) -> list[dict[str, Any]]:
    return [
        {
            "id": o.value.id,
            "code": o.value.code,
            "description": o.value.description,
            "record_count": o.record_count,
        }
        for o in options
    ]


def _canonical_payload(model: CanonicalModel) -> dict[str, Any]:
    return {
        "make_id": model.make_id,
        "model_id": model.id,
        "model_name": model.name,
        "vehicle_type_options": _options_payload(model.vehicle_type_options),
        "model_years": {str(year): _options_payload(opts) for year, opts in model.model_years.items()},
    }


# ── App Factory ─────────────────────────────────────────────────────

def create_app(settings: ServiceSettings | None = None) -> FastAPI:
    settings = settings or ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    config = settings.regularization_config()
    bus = KafkaBus(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        client_id=settings.kafka_client_id,
    )
    engine = RegularizationEngine.from_dsn(settings.database_dsn, config, bus=bus)
    stop_event = asyncio.Event()

    async def _data_change_handler(event: dict[str, Any]) -> None:
        engine.handle_data_change(event)
        await engine.run_full_sweep()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await engine.records.connect()
        await bus.connect()
        scheduler = build_sweep_scheduler(settings.sweep_cron, engine.run_full_sweep)
        scheduler.start()
        consumer_task = asyncio.create_task(bus.consume_data_changes_forever(_data_change_handler, stop_event))
        startup_sweep = asyncio.create_task(engine.run_full_sweep()) if settings.sweep_on_startup else None
        try:
            yield
        finally:
            stop_event.set()
            consumer_task.cancel()
            if startup_sweep is not None:
                startup_sweep.cancel()
            for task in (consumer_task, startup_sweep):
                if task is not None:
                    with suppress(asyncio.CancelledError):
                        await task
            scheduler.shutdown(wait=False)
            await bus.close()
            await engine.records.close()

    app = FastAPI(title="Categorical Regularization API", version="0.1.0", lifespan=lifespan)
    app.state.engine = engine
    app.state.bus = bus

    @app.middleware("http")
    async def operation_id_middleware(request: Request, call_next: Any) -> Response:
        oid = request.headers.get("X-Operation-ID")
        if oid:
            operation_id.set(oid)
        else:
            oid = new_operation_id()
        response = await call_next(request)
        response.headers["X-Operation-ID"] = oid
        return response

    @app.exception_handler(RegularizationError)
    async def regularization_error_handler(_: Request, exc: RegularizationError) -> JSONResponse:
        code = next(
            (c for cls, c in _ERROR_STATUS.items() if isinstance(exc, cls)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        if code >= 500:
            logger.error("Request failed: %s", exc)
        return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {"database": await engine.records.ping()}
        if bus.enabled:
            checks["kafka"] = await bus.ping()
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    # ── Pairs ───────────────────────────────────────────────────────

    @app.get("/pairs")
    async def list_pairs(
        status_filter: CompletionStatus | None = Query(default=None, alias="status"),
        include_exact_matches: bool = False,
    ) -> dict[str, Any]:
        listing = await engine.list_pairs(status=status_filter, include_exact_matches=include_exact_matches)
        return {
            "count": len(listing.entries),
            "counts": dict(listing.counts),
            "status_generation": listing.status_generation,
            "statuses_pending": listing.statuses_pending,
            "pairs": [_pair_payload(pair, pair_status) for pair, pair_status in listing.entries],
        }

    @app.get("/pairs/{make_id}/{model_id}")
    async def pair_detail(make_id: int, model_id: int) -> dict[str, Any]:
        detail = await engine.pair_detail(make_id, model_id)
        return {
            "make_id": make_id,
            "model_id": model_id,
            "pair": _pair_payload(detail.pair) if detail.pair else None,
            "model_years": list(detail.model_years),
            "status": detail.status.value,
            "mappings": [_mapping_payload(m) for m in detail.mappings],
            "canonical": _canonical_payload(detail.canonical_model) if detail.canonical_model else None,
        }

    @app.put("/pairs/{make_id}/{model_id}/mapping")
    async def save_mapping(make_id: int, model_id: int, req: AssignmentRequest) -> dict[str, Any]:
        assignment = PairAssignment(
            uncurated_make_id=make_id,
            uncurated_model_id=model_id,
            canonical_make_id=req.canonical_make_id,
            canonical_model_id=req.canonical_model_id,
            vehicle_type_id=req.vehicle_type_id,
            fuel_types_by_year=dict(req.fuel_types_by_year),
        )
        saved = await engine.save_assignment(assignment)
        detail = await engine.pair_detail(make_id, model_id)
        return {"status": detail.status.value, "mappings": [_mapping_payload(m) for m in saved]}

    @app.delete("/pairs/{make_id}/{model_id}/mapping")
    async def delete_pair_mapping(make_id: int, model_id: int) -> dict[str, Any]:
        deleted = await engine.delete_pair(make_id, model_id)
        return {"deleted": deleted}

    @app.delete("/mappings/{mapping_id}")
    async def delete_mapping(mapping_id: int) -> dict[str, Any]:
        removed = await engine.delete_mapping(mapping_id)
        return {"deleted": 1, "mapping": _mapping_payload(removed)}

    @app.get("/hierarchy/{make_id}/{model_id}")
    async def canonical_model(make_id: int, model_id: int) -> dict[str, Any]:
        return _canonical_payload(await engine.canonical_model(make_id, model_id))

    # ── Sweeps ──────────────────────────────────────────────────────

    @app.post("/auto-map")
    async def auto_map() -> dict[str, Any]:
        return await engine.run_auto_mapping()

    @app.post("/sweeps/run")
    async def run_sweep() -> dict[str, Any]:
        return await engine.run_full_sweep()

    @app.post("/data-changes", status_code=status.HTTP_202_ACCEPTED)
    async def data_changed(background_tasks: BackgroundTasks, source: str = "api_manual") -> dict[str, Any]:
        generations = engine.handle_data_change({"source": source})
        background_tasks.add_task(engine.run_full_sweep)
        return {"invalidated": True, "generations": generations}

    # ── Query / Reporting ───────────────────────────────────────────

    @app.post("/query/count")
    async def query_count(req: QueryRequest) -> dict[str, Any]:
        selection = FilterSelection(
            make_ids=frozenset(req.make_ids),
            model_ids=frozenset(req.model_ids),
            model_year_ids=frozenset(req.model_year_ids),
            fuel_type_ids=frozenset(req.fuel_type_ids),
            vehicle_type_ids=frozenset(req.vehicle_type_ids),
            regularization_enabled=req.regularization_enabled,
            limit_to_trusted_years=req.limit_to_trusted_years,
            coupling=req.coupling,
        )
        return {"count": await engine.count_matching(selection)}

    @app.get("/statistics")
    async def statistics() -> dict[str, Any]:
        stats = await engine.mappings.statistics()

        def _coverage(c) -> dict[str, Any]:
            return {
                "assigned": c.assigned_count,
                "unassigned": c.unassigned_count,
                "total": c.total_records,
                "coverage_pct": c.coverage_pct,
            }

        return {
            "mapping_count": stats.mapping_count,
            "total_untrusted_records": stats.total_untrusted_records,
            "make_model": _coverage(stats.make_model),
            "fuel_type": _coverage(stats.fuel_type),
            "vehicle_type": _coverage(stats.vehicle_type),
        }

    @app.get("/display-info")
    async def display_info() -> dict[str, Any]:
        pairs = await engine.mappings.display_info()
        makes = await engine.mappings.make_display_info()
        return {
            "pairs": [{"make_id": k[0], "model_id": k[1], **v} for k, v in sorted(pairs.items())],
            "makes": [{"make_id": k, **v} for k, v in sorted(makes.items())],
        }

    return app
