import asyncio
import io
import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, UploadFile

from .config import (
    EVALUATION_INTERVAL_SECONDS,
    EVALUATION_TIMEOUT_SECONDS,
    LOG_LEVEL,
    SCHEDULER_ENABLED,
)
from .db import engine as default_engine, make_session_factory
from .errors import (
    ConfigurationError,
    EngineError,
    ExperimentNotFoundError,
    ExperimentStateError,
    StorageUnavailableError,
)
from .experiment import ExperimentConfig, config_to_dict
from .ingest import load_outcomes_csv
from .schemas import (
    AssignRequest,
    CreateExperimentRequest,
    PromoteRequest,
    RecordEventRequest,
    UpdateConfigRequest,
)
from .service import ExperimentService
from .store import ExperimentStore

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def experiment_to_dict(config: ExperimentConfig) -> dict:
    data = {
        "id": config.id,
        "name": config.name,
        "status": config.status.value,
        "variant_a_ref": config.variant_a_ref,
        "variant_b_ref": config.variant_b_ref,
        "winner": config.winner.value if config.winner else None,
        "created_at": config.created_at,
    }
    data.update(config_to_dict(config))
    return data


@contextmanager
def http_errors():
    """Translate engine errors raised inside a route into HTTP responses."""
    try:
        yield
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail={"field": exc.field, "message": exc.message})
    except ExperimentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ExperimentStateError as exc:
        raise HTTPException(status_code=409, detail={"message": str(exc), "state": exc.state})
    except StorageUnavailableError as exc:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {exc}")
    except EngineError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


async def run_scheduler(service: ExperimentService, interval: float, timeout_per_experiment: float) -> None:
    """Run an evaluation cycle every `interval` seconds until cancelled.

    A cycle that overruns its deadline keeps running in its worker thread;
    ticks are skipped until it finishes so two cycles never overlap.
    """
    cycle = None
    while True:
        if cycle is not None and not cycle.done():
            logger.warning("Previous evaluation cycle still running; skipping this tick")
        else:
            # Per-experiment deadline, summed over the current registry
            timeout = timeout_per_experiment * max(1, len(service.list_experiments()))
            cycle = asyncio.ensure_future(asyncio.to_thread(service.run_cycle))
            try:
                await asyncio.wait_for(asyncio.shield(cycle), timeout=timeout)
            except asyncio.TimeoutError:
                logger.error("Evaluation cycle did not finish within %ss", timeout)
            except EngineError as exc:
                logger.error("Evaluation cycle failed: %s", exc)
        await asyncio.sleep(interval)


def create_app(
    service: Optional[ExperimentService] = None,
    bind=None,
    scheduler_enabled: bool = SCHEDULER_ENABLED,
    interval: float = EVALUATION_INTERVAL_SECONDS,
) -> FastAPI:
    if service is None:
        bind = bind if bind is not None else default_engine
        store = ExperimentStore(make_session_factory(bind))
        # Create DB tables on startup
        store.create_tables(bind)
        service = ExperimentService(store)
        service.load()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if scheduler_enabled:
            task = asyncio.create_task(run_scheduler(service, interval, EVALUATION_TIMEOUT_SECONDS))
        yield
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    app = FastAPI(title="Experiment auto-promotion engine", lifespan=lifespan)
    app.state.service = service

    def get_service(request: Request) -> ExperimentService:
        return request.app.state.service

    @app.post("/experiments", status_code=201)
    def create_experiment(
        req: CreateExperimentRequest,
        actor: Optional[str] = Header(default=None, alias="X-Actor"),
        svc: ExperimentService = Depends(get_service),
    ):
        with http_errors():
            config = svc.create_experiment(req.to_config(), actor)
        return experiment_to_dict(config)

    @app.get("/experiments")
    def list_experiments(svc: ExperimentService = Depends(get_service)):
        experiments = sorted(svc.list_experiments(), key=lambda c: c.created_at, reverse=True)
        return [experiment_to_dict(c) for c in experiments]

    @app.post("/experiments/{experiment_id}/start")
    def start_experiment(
        experiment_id: str,
        actor: Optional[str] = Header(default=None, alias="X-Actor"),
        svc: ExperimentService = Depends(get_service),
    ):
        with http_errors():
            return experiment_to_dict(svc.start(experiment_id, actor))

    @app.post("/experiments/{experiment_id}/pause")
    def pause_experiment(
        experiment_id: str,
        actor: Optional[str] = Header(default=None, alias="X-Actor"),
        svc: ExperimentService = Depends(get_service),
    ):
        with http_errors():
            return experiment_to_dict(svc.pause(experiment_id, actor))

    @app.post("/experiments/{experiment_id}/resume")
    def resume_experiment(
        experiment_id: str,
        actor: Optional[str] = Header(default=None, alias="X-Actor"),
        svc: ExperimentService = Depends(get_service),
    ):
        with http_errors():
            return experiment_to_dict(svc.resume(experiment_id, actor))

    @app.post("/experiments/{experiment_id}/reset")
    def reset_experiment(
        experiment_id: str,
        actor: Optional[str] = Header(default=None, alias="X-Actor"),
        svc: ExperimentService = Depends(get_service),
    ):
        with http_errors():
            return experiment_to_dict(svc.reset(experiment_id, actor))

    @app.post("/experiments/{experiment_id}/promote")
    def promote_experiment(
        experiment_id: str,
        req: PromoteRequest,
        actor: Optional[str] = Header(default=None, alias="X-Actor"),
        svc: ExperimentService = Depends(get_service),
    ):
        with http_errors():
            decision = svc.force_promote(experiment_id, req.variant, actor)
        return decision.to_dict()

    @app.patch("/experiments/{experiment_id}/config")
    def update_config(
        experiment_id: str,
        req: UpdateConfigRequest,
        actor: Optional[str] = Header(default=None, alias="X-Actor"),
        svc: ExperimentService = Depends(get_service),
    ):
        with http_errors():
            return experiment_to_dict(svc.update_config(experiment_id, req.to_patch(), actor))

    @app.post("/experiments/{experiment_id}/assign")
    def assign_variant(
        experiment_id: str,
        req: AssignRequest,
        svc: ExperimentService = Depends(get_service),
    ):
        with http_errors():
            variant = svc.assign(experiment_id, req.subject_key, req.attributes)
        return {"variant": variant.value if variant else None}

    @app.post("/experiments/{experiment_id}/events")
    def record_event(
        experiment_id: str,
        req: RecordEventRequest,
        svc: ExperimentService = Depends(get_service),
    ):
        with http_errors():
            recorded = svc.record(experiment_id, req.variant, req.timestamp, req.to_outcome(), req.event_id)
        return {"recorded": recorded}

    @app.post("/experiments/{experiment_id}/events/import")
    async def import_events(
        experiment_id: str,
        file: UploadFile = File(...),
        svc: ExperimentService = Depends(get_service),
    ):
        """
        Receive an uploaded CSV of outcomes and record every row.
        """
        # Basic file type check (not bulletproof, but ok for now)
        if not file.filename or not file.filename.lower().endswith(".csv"):
            raise HTTPException(status_code=400, detail="Please upload a .csv file.")

        contents = await file.read()
        with http_errors():
            df = load_outcomes_csv(io.BytesIO(contents))
            recorded, skipped = svc.import_outcomes(experiment_id, df)
        return {"recorded": recorded, "skipped": skipped}

    @app.post("/experiments/{experiment_id}/evaluate")
    def evaluate_experiment(experiment_id: str, svc: ExperimentService = Depends(get_service)):
        with http_errors():
            decision = svc.evaluate(experiment_id)
            status = svc.get_status(experiment_id)
        return {"decision": decision.to_dict() if decision else None, "status": status}

    @app.get("/experiments/{experiment_id}/status")
    def experiment_status(experiment_id: str, svc: ExperimentService = Depends(get_service)):
        with http_errors():
            return svc.get_status(experiment_id)

    @app.get("/experiments/{experiment_id}/decisions")
    def experiment_decisions(
        experiment_id: str,
        limit: int = 100,
        svc: ExperimentService = Depends(get_service),
    ):
        with http_errors():
            return [d.to_dict() for d in svc.list_decisions(experiment_id, limit)]

    @app.get("/experiments/{experiment_id}/audit")
    def experiment_audit(experiment_id: str, svc: ExperimentService = Depends(get_service)):
        with http_errors():
            return svc.list_audit(experiment_id)

    return app


app = create_app()
