import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, List

import uvicorn
from fastapi import BackgroundTasks, Depends, FastAPI, Path, Query, Request, Response
from sqlalchemy.orm import Session
from starlette import status

from app.core.auth import require_auth_token
from app.core.context import (
    TrackingContext,
    build_tracking_context,
    get_consent_service,
    get_settings,
)
from app.core.db import SessionLocal, get_db, init_db
from app.core.settings import Settings, config_settings
from app.models.orm.base import utcnow
from app.models.schemas.assignment import AssignmentModel
from app.models.schemas.consent import ConsentStateModel, ConsentUpdateModel
from app.models.schemas.event import (
    EventAcceptedModel,
    PageViewCreateModel,
    TrackEventCreateModel,
)
from app.models.schemas.experiment import (
    ExperimentCreateModel,
    ExperimentResponseModel,
    ExperimentResultsModel,
)
from app.repositories.assignment_store import StorageUnavailableError
from app.services.analytics_sink import AnalyticsSink, BackgroundDispatchSink, build_sink
from app.services.consent_service import ConsentService
from app.services.event_service import EventService
from app.services.experiment_service import ExperimentService
from app.services.experiment_tracker import ExperimentTracker

logging.basicConfig(
    level=getattr(logging, config_settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info(
        "Experiment tracker ready (store=%s, sink=%s)",
        config_settings.ASSIGNMENT_STORE,
        config_settings.ANALYTICS_SINK,
    )
    yield


app = FastAPI(
    title="Dealership visitor experiment tracker",
    description="Sticky A/B variant assignment and consent-gated visitor tracking.",
    version="0.1.0",
    lifespan=lifespan,
)

ExperimentName = Annotated[str, Path(min_length=1, description="The name of the experiment.")]


# --- Dependencies ---


def get_analytics_sink(settings: Settings = Depends(get_settings)) -> AnalyticsSink:
    return build_sink(settings, SessionLocal)


def get_dispatch_sink(
    background_tasks: BackgroundTasks,
    sink: AnalyticsSink = Depends(get_analytics_sink),
) -> AnalyticsSink:
    # Dispatch after the response is sent so tracking never slows the page
    return BackgroundDispatchSink(sink, background_tasks)


def get_experiment_service(
    db: Session = Depends(get_db), settings: Settings = Depends(get_settings)
) -> ExperimentService:
    return ExperimentService(db, settings)


def get_tracker(
    context: TrackingContext = Depends(build_tracking_context),
    sink: AnalyticsSink = Depends(get_dispatch_sink),
    experiment_service: ExperimentService = Depends(get_experiment_service),
    settings: Settings = Depends(get_settings),
) -> ExperimentTracker:
    return ExperimentTracker(
        context,
        sink,
        definitions=experiment_service.get_definition,
        default_variant=settings.DEFAULT_VARIANT,
    )


# --- Visitor routes ---


@app.get("/health")
def health():
    return {"status": "ok", "timestamp": utcnow()}


@app.get("/consent", response_model=ConsentStateModel)
def get_consent(
    request: Request,
    consent_service: ConsentService = Depends(get_consent_service),
):
    return consent_service.read_consent(request.cookies)


@app.post("/consent", response_model=ConsentStateModel)
def post_consent(
    consent_update: ConsentUpdateModel,
    response: Response,
    consent_service: ConsentService = Depends(get_consent_service),
):
    state = consent_service.apply_choice(consent_update)
    consent_service.write_consent(response, state)
    logger.info("Visitor consent recorded: %s", state.has_consented)
    return state


@app.get(
    "/experiments/{experiment_name}/variant",
    response_model=AssignmentModel,
    status_code=status.HTTP_200_OK,
    summary="Get the visitor's variant",
)
def get_variant(
    experiment_name: ExperimentName,
    impression: bool = Query(False, description="Also record an impression."),
    tracker: ExperimentTracker = Depends(get_tracker),
):
    """
    Returns the visitor's sticky variant. If no assignment exists, a new one
    is drawn and stored; without consent the default variant is returned
    and nothing is stored.
    """
    assignment = tracker.assignment(experiment_name)
    if impression:
        tracker.record_event(experiment_name, "impression")
    return assignment


@app.post(
    "/experiments/{experiment_name}/events",
    response_model=EventAcceptedModel,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Record an experiment interaction.",
)
def post_experiment_event(
    event_data: TrackEventCreateModel,
    experiment_name: ExperimentName,
    tracker: ExperimentTracker = Depends(get_tracker),
):
    accepted = tracker.record_event(experiment_name, event_data.action, event_data.properties)
    return EventAcceptedModel(accepted=accepted)


@app.delete(
    "/experiments/{experiment_name}/assignment",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Forget the visitor's variant.",
)
def delete_assignment(
    experiment_name: ExperimentName,
    context: TrackingContext = Depends(build_tracking_context),
):
    if context.store is not None:
        try:
            context.store.clear(experiment_name)
        except StorageUnavailableError as e:
            logger.warning("Could not clear %s: %s", experiment_name, e)


@app.post(
    "/page-views",
    response_model=EventAcceptedModel,
    status_code=status.HTTP_202_ACCEPTED,
)
def post_page_view(
    page_view: PageViewCreateModel,
    request: Request,
    response: Response,
    context: TrackingContext = Depends(build_tracking_context),
    sink: AnalyticsSink = Depends(get_dispatch_sink),
    settings: Settings = Depends(get_settings),
):
    event_service = EventService(
        context, sink, request.cookies, response, max_age=settings.ASSIGNMENT_COOKIE_MAX_AGE
    )
    event_service.capture_utm(page_view.query)
    accepted = event_service.track_page_view(page_view.path)
    return EventAcceptedModel(accepted=accepted)


# --- Admin routes ---


@app.post(
    "/experiments",
    response_model=ExperimentResponseModel,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_auth_token)],
)
def post_experiments(
    experiment_data: ExperimentCreateModel,
    experiment_service: ExperimentService = Depends(get_experiment_service),
):
    return experiment_service.create_experiment(experiment_data)


@app.get(
    "/experiments",
    response_model=List[ExperimentResponseModel],
    dependencies=[Depends(require_auth_token)],
)
def get_experiments(experiment_service: ExperimentService = Depends(get_experiment_service)):
    return experiment_service.list_experiments()


@app.get(
    "/experiments/{experiment_name}/results",
    response_model=ExperimentResultsModel,
    status_code=status.HTTP_200_OK,
    summary="Get statistics for an experiment",
    dependencies=[Depends(require_auth_token)],
)
def get_experiment_results(
    experiment_name: ExperimentName,
    event_type: str | None = Query(None),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    experiment_service: ExperimentService = Depends(get_experiment_service),
):
    return experiment_service.get_experiment_results(
        experiment_name, event_type=event_type, start_date=start_date, end_date=end_date
    )


# Entry point for running the application directly during local development
if __name__ == "__main__":
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
