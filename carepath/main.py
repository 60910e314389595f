"""FastAPI application exposing the treatment-scheduling core."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Literal, Optional

import structlog
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel
from sqlalchemy.orm import Session

load_dotenv()

from carepath import __version__  # noqa: E402
from carepath.approvals import approve_appointment, reject_appointment  # noqa: E402
from carepath.auth import Caller, require_admin, require_clinician  # noqa: E402
from carepath.booking import (  # noqa: E402
    book_appointment,
    cancel_appointment,
    create_pending_appointment,
    expire_holds,
    record_outcome,
    serialize_appointment,
)
from carepath.db import get_session, transaction  # noqa: E402
from carepath.episode_steps import (  # noqa: E402
    delete_step,
    generate_steps,
    list_steps,
    reorder_steps,
    serialize_step,
    transition_step,
)
from carepath.episodes import (  # noqa: E402
    add_block,
    assign_pathway,
    close_episode,
    load_episode,
    open_episode,
    reassign_provider,
    record_stage_event,
    serialize_episode,
)
from carepath.errors import NotFoundError, SchedulingError, ValidationError  # noqa: E402
from carepath.forecast import forecast_batch  # noqa: E402
from carepath.intents import convert_intent, list_intents, project_intents, serialize_intent  # noqa: E402
from carepath.invariant import collect_tripwires, scheduling_integrity  # noqa: E402
from carepath.next_step import Blocked, all_pending_steps, next_required_step  # noqa: E402
from carepath.notifications import (  # noqa: E402
    ALTERNATIVE_OFFERED,
    APPOINTMENT_APPROVED,
    APPOINTMENT_BOOKED,
    APPOINTMENT_CANCELLED,
    APPOINTMENT_REJECTED,
    NotificationDispatcher,
    get_notifier,
)
from carepath.pathways import create_pathway, list_pathways, serialize_pathway, update_pathway  # noqa: E402
from carepath.risk import RiskAssessor, RuleBasedRiskAssessor  # noqa: E402
from carepath.schemas import (  # noqa: E402
    ApprovalModel,
    AppointmentModel,
    CancelModel,
    CarePathwayModel,
    CarePathwayUpdateModel,
    ConvertIntentModel,
    EpisodeBlockModel,
    EpisodeCloseModel,
    EpisodeCreateModel,
    EpisodePathwayModel,
    ForecastBatchModel,
    GenerateStepsModel,
    OutcomeModel,
    PendingAppointmentModel,
    ProviderModel,
    ReorderStepsModel,
    StageEventModel,
    StepLabelModel,
    StepUpdateModel,
    TimeSlotModel,
)
from carepath.settings import get_scheduling_settings  # noqa: E402
from carepath.slots import block_slot, create_slot, serialize_slot, unblock_slot  # noqa: E402
from carepath.step_catalog import LABELS, UNMAPPED, StepCatalogCache, upsert_label  # noqa: E402
from carepath.time_utils import isoformat, parse_iso, utc_now  # noqa: E402
from carepath.workload import clamp_horizon, intake_recommendation, provider_workload  # noqa: E402

LOG_LEVEL = get_scheduling_settings().log_level
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format="%(message)s")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

START_TIME = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised by uvicorn
    logger.info("lifespan_startup", version=__version__)
    try:
        yield
    finally:
        logger.info("lifespan_shutdown")


app = FastAPI(title="carepath", version=__version__, lifespan=lifespan)
app.state.step_catalog = StepCatalogCache()


# ---------------------------------------------------------------------------
# Response envelope
# ---------------------------------------------------------------------------


class SuccessResponse(BaseModel):
    """Standard successful response envelope."""

    success: Literal[True] = True
    data: Any | None = None


class ErrorDetail(BaseModel):
    """Details describing an error response payload."""

    code: int | str | None = None
    message: str
    details: Any | None = None

    model_config = {"extra": "allow"}


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    success: Literal[False] = False
    error: ErrorDetail


def _success(data: Any) -> Dict[str, Any]:
    return SuccessResponse(data=data).model_dump()


def _error_response(status_code: int, code: Any, message: str, details: Any = None) -> JSONResponse:
    payload = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=payload.model_dump(exclude_none=True))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Convert ``HTTPException`` instances into the standard error envelope."""

    detail = exc.detail
    if isinstance(detail, dict):
        return _error_response(
            exc.status_code,
            detail.get("code", exc.status_code),
            str(detail.get("message") or detail.get("detail") or "An error occurred"),
            detail.get("details"),
        )
    response = _error_response(exc.status_code, exc.status_code, str(detail or "An error occurred"))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    logger.info(
        "scheduling_request_rejected",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
    )
    return _error_response(exc.status_code, exc.code, exc.message, exc.details or None)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(422, "VALIDATION_ERROR", "Invalid request", jsonable_encoder(exc.errors()))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_request_error", path=request.url.path)
    return _error_response(500, "INTERNAL_ERROR", "Internal server error")


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_step_catalog(request: Request) -> StepCatalogCache:
    return request.app.state.step_catalog


def get_risk_assessor() -> RiskAssessor:
    return RuleBasedRiskAssessor()


def get_notification_dispatcher() -> NotificationDispatcher:
    return get_notifier()


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


@app.get("/health", tags=["system"])
def health() -> Dict[str, Any]:
    return {"status": "ok", "version": __version__, "uptime": round(time.time() - START_TIME, 3)}


@app.get("/metrics", tags=["system"])
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Care pathways and step catalog
# ---------------------------------------------------------------------------


def _store_labels(session: Session, model) -> None:
    for step in model.steps or []:
        if step.label:
            upsert_label(session, step.step_code, step.label)


@app.post("/api/care-pathways", tags=["pathways"])
def create_care_pathway(
    model: CarePathwayModel,
    session: Session = Depends(get_session),
    catalog: StepCatalogCache = Depends(get_step_catalog),
    caller: Caller = Depends(require_admin),
):
    with transaction(session):
        pathway = create_pathway(
            session,
            name=model.name,
            reason=model.reason,
            steps=[step.as_template() for step in model.steps],
            window_slack_days=model.window_slack_days,
        )
        _store_labels(session, model)
    catalog.invalidate_all()
    return _success(serialize_pathway(pathway))


@app.put("/api/care-pathways/{pathway_id}", tags=["pathways"])
def update_care_pathway(
    pathway_id: int,
    model: CarePathwayUpdateModel,
    session: Session = Depends(get_session),
    catalog: StepCatalogCache = Depends(get_step_catalog),
    caller: Caller = Depends(require_admin),
):
    with transaction(session):
        pathway = update_pathway(
            session,
            pathway_id,
            name=model.name,
            reason=model.reason,
            steps=[step.as_template() for step in model.steps] if model.steps is not None else None,
            window_slack_days=model.window_slack_days,
        )
        _store_labels(session, model)
    catalog.invalidate_all()
    return _success(serialize_pathway(pathway))


@app.get("/api/care-pathways", tags=["pathways"])
def get_care_pathways(
    include_superseded: bool = Query(default=False, alias="includeSuperseded"),
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    pathways = list_pathways(session, include_superseded=include_superseded)
    return _success([serialize_pathway(pathway) for pathway in pathways])


@app.get("/api/step-catalog", tags=["pathways"])
def get_step_catalog_entries(
    session: Session = Depends(get_session),
    catalog: StepCatalogCache = Depends(get_step_catalog),
    caller: Caller = Depends(require_clinician),
):
    return _success({"labels": catalog.get(LABELS, session), "unmapped": catalog.get(UNMAPPED, session)})


@app.put("/api/step-catalog/{step_code}", tags=["pathways"])
def put_step_label(
    step_code: str,
    model: StepLabelModel,
    session: Session = Depends(get_session),
    catalog: StepCatalogCache = Depends(get_step_catalog),
    caller: Caller = Depends(require_admin),
):
    if not model.label.strip():
        raise ValidationError("label must not be empty", code="INVALID_LABEL")
    with transaction(session):
        entry = upsert_label(session, step_code, model.label.strip())
    catalog.invalidate(LABELS)
    catalog.invalidate(UNMAPPED)
    return _success({"stepCode": entry.step_code, "label": entry.label})


# ---------------------------------------------------------------------------
# Episodes
# ---------------------------------------------------------------------------


@app.post("/api/episodes", tags=["episodes"])
def create_episode(
    model: EpisodeCreateModel,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    with transaction(session):
        episode = open_episode(
            session,
            patient_id=model.patient_id,
            reason=model.reason,
            provider_id=model.provider_id,
            care_pathway_id=model.care_pathway_id,
        )
    return _success(serialize_episode(session, episode))


@app.get("/api/episodes/{episode_id}", tags=["episodes"])
def get_episode_detail(
    episode_id: int,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    return _success(serialize_episode(session, load_episode(session, episode_id)))


@app.post("/api/episodes/{episode_id}/close", tags=["episodes"])
def close_episode_route(
    episode_id: int,
    model: Optional[EpisodeCloseModel] = None,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    with transaction(session):
        episode = close_episode(session, episode_id, status=(model.status if model else "closed"))
    return _success(serialize_episode(session, episode))


@app.post("/api/episodes/{episode_id}/pathways", tags=["episodes"])
def add_episode_pathway(
    episode_id: int,
    model: EpisodePathwayModel,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    with transaction(session):
        assign_pathway(session, episode_id, model.care_pathway_id)
    return _success(serialize_episode(session, load_episode(session, episode_id)))


@app.post("/api/episodes/{episode_id}/stage", tags=["episodes"])
def add_stage_event(
    episode_id: int,
    model: StageEventModel,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    with transaction(session):
        event = record_stage_event(session, episode_id, model.stage_code, user_id=caller.user_id)
    return _success({"episodeId": episode_id, "stageCode": event.stage_code, "at": isoformat(event.at)})


@app.post("/api/episodes/{episode_id}/provider", tags=["episodes"])
def change_provider(
    episode_id: int,
    model: ProviderModel,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    with transaction(session):
        episode = reassign_provider(session, episode_id, model.provider_id)
    return _success(serialize_episode(session, episode))


@app.post("/api/episodes/{episode_id}/blocks", tags=["episodes"])
def add_episode_block(
    episode_id: int,
    model: EpisodeBlockModel,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    with transaction(session):
        block = add_block(
            session, episode_id, model.key, note=model.note, expires_in_days=model.expires_in_days
        )
    return _success(
        {"id": block.id, "episodeId": episode_id, "key": block.key, "expiresAt": isoformat(block.expires_at)}
    )


# ---------------------------------------------------------------------------
# Episode steps and next step
# ---------------------------------------------------------------------------


@app.post("/api/episodes/{episode_id}/steps/generate", tags=["steps"])
def generate_episode_steps(
    episode_id: int,
    model: Optional[GenerateStepsModel] = None,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    with transaction(session):
        result = generate_steps(
            session, episode_id, episode_pathway_id=model.episode_pathway_id if model else None
        )
    return _success(
        {
            "generated": result.generated,
            "created": result.created,
            "steps": [serialize_step(step) for step in result.steps],
        }
    )


@app.get("/api/episodes/{episode_id}/steps", tags=["steps"])
def get_episode_steps(
    episode_id: int,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    load_episode(session, episode_id)
    return _success([serialize_step(step) for step in list_steps(session, episode_id)])


@app.patch("/api/episodes/{episode_id}/steps/reorder", tags=["steps"])
def reorder_episode_steps(
    episode_id: int,
    model: ReorderStepsModel,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    with transaction(session):
        steps = reorder_steps(session, episode_id, model.step_ids, user_id=caller.user_id)
    return _success([serialize_step(step) for step in steps])


@app.patch("/api/episodes/{episode_id}/steps/{step_id}", tags=["steps"])
def update_episode_step(
    episode_id: int,
    step_id: int,
    model: StepUpdateModel,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    with transaction(session):
        step = transition_step(session, episode_id, step_id, model.status, user_id=caller.user_id)
    return _success(serialize_step(step))


@app.delete("/api/episodes/{episode_id}/steps/{step_id}", tags=["steps"])
def delete_episode_step(
    episode_id: int,
    step_id: int,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    with transaction(session):
        steps = delete_step(session, episode_id, step_id, user_id=caller.user_id)
    return _success([serialize_step(step) for step in steps])


@app.get("/api/episodes/{episode_id}/next-step", tags=["steps"])
def get_next_step(
    episode_id: int,
    session: Session = Depends(get_session),
    catalog: StepCatalogCache = Depends(get_step_catalog),
    caller: Caller = Depends(require_clinician),
):
    return _success(next_required_step(session, episode_id, catalog=catalog).to_dict())


@app.get("/api/episodes/{episode_id}/step-projections", tags=["steps"])
def get_step_projections(
    episode_id: int,
    session: Session = Depends(get_session),
    catalog: StepCatalogCache = Depends(get_step_catalog),
    caller: Caller = Depends(require_clinician),
):
    result = all_pending_steps(session, episode_id, catalog=catalog)
    if isinstance(result, Blocked):
        return _success(result.to_dict())
    return _success({"status": "ready", "steps": [projection.to_dict() for projection in result]})


# ---------------------------------------------------------------------------
# Slot intents
# ---------------------------------------------------------------------------


@app.post("/api/episodes/{episode_id}/intents/project", tags=["intents"])
def project_episode_intents(
    episode_id: int,
    session: Session = Depends(get_session),
    catalog: StepCatalogCache = Depends(get_step_catalog),
    caller: Caller = Depends(require_clinician),
):
    with transaction(session):
        result = project_intents(session, episode_id, catalog=catalog)
    payload: Dict[str, Any] = {
        "intents": [serialize_intent(intent) for intent in result.intents],
        "expired": result.expired,
    }
    if result.blocked is not None:
        payload["blocked"] = result.blocked.to_dict()
    return _success(payload)


@app.get("/api/episodes/{episode_id}/intents", tags=["intents"])
def get_episode_intents(
    episode_id: int,
    state: Optional[str] = None,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    load_episode(session, episode_id)
    return _success([serialize_intent(intent) for intent in list_intents(session, episode_id, state=state)])


@app.post("/api/slot-intents/{intent_id}/convert", tags=["intents"])
def convert_slot_intent(
    intent_id: int,
    model: Optional[ConvertIntentModel] = None,
    session: Session = Depends(get_session),
    assessor: RiskAssessor = Depends(get_risk_assessor),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
    caller: Caller = Depends(require_clinician),
):
    model = model or ConvertIntentModel()
    with transaction(session):
        result = convert_intent(
            session,
            intent_id,
            caller,
            time_slot_id=model.time_slot_id,
            requires_precommit=model.requires_precommit,
            risk_assessor=assessor,
        )
    payload = serialize_appointment(result.appointment)
    notifier.dispatch(APPOINTMENT_BOOKED, payload)
    return _success(
        {
            "appointment": payload,
            "intentId": result.intent.id,
            "overrideAuditId": result.override_audit_id,
        }
    )


# ---------------------------------------------------------------------------
# Time slots
# ---------------------------------------------------------------------------


@app.post("/api/time-slots", tags=["slots"])
def create_time_slot(
    model: TimeSlotModel,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    provider_id = model.provider_id or caller.user_id
    if provider_id != caller.user_id and not caller.is_admin:
        raise HTTPException(status_code=403, detail="Insufficient privileges")
    try:
        start_time = parse_iso(model.start_time)
    except ValueError:
        raise ValidationError("startTime must be an ISO 8601 timestamp", code="INVALID_START_TIME")
    with transaction(session):
        slot = create_slot(
            session,
            provider_id=provider_id,
            start_time=start_time,
            duration_minutes=model.duration_minutes,
            slot_purpose=model.slot_purpose,
        )
    return _success(serialize_slot(slot))


@app.post("/api/time-slots/{slot_id}/block", tags=["slots"])
def block_time_slot(
    slot_id: int,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    with transaction(session):
        slot = block_slot(session, slot_id)
    return _success(serialize_slot(slot))


@app.post("/api/time-slots/{slot_id}/unblock", tags=["slots"])
def unblock_time_slot(
    slot_id: int,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    with transaction(session):
        slot = unblock_slot(session, slot_id)
    return _success(serialize_slot(slot))


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------


@app.post("/api/appointments", tags=["appointments"])
def create_appointment(
    model: AppointmentModel,
    session: Session = Depends(get_session),
    assessor: RiskAssessor = Depends(get_risk_assessor),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
    caller: Caller = Depends(require_clinician),
):
    with transaction(session):
        result = book_appointment(
            session,
            caller,
            patient_id=model.patient_id,
            time_slot_id=model.time_slot_id,
            episode_id=model.episode_id,
            pool=model.pool,
            duration_minutes=model.duration_minutes,
            step_code=model.step_code,
            step_seq=model.step_seq,
            override_reason=model.override_reason,
            risk_assessor=assessor,
        )
    payload = serialize_appointment(result.appointment)
    notifier.dispatch(APPOINTMENT_BOOKED, payload)
    return _success({"appointment": payload, "overrideAuditId": result.override_audit_id})


@app.post("/api/appointments/pending", tags=["appointments"])
def create_pending(
    model: PendingAppointmentModel,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_admin),
):
    with transaction(session):
        appointment = create_pending_appointment(
            session,
            caller,
            patient_id=model.patient_id,
            time_slot_id=model.time_slot_id,
            alternative_time_slot_ids=model.alternative_time_slot_ids,
            episode_id=model.episode_id,
            pool=model.pool,
            duration_minutes=model.duration_minutes,
        )
    payload = serialize_appointment(appointment)
    payload["approvalToken"] = appointment.approval_token
    return _success(payload)


@app.post("/api/appointments/{appointment_id}/cancel", tags=["appointments"])
def cancel_appointment_route(
    appointment_id: int,
    model: Optional[CancelModel] = None,
    session: Session = Depends(get_session),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
    caller: Caller = Depends(require_clinician),
):
    by = model.by if model else "doctor"
    with transaction(session):
        appointment = cancel_appointment(session, appointment_id, by=by, user_id=caller.user_id)
    payload = serialize_appointment(appointment)
    notifier.dispatch(APPOINTMENT_CANCELLED, payload)
    return _success(payload)


@app.post("/api/appointments/{appointment_id}/outcome", tags=["appointments"])
def record_appointment_outcome(
    appointment_id: int,
    model: OutcomeModel,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    with transaction(session):
        appointment = record_outcome(
            session, appointment_id, model.outcome, user_id=caller.user_id, notes=model.notes
        )
    return _success(serialize_appointment(appointment))


@app.post("/api/appointments/{appointment_id}/approve", tags=["appointments"])
def approve_appointment_route(
    appointment_id: int,
    model: ApprovalModel,
    session: Session = Depends(get_session),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    with transaction(session):
        appointment = approve_appointment(session, appointment_id, model.token)
    payload = serialize_appointment(appointment)
    notifier.dispatch(APPOINTMENT_APPROVED, payload)
    return _success(payload)


@app.post("/api/appointments/{appointment_id}/reject", tags=["appointments"])
def reject_appointment_route(
    appointment_id: int,
    model: ApprovalModel,
    session: Session = Depends(get_session),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    with transaction(session):
        result = reject_appointment(session, appointment_id, model.token)
    payload = serialize_appointment(result.appointment)
    notifier.dispatch(ALTERNATIVE_OFFERED if result.has_more_alternatives else APPOINTMENT_REJECTED, payload)
    return _success({"appointment": payload, "hasMoreAlternatives": result.has_more_alternatives})


# ---------------------------------------------------------------------------
# Forecast and advisory
# ---------------------------------------------------------------------------


@app.post("/api/episodes/forecast/batch", tags=["forecast"])
def post_forecast_batch(
    model: ForecastBatchModel,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    with transaction(session):
        payload = forecast_batch(session, model.episode_ids)
    return _success(payload)


@app.get("/api/episodes/{episode_id}/forecast", tags=["forecast"])
def get_episode_forecast(
    episode_id: int,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    with transaction(session):
        payload = forecast_batch(session, [episode_id])
    forecast = payload["forecasts"].get(str(episode_id))
    if forecast is None:
        raise NotFoundError("Episode not found", code="EPISODE_NOT_FOUND")
    return _success({"forecast": forecast, "meta": payload["meta"]})


@app.get("/api/doctors/workload", tags=["advisory"])
def get_doctor_workload(
    horizon_days: int = Query(default=7, alias="horizonDays"),
    include_details: bool = Query(default=True, alias="includeDetails"),
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    horizon = clamp_horizon(horizon_days)
    workloads = provider_workload(session, horizon_days=horizon)
    return _success(
        {
            "horizonDays": horizon,
            "generatedAt": isoformat(utc_now()),
            "doctors": [entry.to_dict(include_details) for entry in workloads],
        }
    )


@app.get("/api/recommendations/intake", tags=["advisory"])
def get_intake_recommendation(
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    return _success(intake_recommendation(session))


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------


@app.get("/api/episodes/{episode_id}/scheduling-integrity", tags=["integrity"])
def get_scheduling_integrity(
    episode_id: int,
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_clinician),
):
    return _success(scheduling_integrity(session, episode_id, now=utc_now()))


@app.get("/api/scheduling/tripwires", tags=["integrity"])
def get_tripwires(
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_admin),
):
    return _success(collect_tripwires(session, now=utc_now()))


@app.post("/api/scheduling/expire-holds", tags=["integrity"])
def post_expire_holds(
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_admin),
):
    with transaction(session):
        expired = expire_holds(session)
    return _success({"expired": len(expired), "appointmentIds": expired})


__all__ = ["app", "get_step_catalog", "get_risk_assessor", "get_notification_dispatcher"]
