"""Public experiment endpoints: assignment, events, winner and realtime updates."""
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from typing import Any, Dict, Optional
import asyncio
import json

from splitlab.api.deps import (
    get_assignment_engine,
    get_event_ingestion,
    get_org_id,
    get_winner_evaluator,
    rate_limit,
)
from splitlab.middleware.logging import get_logger
from splitlab.schemas.assignment import AssignmentRequest, AssignmentResponse, WinnerInfo
from splitlab.schemas.events import EventBatchRequest, EventBatchResponse
from splitlab.schemas.experiment import ExperimentDefinition
from splitlab.schemas.winner import WinnerResponse
from splitlab.services.assignments import AssignmentEngine
from splitlab.services.ingestion import EventIngestion
from splitlab.services.notifications import QueueSubscriber
from splitlab.services.winner import WinnerEvaluator

router = APIRouter()
logger = get_logger()


def _assignment_response(
    code: str,
    org_id: Optional[str],
    subject_id: Optional[str],
    context: Dict[str, Any],
    engine: AssignmentEngine,
    evaluator: WinnerEvaluator
) -> AssignmentResponse:
    experiment, assignment = engine.get_or_create_assignment(org_id, code, subject_id, context)

    variant = ExperimentDefinition.from_experiment(experiment).find_variant(assignment["variant_key"])
    snapshot = evaluator.get_winner_snapshot(org_id, code)

    logger.info(
        "experiment_variant_assigned",
        experiment_code=experiment.code,
        subject_key=assignment["subject_key"],
        variant=assignment["variant_key"]
    )

    return AssignmentResponse(
        experiment_code=experiment.code,
        variant_key=assignment["variant_key"],
        assigned_at=assignment["assigned_at"],
        config_slug=(variant.config_slug or None) if variant else None,
        winner=WinnerInfo(
            status=snapshot["status"],
            winner_variant_key=snapshot["winner_variant_key"],
            decided_at=snapshot["winner_decided_at"],
            reason=snapshot["winner_reason"]
        )
    )


@router.get(
    "/experiments/{code}/assignment",
    response_model=AssignmentResponse,
    dependencies=[Depends(rate_limit("assignment", "assignment_rate_limit"))]
)
def get_assignment(
    code: str,
    subject_id: Optional[str] = Query(None, alias="subjectId"),
    org_id: Optional[str] = Depends(get_org_id),
    engine: AssignmentEngine = Depends(get_assignment_engine),
    evaluator: WinnerEvaluator = Depends(get_winner_evaluator)
):
    """
    Get (or create) the subject's sticky variant.

    Unknown experiments return 404, missing subjectId 400, and a first
    request against a draft/paused experiment 409.
    """
    return _assignment_response(code, org_id, subject_id, {}, engine, evaluator)


@router.post(
    "/experiments/{code}/assignment",
    response_model=AssignmentResponse,
    dependencies=[Depends(rate_limit("assignment", "assignment_rate_limit"))]
)
def post_assignment(
    code: str,
    assignment_request: AssignmentRequest,
    org_id: Optional[str] = Depends(get_org_id),
    engine: AssignmentEngine = Depends(get_assignment_engine),
    evaluator: WinnerEvaluator = Depends(get_winner_evaluator)
):
    """Same as GET, but lets the caller store a context blob with a new assignment."""
    return _assignment_response(
        code,
        org_id or assignment_request.orgId,
        assignment_request.subjectId,
        assignment_request.context,
        engine,
        evaluator
    )


@router.post(
    "/experiments/{code}/events",
    status_code=201,
    response_model=EventBatchResponse,
    dependencies=[Depends(rate_limit("events", "events_rate_limit"))]
)
def post_events(
    code: str,
    event_request: EventBatchRequest,
    subject_id: Optional[str] = Query(None, alias="subjectId"),
    org_id: Optional[str] = Depends(get_org_id),
    ingestion: EventIngestion = Depends(get_event_ingestion)
):
    """
    Record metric events for a subject.

    Accepts ``{"subjectId": ..., "events": [...]}`` or a single event object.
    """
    result = ingestion.ingest_events(
        org_id or event_request.orgId,
        code,
        subject_id or event_request.subjectId,
        event_request.event_list()
    )
    return EventBatchResponse(**result)


@router.get(
    "/experiments/{code}/winner",
    response_model=WinnerResponse,
    dependencies=[Depends(rate_limit("winner", "winner_rate_limit"))]
)
def get_winner(
    code: str,
    org_id: Optional[str] = Depends(get_org_id),
    evaluator: WinnerEvaluator = Depends(get_winner_evaluator)
):
    """Current winner snapshot (cached for a few seconds)."""
    snapshot = evaluator.get_winner_snapshot(org_id, code)
    return WinnerResponse(
        status=snapshot["status"],
        winner_variant_key=snapshot["winner_variant_key"],
        decided_at=snapshot["winner_decided_at"],
        reason=snapshot["winner_reason"]
    )


async def _pump(websocket: WebSocket, subscriber: QueueSubscriber):
    """Forward queued messages to the socket until it closes."""
    try:
        while True:
            message = await subscriber.receive()
            await websocket.send_json(message)
    except (WebSocketDisconnect, RuntimeError):
        return


@router.websocket("/experiments/ws")
async def experiments_ws(websocket: WebSocket, experimentCode: Optional[str] = None):
    """
    Realtime winner notifications.

    Client messages: {"type": "subscribe"|"unsubscribe", "experimentCode": ...}.
    Server messages: hello, subscribed, unsubscribed, winner.
    """
    broadcaster = websocket.app.state.broadcaster
    await websocket.accept()

    subscriber = QueueSubscriber(asyncio.get_running_loop())
    pump = asyncio.create_task(_pump(websocket, subscriber))
    subscriber.send({"type": "hello"})

    initial = (experimentCode or "").strip()
    if initial and broadcaster.subscribe(initial, subscriber):
        subscriber.send({"type": "subscribed", "experimentCode": initial})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                continue
            if not isinstance(message, dict):
                continue

            message_type = str(message.get("type") or "").strip()
            code = str(message.get("experimentCode") or "").strip()
            if not code:
                continue

            if message_type == "subscribe":
                broadcaster.subscribe(code, subscriber)
                subscriber.send({"type": "subscribed", "experimentCode": code})
            elif message_type == "unsubscribe":
                broadcaster.unsubscribe(code, subscriber)
                subscriber.send({"type": "unsubscribed", "experimentCode": code})

    except WebSocketDisconnect:
        logger.info("experiments_ws_disconnected")

    finally:
        broadcaster.unsubscribe_all(subscriber)
        pump.cancel()
