"""
quotations.py — Quotation workflow router

Create drafts, dispatch events, run the send / analyze / confirm / deliver
flows, and trigger a manual reply poll.

Business Rules:
- Rejected events (unknown, wrong state, guard failure) → 400 with reason
- An event for a quotation with an operation in flight → 409
- A flow whose remote effect failed returns 200 with valid=false and the
  quotation as committed (usually in `error`)
- Unknown quotation id → 404

Called by: main.py (router mount)
Depends on: services/workflow_service.py, services/reply_correlator.py
"""

from fastapi import APIRouter, Depends

from ..dependencies import get_correlator, get_workflow
from ..exceptions import QuoteflowError, ValidationError
from ..schemas.api import CancelIn, DeliverIn, EventIn, QuotationCreate, TransitionOut
from ..schemas.quotation import QuotationContext, TransitionResult
from ..services.reply_correlator import ReplyCorrelator
from ..services.status_normalizer import status_label
from ..services.workflow_service import IN_FLIGHT_REASON, WorkflowService

router = APIRouter(tags=["quotations"])


def _serialize(context: QuotationContext) -> dict:
    data = context.model_dump(mode="json")
    data["status_label"] = status_label(context.state)
    return data


def _respond(result: TransitionResult) -> TransitionOut:
    if not result.valid and result.context is None:
        if result.reason == IN_FLIGHT_REASON:
            raise QuoteflowError(result.reason, 409)
        raise ValidationError(result.reason or "Invalid event")
    return TransitionOut(
        valid=result.valid,
        reason=result.reason,
        quotation=_serialize(result.context) if result.context else None,
    )


@router.post("/api/quotations", status_code=201, response_model=TransitionOut)
async def create_quotation(payload: QuotationCreate, workflow: WorkflowService = Depends(get_workflow)):
    result = workflow.create_draft(
        payload.supplier.model_dump(),
        [item.model_dump() for item in payload.items],
    )
    return _respond(result)


@router.get("/api/quotations")
async def list_quotations(state: str | None = None, workflow: WorkflowService = Depends(get_workflow)):
    return [_serialize(ctx) for ctx in workflow.list(state)]


@router.get("/api/quotations/stuck")
async def list_stuck(workflow: WorkflowService = Depends(get_workflow)):
    return [_serialize(ctx) for ctx in workflow.list_stuck()]


@router.get("/api/quotations/{quotation_id}")
async def get_quotation(quotation_id: str, workflow: WorkflowService = Depends(get_workflow)):
    return _serialize(workflow.get(quotation_id))


@router.get("/api/quotations/{quotation_id}/history")
async def get_history(quotation_id: str, workflow: WorkflowService = Depends(get_workflow)):
    return [entry.model_dump(mode="json") for entry in workflow.history(quotation_id)]


@router.get("/api/quotations/{quotation_id}/events")
async def get_events(quotation_id: str, workflow: WorkflowService = Depends(get_workflow)):
    return {"events": workflow.available_events(quotation_id)}


@router.post("/api/quotations/{quotation_id}/events", response_model=TransitionOut)
async def dispatch_event(quotation_id: str, payload: EventIn,
                         workflow: WorkflowService = Depends(get_workflow)):
    return _respond(workflow.dispatch(quotation_id, payload.type, payload.payload))


@router.post("/api/quotations/{quotation_id}/send", response_model=TransitionOut)
async def send_quotation(quotation_id: str, workflow: WorkflowService = Depends(get_workflow)):
    return _respond(await workflow.send(quotation_id))


@router.post("/api/quotations/{quotation_id}/analyze", response_model=TransitionOut)
async def analyze_quotation(quotation_id: str, workflow: WorkflowService = Depends(get_workflow)):
    return _respond(await workflow.analyze(quotation_id))


@router.post("/api/quotations/{quotation_id}/confirm", response_model=TransitionOut)
async def confirm_quotation(quotation_id: str, workflow: WorkflowService = Depends(get_workflow)):
    return _respond(await workflow.confirm(quotation_id))


@router.post("/api/quotations/{quotation_id}/deliver", response_model=TransitionOut)
async def deliver_quotation(quotation_id: str, payload: DeliverIn | None = None,
                            workflow: WorkflowService = Depends(get_workflow)):
    payload = payload or DeliverIn()
    current = workflow.get(quotation_id)
    if current.state.value == "delivering":
        result = await workflow.confirm_delivery(quotation_id, payload.invoice_number, payload.notes)
    else:
        result = await workflow.deliver(quotation_id, payload.invoice_number, payload.notes)
    return _respond(result)


@router.post("/api/quotations/{quotation_id}/cancel", response_model=TransitionOut)
async def cancel_quotation(quotation_id: str, payload: CancelIn | None = None,
                           workflow: WorkflowService = Depends(get_workflow)):
    payload = payload or CancelIn()
    return _respond(workflow.cancel(quotation_id, payload.reason, payload.cancelled_by))


@router.post("/api/quotations/{quotation_id}/retry", response_model=TransitionOut)
async def retry_quotation(quotation_id: str, workflow: WorkflowService = Depends(get_workflow)):
    return _respond(workflow.retry(quotation_id))


@router.post("/api/quotations/{quotation_id}/reset", response_model=TransitionOut)
async def reset_quotation(quotation_id: str, workflow: WorkflowService = Depends(get_workflow)):
    return _respond(workflow.reset(quotation_id))


@router.post("/api/replies/poll")
async def poll_replies(correlator: ReplyCorrelator = Depends(get_correlator)):
    return await correlator.poll_once()
