"""
dependencies.py — Shared FastAPI Dependencies

The service instances are built once in main.py's lifespan and stored on
app.state; routers pull them out through these functions.

Called by: routers/quotations.py
Depends on: services/workflow_service.py, services/reply_correlator.py
"""

from fastapi import HTTPException, Request

from .services.reply_correlator import ReplyCorrelator
from .services.workflow_service import WorkflowService


def get_workflow(request: Request) -> WorkflowService:
    workflow = getattr(request.app.state, "workflow", None)
    if workflow is None:
        raise HTTPException(503, "Workflow service not initialised")
    return workflow


def get_correlator(request: Request) -> ReplyCorrelator:
    correlator = getattr(request.app.state, "correlator", None)
    if correlator is None:
        raise HTTPException(503, "Reply correlator not initialised")
    return correlator
