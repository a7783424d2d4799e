"""
Procurement Workflow Hub - Workflows Router

PR approval transitions and PO creation. Workflow errors map to HTTP status
codes; the body always carries {code, message, details}.
"""

from fastapi import APIRouter, HTTPException, Query
from typing import Optional, List
from pydantic import BaseModel
import logging

from services.workflow_config import Actor, Role
from services.workflow_engine import stage_of
from services.workflow_errors import (
    WorkflowError,
    ValidationError,
    Forbidden,
    EntityNotFoundError,
    StaleStateError,
    PartialFailure,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflow", tags=["workflow"])

# Engine and company config provider - set by main app
workflow_engine = None
config_provider = None

def set_dependencies(engine, provider):
    global workflow_engine, config_provider
    workflow_engine = engine
    config_provider = provider


ERROR_STATUS = {
    ValidationError: 400,
    Forbidden: 403,
    EntityNotFoundError: 404,
    StaleStateError: 409,
    PartialFailure: 503,
}


def to_http_error(error: WorkflowError) -> HTTPException:
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(error, cls)), 400)
    return HTTPException(status_code=status, detail=error.to_dict())


# ==================== MODELS ====================

class ActorModel(BaseModel):
    user_id: str
    role: Role
    user_name: Optional[str] = None
    email: Optional[str] = None

    def to_actor(self) -> Actor:
        return Actor(user_id=self.user_id, role=self.role, user_name=self.user_name, email=self.email)


class SubmitRequest(BaseModel):
    actor: ActorModel


class ApproveRequest(BaseModel):
    actor: ActorModel
    stage: str
    expected_version: Optional[int] = None


class RejectRequest(BaseModel):
    actor: ActorModel
    reason_code: str
    remarks: Optional[str] = None


class CancelRequest(BaseModel):
    actor: ActorModel
    remarks: Optional[str] = None


class CreatePORequest(BaseModel):
    actor: ActorModel
    company_id: str
    pr_ids: List[str]
    po_number: str
    po_date: str


# ==================== HELPERS ====================

async def _config_for_company(company_id: str):
    config = await config_provider.get(company_id)
    if config is None:
        raise HTTPException(status_code=404, detail={"code": "WF_NOT_FOUND", "message": f"Company {company_id} not found"})
    return config


async def _config_for_pr(pr_id: str):
    try:
        pr = await workflow_engine.find_pr(pr_id)
    except WorkflowError as e:
        raise to_http_error(e)
    return pr, await _config_for_company(str(pr.get("companyId")))


# ==================== PR TRANSITIONS ====================

@router.post("/prs/{pr_id}/submit")
async def submit_pr(pr_id: str, request: SubmitRequest):
    """Submit a draft or rejected PR for approval."""
    _, config = await _config_for_pr(pr_id)
    try:
        pr = await workflow_engine.submit(pr_id, request.actor.to_actor(), config)
    except WorkflowError as e:
        raise to_http_error(e)
    return {"pr": pr, "stage": stage_of(pr, config)}


@router.post("/prs/{pr_id}/approve")
async def approve_pr(pr_id: str, request: ApproveRequest):
    """Approve a PR at its current stage."""
    _, config = await _config_for_pr(pr_id)
    try:
        pr = await workflow_engine.approve_at_stage(
            pr_id, request.stage, request.actor.to_actor(), config,
            expected_version=request.expected_version
        )
    except WorkflowError as e:
        raise to_http_error(e)
    return {"pr": pr, "stage": stage_of(pr, config)}


@router.post("/prs/{pr_id}/reject")
async def reject_pr(pr_id: str, request: RejectRequest):
    """Reject a PR with a catalogued reason code."""
    _, config = await _config_for_pr(pr_id)
    try:
        pr = await workflow_engine.reject(
            pr_id, request.actor.to_actor(), request.reason_code, config, remarks=request.remarks
        )
    except WorkflowError as e:
        raise to_http_error(e)
    return {"pr": pr, "rejection": pr.get("rejection")}


@router.post("/prs/{pr_id}/cancel")
async def cancel_pr(pr_id: str, request: CancelRequest):
    _, config = await _config_for_pr(pr_id)
    try:
        pr = await workflow_engine.cancel(pr_id, request.actor.to_actor(), config, remarks=request.remarks)
    except WorkflowError as e:
        raise to_http_error(e)
    return {"pr": pr}


@router.get("/prs/{pr_id}/actions")
async def get_pr_actions(pr_id: str, user_id: str = Query(...), role: Role = Query(...)):
    """Actions the given user may take on the PR."""
    pr, config = await _config_for_pr(pr_id)
    actor = Actor(user_id=user_id, role=role)
    return {
        "pr_id": pr_id,
        "stage": stage_of(pr, config),
        "version": pr.get("version", 0),
        "actions": workflow_engine.available_actions(pr, actor, config),
    }


# ==================== PURCHASE ORDERS ====================

@router.post("/purchase-orders")
async def create_purchase_order(request: CreatePORequest):
    """Create a PO from approved PRs."""
    config = await _config_for_company(request.company_id)
    try:
        result = await workflow_engine.create_po_from_prs(
            request.pr_ids, request.po_number, request.po_date, request.actor.to_actor(), config
        )
    except WorkflowError as e:
        raise to_http_error(e)
    return result
