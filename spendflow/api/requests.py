"""Spend request APIs: submission, decisions, cancellation, payment and queries."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import Field

from spendflow.api.deps import get_database, get_orchestrator
from spendflow.core.database import SpendflowDB
from spendflow.models.base import SFBaseModel
from spendflow.models.requests import RequestStatus, SpendRequestCreate
from spendflow.services.approval_chains import Decision, Delegation
from spendflow.services.orchestrator import RequestOrchestrator


router = APIRouter(prefix="/api", tags=["requests"])


class DecisionBody(SFBaseModel):
    approver_id: str = Field(min_length=1)
    decision: Decision
    comment: Optional[str] = None


class CancelBody(SFBaseModel):
    actor: str = Field(min_length=1)
    reason: Optional[str] = None


class PayBody(SFBaseModel):
    actor: str = Field(min_length=1)
    final_amount: Optional[float] = Field(default=None, gt=0)
    reference: Optional[str] = None


class DelegationBody(SFBaseModel):
    from_user_id: str = Field(min_length=1)
    to_user_id: str = Field(min_length=1)
    until: Optional[datetime] = None
    starts_at: Optional[datetime] = None
    max_amount: Optional[float] = Field(default=None, gt=0)


def _request_payload(request) -> Dict[str, Any]:
    return request.model_dump(mode="json")


@router.post("/requests", status_code=201)
def submit_request(
    body: SpendRequestCreate,
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    request = orchestrator.submit(body)
    return {"request": _request_payload(request)}


@router.get("/requests")
def list_requests(
    status: Optional[RequestStatus] = Query(default=None),
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    return {"requests": [_request_payload(r) for r in orchestrator.list_requests(status)]}


@router.get("/requests/{request_id}")
def get_request(
    request_id: str,
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    return {"request": _request_payload(orchestrator.get_request(request_id))}


@router.get("/requests/{request_id}/chain")
def get_chain_state(
    request_id: str,
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.get_chain_state(request_id)


@router.post("/requests/{request_id}/decisions")
def decide(
    request_id: str,
    body: DecisionBody,
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    result = orchestrator.decide(request_id, body.approver_id, body.decision, body.comment)
    return {
        "result": result.to_dict(),
        "request": _request_payload(orchestrator.get_request(request_id)),
    }


@router.post("/requests/{request_id}/cancel")
def cancel_request(
    request_id: str,
    body: CancelBody,
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    request = orchestrator.cancel_request(request_id, body.actor, body.reason)
    return {"request": _request_payload(request)}


@router.post("/requests/{request_id}/pay")
def mark_paid(
    request_id: str,
    body: PayBody,
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    request, settlement = orchestrator.mark_paid(
        request_id, body.actor, final_amount=body.final_amount, reference=body.reference,
    )
    return {
        "request": _request_payload(request),
        "settlement": settlement.to_dict() if settlement else None,
    }


@router.get("/requests/{request_id}/audit")
def list_audit_events(
    request_id: str,
    limit: int = Query(default=200, ge=1, le=1000),
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
    db: SpendflowDB = Depends(get_database),
):
    orchestrator.get_request(request_id)
    events = db.list_audit_events(entity_id=request_id, limit=limit)
    return {"request_id": request_id, "count": len(events), "events": events}


@router.get("/approvers/{user_id}/pending")
def list_pending_for_approver(
    user_id: str,
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    pending = orchestrator.list_pending_for_approver(user_id)
    return {"user_id": user_id, "count": len(pending), "requests": [_request_payload(r) for r in pending]}


@router.get("/summary")
def approval_summary(orchestrator: RequestOrchestrator = Depends(get_orchestrator)):
    return orchestrator.approval_summary()


@router.get("/delegations")
def list_delegations(orchestrator: RequestOrchestrator = Depends(get_orchestrator)):
    return {"delegations": [d.to_dict() for d in orchestrator.delegations.list()]}


@router.put("/delegations")
def set_delegation(
    body: DelegationBody,
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    delegation = Delegation(**body.model_dump())
    orchestrator.delegations.set_delegation(delegation)
    return {"delegation": delegation.to_dict()}


@router.delete("/delegations/{from_user_id}")
def remove_delegation(
    from_user_id: str,
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    orchestrator.delegations.remove_delegation(from_user_id)
    return {"removed": from_user_id}
