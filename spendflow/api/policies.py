"""Approval and payment policy administration APIs (versioned on every save)."""
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import Field

from spendflow.api.deps import get_policy_catalog
from spendflow.models.base import SFBaseModel
from spendflow.models.policies import ApprovalPolicy, PolicyKind
from spendflow.services.errors import ValidationError
from spendflow.services.policy_catalog import PolicyCatalog


router = APIRouter(prefix="/api/policies", tags=["policies"])


class UpsertPolicyBody(SFBaseModel):
    updated_by: str = Field(default="system", min_length=1)
    policy: ApprovalPolicy


class DuplicatePolicyBody(SFBaseModel):
    new_id: str = Field(min_length=1)
    updated_by: str = Field(default="system", min_length=1)


class ReorderPoliciesBody(SFBaseModel):
    policy_ids: List[str] = Field(min_length=1)
    updated_by: str = Field(default="system", min_length=1)


class StatusChangeBody(SFBaseModel):
    updated_by: str = Field(default="system", min_length=1)


def _dump(policy: ApprovalPolicy):
    return policy.model_dump(mode="json")


@router.get("")
def list_policies(
    kind: Optional[PolicyKind] = Query(default=None),
    include_inactive: bool = Query(default=True),
    catalog: PolicyCatalog = Depends(get_policy_catalog),
):
    return {"policies": [_dump(p) for p in catalog.list(kind=kind, include_inactive=include_inactive)]}


@router.get("/resolve")
def resolve_policy(
    amount: float = Query(..., gt=0),
    category_id: Optional[str] = Query(default=None),
    cost_center_id: Optional[str] = Query(default=None),
    kind: PolicyKind = Query(default=PolicyKind.APPROVAL),
    catalog: PolicyCatalog = Depends(get_policy_catalog),
):
    policy = catalog.resolve(amount, category_id, cost_center_id, kind)
    candidates = catalog.candidates(amount, category_id, cost_center_id, kind)
    return {"policy": _dump(policy), "candidates": [p.id for p in candidates]}


@router.post("/reorder")
def reorder_policies(
    body: ReorderPoliciesBody,
    catalog: PolicyCatalog = Depends(get_policy_catalog),
):
    return {"policies": [_dump(p) for p in catalog.reorder(body.policy_ids, updated_by=body.updated_by)]}


@router.get("/{policy_id}")
def get_policy(policy_id: str, catalog: PolicyCatalog = Depends(get_policy_catalog)):
    return {"policy": _dump(catalog.get(policy_id))}


@router.put("/{policy_id}")
def upsert_policy(
    policy_id: str,
    body: UpsertPolicyBody,
    catalog: PolicyCatalog = Depends(get_policy_catalog),
):
    if body.policy.id != policy_id:
        raise ValidationError(
            "Policy id in the path and body differ",
            context={"path_id": policy_id, "body_id": body.policy.id},
        )
    return {"policy": _dump(catalog.upsert(body.policy, updated_by=body.updated_by))}


@router.post("/{policy_id}/activate")
def activate_policy(
    policy_id: str,
    body: Optional[StatusChangeBody] = None,
    catalog: PolicyCatalog = Depends(get_policy_catalog),
):
    updated_by = body.updated_by if body else "system"
    return {"policy": _dump(catalog.activate(policy_id, updated_by=updated_by))}


@router.post("/{policy_id}/deactivate")
def deactivate_policy(
    policy_id: str,
    body: Optional[StatusChangeBody] = None,
    catalog: PolicyCatalog = Depends(get_policy_catalog),
):
    updated_by = body.updated_by if body else "system"
    return {"policy": _dump(catalog.deactivate(policy_id, updated_by=updated_by))}


@router.post("/{policy_id}/duplicate", status_code=201)
def duplicate_policy(
    policy_id: str,
    body: DuplicatePolicyBody,
    catalog: PolicyCatalog = Depends(get_policy_catalog),
):
    return {"policy": _dump(catalog.duplicate(policy_id, body.new_id, updated_by=body.updated_by))}
