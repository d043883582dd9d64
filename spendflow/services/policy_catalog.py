"""
Approval Policy Catalog

Holds the approval and payment policies and picks the one that governs a
request. Resolution order:
- priority ascending (lower is evaluated first)
- then scope specificity (category + cost center > one of them > wildcard)
- then policy id ascending

Policies are frozen pydantic values. Saving a policy stores a new version;
chains already in flight keep the snapshot they started from.
"""

import logging
import threading
from typing import Dict, Iterable, List, Optional

from spendflow.core.database import SpendflowDB
from spendflow.models.policies import ApprovalPolicy, PolicyKind, PolicyStatus
from spendflow.services.errors import NotFoundError, PolicyNotFoundError, ValidationError

logger = logging.getLogger(__name__)


def ranking_key(policy: ApprovalPolicy):
    return (policy.priority, -policy.specificity, policy.id)


class PolicyCatalog:
    """In-memory policy store with optional write-through to SpendflowDB."""

    def __init__(self, db: Optional[SpendflowDB] = None, policies: Optional[Iterable[ApprovalPolicy]] = None):
        self.db = db
        self._lock = threading.RLock()
        self._policies: Dict[str, ApprovalPolicy] = {}
        if db is not None:
            for document in db.list_policies():
                policy = ApprovalPolicy.model_validate(document)
                self._policies[policy.id] = policy
            if self._policies:
                logger.info(f"Loaded {len(self._policies)} approval policies from storage")
        for policy in policies or []:
            self.upsert(policy)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def candidates(
        self,
        amount: float,
        category_id: Optional[str],
        cost_center_id: Optional[str],
        kind: PolicyKind = PolicyKind.APPROVAL,
    ) -> List[ApprovalPolicy]:
        """Every active policy matching the request, best first."""
        with self._lock:
            matching = [
                p for p in self._policies.values()
                if p.is_active and p.kind == kind and p.matches(amount, category_id, cost_center_id)
            ]
        return sorted(matching, key=ranking_key)

    def resolve(
        self,
        amount: float,
        category_id: Optional[str],
        cost_center_id: Optional[str],
        kind: PolicyKind = PolicyKind.APPROVAL,
    ) -> ApprovalPolicy:
        ranked = self.candidates(amount, category_id, cost_center_id, kind)
        if not ranked:
            raise PolicyNotFoundError(amount, category_id, cost_center_id, kind=kind.value)
        chosen = ranked[0]
        if len(ranked) > 1:
            logger.debug(
                f"Resolved {kind.value} policy {chosen.id} over {[p.id for p in ranked[1:]]} "
                f"for amount={amount} category={category_id} cost_center={cost_center_id}"
            )
        return chosen

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def get(self, policy_id: str) -> ApprovalPolicy:
        with self._lock:
            policy = self._policies.get(policy_id)
        if policy is None:
            raise NotFoundError("Approval policy", policy_id)
        return policy

    def list(self, kind: Optional[PolicyKind] = None, include_inactive: bool = True) -> List[ApprovalPolicy]:
        with self._lock:
            policies = list(self._policies.values())
        if kind is not None:
            policies = [p for p in policies if p.kind == kind]
        if not include_inactive:
            policies = [p for p in policies if p.is_active]
        return sorted(policies, key=ranking_key)

    def upsert(self, policy: ApprovalPolicy, updated_by: str = "system") -> ApprovalPolicy:
        """Save a policy as a new version."""
        with self._lock:
            existing = self._policies.get(policy.id)
            if self.db is not None:
                version = self.db.upsert_policy(policy.model_dump(mode="json"), updated_by=updated_by)
            else:
                version = (existing.version if existing else 0) + 1
            saved = policy.model_copy(update={"version": version})
            self._policies[saved.id] = saved
        logger.info(f"Saved approval policy {saved.id} v{version} ({saved.kind.value}, priority {saved.priority})")
        return saved

    def _set_status(self, policy_id: str, status: PolicyStatus, updated_by: str) -> ApprovalPolicy:
        policy = self.get(policy_id)
        if policy.status == status:
            return policy
        return self.upsert(policy.model_copy(update={"status": status}), updated_by=updated_by)

    def activate(self, policy_id: str, updated_by: str = "system") -> ApprovalPolicy:
        return self._set_status(policy_id, PolicyStatus.ACTIVE, updated_by)

    def deactivate(self, policy_id: str, updated_by: str = "system") -> ApprovalPolicy:
        return self._set_status(policy_id, PolicyStatus.INACTIVE, updated_by)

    def duplicate(self, policy_id: str, new_id: str, updated_by: str = "system") -> ApprovalPolicy:
        """Copy a policy. The copy starts inactive, one priority step below."""
        source = self.get(policy_id)
        with self._lock:
            if new_id in self._policies:
                raise ValidationError(f"Policy '{new_id}' already exists", context={"policy_id": new_id})
        copy = source.model_copy(update={
            "id": new_id,
            "name": f"{source.name} (copy)" if source.name else new_id,
            "priority": source.priority + 1,
            "status": PolicyStatus.INACTIVE,
            "version": 0,
        })
        return self.upsert(copy, updated_by=updated_by)

    def reorder(self, policy_ids: List[str], updated_by: str = "system") -> List[ApprovalPolicy]:
        """Assign priorities 1..n following the given order."""
        if len(set(policy_ids)) != len(policy_ids):
            raise ValidationError("Reorder list contains duplicate policy ids")
        policies = [self.get(policy_id) for policy_id in policy_ids]
        reordered = []
        for position, policy in enumerate(policies, start=1):
            if policy.priority == position:
                reordered.append(policy)
            else:
                reordered.append(self.upsert(policy.model_copy(update={"priority": position}), updated_by=updated_by))
        return reordered
