from __future__ import annotations

import random

import pydantic
import pytest

from conftest import make_policy, make_stage
from spendflow.core.database import SpendflowDB
from spendflow.models.policies import PolicyKind, PolicyStatus, StageRole
from spendflow.services.errors import NotFoundError, PolicyNotFoundError, ValidationError
from spendflow.services.policy_catalog import PolicyCatalog


def _owner_only(policy_id, **fields):
    return make_policy(policy_id, [make_stage(StageRole.OWNER, "owner-1")], **fields)


def _owner_and_director(policy_id, **fields):
    return make_policy(
        policy_id,
        [make_stage(StageRole.OWNER, "owner-1"), make_stage(StageRole.DIRECTOR, "director-1")],
        **fields,
    )


def test_lowest_priority_number_wins_over_broader_policy():
    catalog = PolicyCatalog(policies=[
        _owner_only("P1", priority=1, min_amount=0, max_amount=10000),
        _owner_and_director("P2", priority=2, min_amount=0),
    ])

    policy = catalog.resolve(500, "C", "cc-eng")

    assert policy.id == "P1"
    assert [s.role for s in policy.stages] == [StageRole.OWNER]


def test_specificity_breaks_priority_ties():
    catalog = PolicyCatalog(policies=[
        _owner_only("wildcard", priority=5),
        _owner_only("category-only", priority=5, category_id="C"),
        _owner_only("category-and-cc", priority=5, category_id="C", cost_center_id="cc-eng"),
    ])

    assert catalog.resolve(100, "C", "cc-eng").id == "category-and-cc"
    assert catalog.resolve(100, "C", "cc-ops").id == "category-only"
    assert catalog.resolve(100, "D", "cc-ops").id == "wildcard"


def test_priority_outranks_specificity():
    catalog = PolicyCatalog(policies=[
        _owner_only("specific", priority=3, category_id="C", cost_center_id="cc-eng"),
        _owner_only("broad", priority=1),
    ])

    assert catalog.resolve(100, "C", "cc-eng").id == "broad"


def test_policy_id_breaks_full_ties():
    catalog = PolicyCatalog(policies=[
        _owner_only("policy-b", priority=1),
        _owner_only("policy-a", priority=1),
    ])

    assert catalog.resolve(100, None, None).id == "policy-a"


@pytest.mark.parametrize("seed", [1, 7, 42, 99, 2024])
def test_resolution_is_deterministic_regardless_of_insertion_order(seed):
    rng = random.Random(seed)
    policies = [
        _owner_only(f"pol-{i:02d}", priority=rng.choice([1, 2]),
                    category_id=rng.choice([None, "C"]), cost_center_id=rng.choice([None, "cc-eng"]))
        for i in range(12)
    ]
    baseline = PolicyCatalog(policies=policies).resolve(250, "C", "cc-eng").id

    for _ in range(5):
        shuffled = list(policies)
        rng.shuffle(shuffled)
        catalog = PolicyCatalog(policies=shuffled)
        assert catalog.resolve(250, "C", "cc-eng").id == baseline
        assert catalog.resolve(250, "C", "cc-eng").id == baseline


def test_amount_range_is_half_open():
    catalog = PolicyCatalog(policies=[
        _owner_only("under-1k", priority=1, max_amount=1000),
        _owner_and_director("from-1k", priority=1, min_amount=1000),
    ])

    assert catalog.resolve(999.99, None, None).id == "under-1k"
    assert catalog.resolve(1000, None, None).id == "from-1k"
    assert catalog.resolve(10_000_000, None, None).id == "from-1k"


def test_no_matching_policy_raises_with_context():
    catalog = PolicyCatalog(policies=[
        _owner_only("hardware-only", category_id="hardware"),
        _owner_only("inactive", status=PolicyStatus.INACTIVE),
    ])

    with pytest.raises(PolicyNotFoundError) as exc_info:
        catalog.resolve(100, "travel", "cc-eng")

    assert exc_info.value.context["category_id"] == "travel"
    assert "finance" in exc_info.value.detail


def test_payment_policies_are_resolved_separately():
    catalog = PolicyCatalog(policies=[
        _owner_only("approval"),
        make_policy("payment", [make_stage(StageRole.PAYMENT, "treasurer")], kind=PolicyKind.PAYMENT),
    ])

    assert catalog.resolve(100, None, None).id == "approval"
    assert catalog.resolve(100, None, None, PolicyKind.PAYMENT).id == "payment"


def test_upsert_bumps_version_and_deactivate_removes_from_resolution():
    catalog = PolicyCatalog()
    first = catalog.upsert(_owner_only("p", priority=1))
    second = catalog.upsert(_owner_only("p", priority=3))

    assert (first.version, second.version) == (1, 2)
    assert catalog.get("p").priority == 3

    catalog.deactivate("p")
    with pytest.raises(PolicyNotFoundError):
        catalog.resolve(100, None, None)

    reactivated = catalog.activate("p")
    assert reactivated.is_active
    assert reactivated.version == 4


def test_duplicate_starts_inactive_one_step_lower():
    catalog = PolicyCatalog(policies=[_owner_only("base", priority=4)])

    copy = catalog.duplicate("base", "base-copy")

    assert copy.status == PolicyStatus.INACTIVE
    assert copy.priority == 5
    assert copy.stages == catalog.get("base").stages
    with pytest.raises(ValidationError):
        catalog.duplicate("base", "base-copy")


def test_reorder_assigns_priorities_in_given_order():
    catalog = PolicyCatalog(policies=[
        _owner_only("a", priority=10),
        _owner_only("b", priority=20),
        _owner_only("c", priority=30),
    ])

    catalog.reorder(["c", "a", "b"])

    assert [(p.id, p.priority) for p in catalog.list()] == [("c", 1), ("a", 2), ("b", 3)]
    with pytest.raises(NotFoundError):
        catalog.reorder(["a", "missing"])


def test_catalog_reloads_versions_from_storage(tmp_path):
    db = SpendflowDB(str(tmp_path / "policies.db"))
    db.initialize()
    catalog = PolicyCatalog(db=db, policies=[_owner_only("p", priority=2)])
    catalog.upsert(_owner_only("p", priority=1), updated_by="finance-admin")

    reloaded = PolicyCatalog(db=db)

    assert reloaded.get("p").version == 2
    assert reloaded.get("p").priority == 1


def test_policy_shape_is_validated():
    with pytest.raises(pydantic.ValidationError):
        _owner_only("bad-range", min_amount=500, max_amount=500)

    with pytest.raises(pydantic.ValidationError):
        make_policy("dup-approver", [make_stage(StageRole.OWNER, "owner-1", "owner-1")])

    with pytest.raises(pydantic.ValidationError):
        make_policy("backwards", [make_stage(StageRole.CFO, "cfo"), make_stage(StageRole.OWNER, "owner-1")])

    with pytest.raises(pydantic.ValidationError):
        make_policy("no-stages", [])

    with pytest.raises(pydantic.ValidationError):
        make_policy("payment-in-approval", [make_stage(StageRole.PAYMENT, "treasurer")])
