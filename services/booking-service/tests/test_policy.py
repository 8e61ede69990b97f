from datetime import timedelta

import pytest

from app.domain import ActorRole, BookingStatus as S
from app.errors import ValidationError
from app.policy import (
    DEFAULT_TRANSITIONS,
    RefundDecision,
    RefundPolicy,
    RefundRule,
    WorkflowPolicy,
    load_policy,
    refund_amount,
)


def test_default_policy_is_valid_and_terminal_states_are_closed():
    policy = load_policy()

    assert policy.is_terminal(S.REVIEWED)
    assert policy.is_terminal(S.CANCELLED)
    assert not policy.is_terminal(S.NO_SHOW)
    assert policy.fallback(S.REQUESTED) == S.CANCELLED
    assert policy.fallback(S.ASSIGNED) == S.NO_SHOW
    assert policy.dwell_time(S.REQUESTED) == timedelta(minutes=30)
    assert policy.dwell_time(S.CANCELLED) is None


def test_policy_tables_are_read_only():
    policy = load_policy()

    with pytest.raises(TypeError):
        policy.transitions[S.REVIEWED] = (S.REQUESTED,)


def test_policy_rejects_fallback_that_is_not_an_edge():
    with pytest.raises(ValueError):
        WorkflowPolicy(fallbacks={S.REQUESTED: S.PAID})


def test_policy_rejects_missing_state():
    transitions = dict(DEFAULT_TRANSITIONS)
    del transitions[S.DISPUTED]

    with pytest.raises(ValueError):
        WorkflowPolicy(transitions=transitions)


def test_policy_rejects_dwell_time_on_terminal_state():
    with pytest.raises(ValueError):
        WorkflowPolicy(dwell_times={S.REQUESTED: timedelta(minutes=1), S.CANCELLED: timedelta(minutes=1)})


def test_alternate_policy_can_shorten_timeouts():
    policy = WorkflowPolicy(dwell_times={S.REQUESTED: timedelta(seconds=1), S.ASSIGNED: timedelta(seconds=1)})

    assert policy.dwell_time(S.REQUESTED) == timedelta(seconds=1)
    assert policy.dwell_time(S.CONFIRMED) is None


@pytest.mark.parametrize(
    "status, role, hours, rule, pct",
    [
        (S.REQUESTED, ActorRole.CUSTOMER, 1, "unconfirmed_request", 100),
        (S.ASSIGNED, ActorRole.WORKER, 1, "worker_cancelled", 100),
        (S.REQUESTED, ActorRole.SYSTEM, 100, "unconfirmed_request", 100),
        (S.EN_ROUTE, ActorRole.SYSTEM, 0.5, "system_cancelled", 100),
        (S.NO_SHOW, ActorRole.CUSTOMER, -1, "worker_no_show", 100),
        (S.DISPUTED, ActorRole.ADMIN, -10, "dispute_resolved_by_admin", 100),
        (S.DISPUTED, ActorRole.CUSTOMER, -10, "dispute_withdrawn_by_customer", 0),
        (S.CONFIRMED, ActorRole.CUSTOMER, 48, "customer_early", 100),
        (S.CONFIRMED, ActorRole.CUSTOMER, 24, "customer_late", 50),
        (S.ASSIGNED, ActorRole.CUSTOMER, 10, "customer_late", 50),
        (S.ASSIGNED, ActorRole.CUSTOMER, 2, "customer_last_minute", 0),
        (S.IN_PROGRESS, ActorRole.CUSTOMER, -1, "customer_last_minute", 0),
        (S.IN_PROGRESS, ActorRole.ADMIN, -1, "admin_cancelled", 100),
    ],
)
def test_refund_table(status, role, hours, rule, pct):
    decision = RefundPolicy().evaluate(status, role, hours, total=10000)

    assert decision.rule == rule
    assert decision.refund_pct == pct
    assert decision.refund_amount == 10000 * pct // 100


def test_refund_override_is_clamped():
    decision = RefundPolicy().evaluate(S.ASSIGNED, ActorRole.ADMIN, 1, total=999, override_pct=150)

    assert decision.rule == "override"
    assert decision.refund_pct == 100
    assert decision.refund_amount == 999


def test_refund_without_matching_rule_is_validation_error():
    policy = RefundPolicy(rules=(RefundRule("only_workers", 100, actors=frozenset({ActorRole.WORKER})),))

    with pytest.raises(ValidationError):
        policy.evaluate(S.CONFIRMED, ActorRole.CUSTOMER, 10, total=100)


def test_refund_amount_rounds_half_up():
    assert refund_amount(333, 50) == 167
    assert refund_amount(10001, 50) == 5001


def test_refund_decision_survives_status_update_metadata():
    decision = RefundPolicy().evaluate(S.ASSIGNED, ActorRole.CUSTOMER, 10, total=5000)

    restored = RefundDecision.from_metadata(decision.as_metadata())

    assert restored.rule == decision.rule
    assert restored.refund_amount == 2500
    assert RefundDecision.from_metadata({"trigger": "timeout"}) is None
