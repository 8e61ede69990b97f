"""
Workflow rule tables.

The transition table, dwell times, timeout fallbacks, notification
recipients and refund rules are immutable values built once at process
start (``load_policy``) and handed to the components that need them.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from types import MappingProxyType
from typing import Mapping

from .domain import ActorRole, BookingStatus as S
from .errors import ValidationError

TERMINAL_STATES = frozenset({S.REVIEWED, S.CANCELLED})

CUSTOMER = "customer"
WORKER = "worker"
ADMIN = "admin"

DEFAULT_TRANSITIONS = {
    S.REQUESTED: (S.CONFIRMED, S.CANCELLED),
    S.CONFIRMED: (S.ASSIGNED, S.CANCELLED),
    S.ASSIGNED: (S.EN_ROUTE, S.CANCELLED, S.NO_SHOW),
    S.EN_ROUTE: (S.ARRIVED, S.CANCELLED),
    S.ARRIVED: (S.IN_PROGRESS, S.NO_SHOW),
    S.IN_PROGRESS: (S.COMPLETED, S.CANCELLED),
    S.COMPLETED: (S.PAID, S.DISPUTED),
    S.PAID: (S.REVIEWED,),
    S.REVIEWED: (),
    S.CANCELLED: (),
    S.NO_SHOW: (S.CANCELLED,),
    S.DISPUTED: (S.COMPLETED, S.CANCELLED),
}

DEFAULT_DWELL_TIMES = {
    S.REQUESTED: timedelta(minutes=30),
    S.CONFIRMED: timedelta(hours=2),
    S.ASSIGNED: timedelta(minutes=15),
    S.EN_ROUTE: timedelta(hours=1),
    S.ARRIVED: timedelta(minutes=10),
    S.IN_PROGRESS: timedelta(hours=8),
    S.COMPLETED: timedelta(hours=24),
    S.PAID: timedelta(days=7),
    S.DISPUTED: timedelta(days=7),
}

DEFAULT_FALLBACKS = {
    S.REQUESTED: S.CANCELLED,
    S.ASSIGNED: S.NO_SHOW,
}

DEFAULT_RECIPIENTS = {
    S.REQUESTED: (WORKER,),
    S.CONFIRMED: (CUSTOMER,),
    S.ASSIGNED: (CUSTOMER,),
    S.EN_ROUTE: (CUSTOMER,),
    S.ARRIVED: (CUSTOMER,),
    S.IN_PROGRESS: (CUSTOMER,),
    S.COMPLETED: (CUSTOMER, WORKER),
    S.PAID: (WORKER,),
    S.REVIEWED: (WORKER,),
    S.CANCELLED: (CUSTOMER, WORKER),
    S.NO_SHOW: (CUSTOMER, WORKER),
    S.DISPUTED: (CUSTOMER, WORKER, ADMIN),
}


@dataclass(frozen=True)
class RefundRule:
    name: str
    refund_pct: int
    statuses: frozenset | None = None  # None = any status
    actors: frozenset | None = None  # None = any actor
    min_hours_before_start: float | None = None  # strictly greater than

    def matches(self, status: S, actor_role: ActorRole, hours_until_start: float) -> bool:
        if self.statuses is not None and status not in self.statuses:
            return False
        if self.actors is not None and actor_role not in self.actors:
            return False
        if self.min_hours_before_start is not None and not hours_until_start > self.min_hours_before_start:
            return False
        return True


@dataclass(frozen=True)
class RefundDecision:
    rule: str
    refund_pct: int
    refund_amount: int
    hours_until_start: float

    def as_metadata(self) -> dict:
        return {
            "refund_rule": self.rule,
            "refund_pct": self.refund_pct,
            "refund_amount": self.refund_amount,
            "hours_until_start": round(self.hours_until_start, 2),
        }

    @classmethod
    def from_metadata(cls, metadata: Mapping) -> "RefundDecision | None":
        if "refund_pct" not in metadata:
            return None
        return cls(
            rule=metadata.get("refund_rule", "recorded"),
            refund_pct=int(metadata["refund_pct"]),
            refund_amount=int(metadata["refund_amount"]),
            hours_until_start=float(metadata.get("hours_until_start", 0.0)),
        )


_PRE_START = frozenset({S.CONFIRMED, S.ASSIGNED})
_WORKER_COMMITTED = frozenset({S.CONFIRMED, S.ASSIGNED, S.EN_ROUTE, S.ARRIVED, S.IN_PROGRESS})

DEFAULT_REFUND_RULES = (
    RefundRule("unconfirmed_request", 100, statuses=frozenset({S.REQUESTED})),
    RefundRule("worker_cancelled", 100, actors=frozenset({ActorRole.WORKER})),
    RefundRule("system_cancelled", 100, actors=frozenset({ActorRole.SYSTEM})),
    RefundRule("worker_no_show", 100, statuses=frozenset({S.NO_SHOW})),
    RefundRule("dispute_resolved_by_admin", 100, statuses=frozenset({S.DISPUTED}), actors=frozenset({ActorRole.ADMIN})),
    RefundRule("dispute_withdrawn_by_customer", 0, statuses=frozenset({S.DISPUTED}), actors=frozenset({ActorRole.CUSTOMER})),
    RefundRule("customer_early", 100, statuses=_PRE_START, actors=frozenset({ActorRole.CUSTOMER}), min_hours_before_start=24),
    RefundRule("customer_late", 50, statuses=_PRE_START, actors=frozenset({ActorRole.CUSTOMER}), min_hours_before_start=2),
    RefundRule("customer_last_minute", 0, statuses=_WORKER_COMMITTED, actors=frozenset({ActorRole.CUSTOMER})),
    RefundRule("admin_cancelled", 100, actors=frozenset({ActorRole.ADMIN})),
)


def refund_amount(total: int, refund_pct: int) -> int:
    amount = (Decimal(total) * Decimal(refund_pct) / Decimal(100)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(amount)


@dataclass(frozen=True)
class RefundPolicy:
    rules: tuple = DEFAULT_REFUND_RULES

    def evaluate(self, status: S, actor_role: ActorRole, hours_until_start: float, total: int,
                 override_pct: int | None = None) -> RefundDecision:
        """
        Pure function of (status, actor, time-to-start). First matching rule
        wins; an override (admin only, enforced by the caller) replaces it.
        """
        if override_pct is not None:
            pct = max(0, min(100, int(override_pct)))
            return RefundDecision("override", pct, refund_amount(total, pct), hours_until_start)

        for rule in self.rules:
            if rule.matches(status, actor_role, hours_until_start):
                return RefundDecision(rule.name, rule.refund_pct, refund_amount(total, rule.refund_pct), hours_until_start)

        raise ValidationError(
            f"No refund rule covers cancellation of a {status.value} booking by {actor_role.value}"
        )


def _freeze(mapping: Mapping) -> Mapping:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class WorkflowPolicy:
    transitions: Mapping = field(default_factory=lambda: _freeze(DEFAULT_TRANSITIONS))
    dwell_times: Mapping = field(default_factory=lambda: _freeze(DEFAULT_DWELL_TIMES))
    fallbacks: Mapping = field(default_factory=lambda: _freeze(DEFAULT_FALLBACKS))
    recipients: Mapping = field(default_factory=lambda: _freeze(DEFAULT_RECIPIENTS))
    refunds: RefundPolicy = field(default_factory=RefundPolicy)
    settle_delay: timedelta = timedelta(seconds=5)
    payout_delay: timedelta = timedelta(hours=24)

    def __post_init__(self):
        for name in ("transitions", "dwell_times", "fallbacks", "recipients"):
            value = getattr(self, name)
            if not isinstance(value, MappingProxyType):
                object.__setattr__(self, name, _freeze(value))
        self._validate()

    def _validate(self):
        missing = set(S) - set(self.transitions)
        if missing:
            raise ValueError(f"transition table missing states: {sorted(s.value for s in missing)}")

        for state in TERMINAL_STATES:
            if self.transitions[state]:
                raise ValueError(f"terminal state {state.value} must not have outgoing transitions")
            if state in self.dwell_times:
                raise ValueError(f"terminal state {state.value} must not have a dwell time")

        for state, target in self.fallbacks.items():
            if target not in self.transitions[state]:
                raise ValueError(f"fallback {state.value} -> {target.value} is not an allowed transition")
            if state not in self.dwell_times:
                raise ValueError(f"fallback for {state.value} has no dwell time")

    def allows(self, current: S, target: S) -> bool:
        return target in self.transitions.get(current, ())

    def is_terminal(self, status: S) -> bool:
        return not self.transitions.get(status)

    def dwell_time(self, status: S) -> timedelta | None:
        return self.dwell_times.get(status)

    def fallback(self, status: S) -> S | None:
        return self.fallbacks.get(status)

    def recipients_for(self, status: S) -> tuple:
        return tuple(self.recipients.get(status, ()))


def load_policy(settle_delay_seconds: float | None = None, payout_delay_seconds: float | None = None) -> WorkflowPolicy:
    kwargs = {}
    if settle_delay_seconds is not None:
        kwargs["settle_delay"] = timedelta(seconds=settle_delay_seconds)
    if payout_delay_seconds is not None:
        kwargs["payout_delay"] = timedelta(seconds=payout_delay_seconds)
    return WorkflowPolicy(**kwargs)
