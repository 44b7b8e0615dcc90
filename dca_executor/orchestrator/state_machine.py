from __future__ import annotations

from typing import Dict, FrozenSet

STATE_IDLE = "IDLE"
STATE_CHECK_IDEMPOTENCY = "CHECK_IDEMPOTENCY"
STATE_CHECK_OPERATOR_FUNDS = "CHECK_OPERATOR_FUNDS"
STATE_FETCH_SIGNAL = "FETCH_SIGNAL"
STATE_DECIDE = "DECIDE"
STATE_HOLD = "HOLD"
STATE_FILTER_DELEGATIONS = "FILTER_DELEGATIONS"
STATE_DEPLOY_PENDING_ACCOUNTS = "DEPLOY_PENDING_ACCOUNTS"
STATE_COMPUTE_ELIGIBILITY = "COMPUTE_ELIGIBILITY"
STATE_RUN_APPROVAL_PHASE = "RUN_APPROVAL_PHASE"
STATE_RUN_SWAP_PHASE = "RUN_SWAP_PHASE"
STATE_RECORD_RESULTS = "RECORD_RESULTS"
STATE_RETRY_TRANSIENT_FAILURES = "RETRY_TRANSIENT_FAILURES"
STATE_UPDATE_AGGREGATE_STATS = "UPDATE_AGGREGATE_STATS"
STATE_DONE = "DONE"
STATE_SKIPPED = "SKIPPED"
STATE_ABORTED = "ABORTED"

TERMINAL_STATES: FrozenSet[str] = frozenset({STATE_HOLD, STATE_DONE, STATE_SKIPPED, STATE_ABORTED})

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    STATE_IDLE: frozenset({STATE_CHECK_IDEMPOTENCY, STATE_CHECK_OPERATOR_FUNDS}),
    STATE_CHECK_IDEMPOTENCY: frozenset({STATE_CHECK_OPERATOR_FUNDS, STATE_SKIPPED}),
    STATE_CHECK_OPERATOR_FUNDS: frozenset({STATE_FETCH_SIGNAL, STATE_ABORTED}),
    STATE_FETCH_SIGNAL: frozenset({STATE_DECIDE, STATE_ABORTED}),
    STATE_DECIDE: frozenset({STATE_HOLD, STATE_FILTER_DELEGATIONS}),
    STATE_FILTER_DELEGATIONS: frozenset({STATE_DEPLOY_PENDING_ACCOUNTS, STATE_COMPUTE_ELIGIBILITY, STATE_ABORTED}),
    STATE_DEPLOY_PENDING_ACCOUNTS: frozenset({STATE_COMPUTE_ELIGIBILITY}),
    STATE_COMPUTE_ELIGIBILITY: frozenset({STATE_RUN_APPROVAL_PHASE, STATE_DONE}),
    STATE_RUN_APPROVAL_PHASE: frozenset({STATE_RUN_SWAP_PHASE}),
    STATE_RUN_SWAP_PHASE: frozenset({STATE_RECORD_RESULTS}),
    STATE_RECORD_RESULTS: frozenset({STATE_RETRY_TRANSIENT_FAILURES}),
    STATE_RETRY_TRANSIENT_FAILURES: frozenset({STATE_UPDATE_AGGREGATE_STATS}),
    STATE_UPDATE_AGGREGATE_STATS: frozenset({STATE_DONE}),
}


class InvalidTransition(RuntimeError):
    pass


def check_transition(current: str, target: str) -> None:
    if current in TERMINAL_STATES:
        raise InvalidTransition(f"{current} is terminal; cannot move to {target}")
    if target not in TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(f"{current} -> {target} is not a valid run transition")


__all__ = [
    "InvalidTransition",
    "STATE_ABORTED",
    "STATE_CHECK_IDEMPOTENCY",
    "STATE_CHECK_OPERATOR_FUNDS",
    "STATE_COMPUTE_ELIGIBILITY",
    "STATE_DECIDE",
    "STATE_DEPLOY_PENDING_ACCOUNTS",
    "STATE_DONE",
    "STATE_FETCH_SIGNAL",
    "STATE_FILTER_DELEGATIONS",
    "STATE_HOLD",
    "STATE_IDLE",
    "STATE_RECORD_RESULTS",
    "STATE_RETRY_TRANSIENT_FAILURES",
    "STATE_RUN_APPROVAL_PHASE",
    "STATE_RUN_SWAP_PHASE",
    "STATE_SKIPPED",
    "STATE_UPDATE_AGGREGATE_STATS",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "check_transition",
]
