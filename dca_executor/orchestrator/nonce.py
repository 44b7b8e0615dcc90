from __future__ import annotations

from typing import Set

from dca_executor.core.exceptions import NonceCollision

PHASE_APPROVAL = 0
PHASE_SWAP = 1
PHASE_RETRY = 2
PHASE_DEPLOY = 3
PHASE_CORRECTION = 4
PHASE_COUNT = 5

SUBSTEPS_PER_ACCOUNT = 2
ACCOUNT_SLOTS = 1_000_000 // SUBSTEPS_PER_ACCOUNT
PHASE_STRIDE = 1_000_000
SEQUENCE_BITS = 64


def sequence_key(run_ts_ms: int, phase: int, account_index: int, sub_step: int = 0) -> int:
    """Deterministic relay nonce key for one (phase, account, sub-step) slot.

    Every phase of a run owns a disjoint block of ``PHASE_STRIDE`` keys and
    every account owns ``SUBSTEPS_PER_ACCOUNT`` consecutive keys inside it, so
    two distinct in-bound tuples can never produce the same key.
    """
    if not 0 <= phase < PHASE_COUNT:
        raise ValueError(f"phase {phase} out of range")
    if not 0 <= account_index < ACCOUNT_SLOTS:
        raise ValueError(f"account index {account_index} exceeds {ACCOUNT_SLOTS} slots")
    if not 0 <= sub_step < SUBSTEPS_PER_ACCOUNT:
        raise ValueError(f"sub-step {sub_step} out of range")
    if run_ts_ms < 0:
        raise ValueError("run timestamp must be non-negative")
    base = (run_ts_ms * PHASE_COUNT + phase) * PHASE_STRIDE
    return base + account_index * SUBSTEPS_PER_ACCOUNT + sub_step


def encode_nonce(key: int, sequence: int = 0) -> int:
    return (key << SEQUENCE_BITS) | sequence


class NonceAllocator:
    """Hands out sequence keys for one run and refuses to issue a key twice."""

    def __init__(self, run_ts_ms: int) -> None:
        self.run_ts_ms = run_ts_ms
        self._issued: Set[int] = set()

    def allocate(self, phase: int, account_index: int, sub_step: int = 0) -> int:
        key = sequence_key(self.run_ts_ms, phase, account_index, sub_step)
        if key in self._issued:
            raise NonceCollision(
                f"sequence key already issued (phase={phase} index={account_index} sub_step={sub_step})"
            )
        self._issued.add(key)
        return key

    def nonce(self, phase: int, account_index: int, sub_step: int = 0) -> int:
        return encode_nonce(self.allocate(phase, account_index, sub_step))

    @property
    def issued(self) -> int:
        return len(self._issued)


__all__ = [
    "ACCOUNT_SLOTS",
    "NonceAllocator",
    "PHASE_APPROVAL",
    "PHASE_CORRECTION",
    "PHASE_COUNT",
    "PHASE_DEPLOY",
    "PHASE_RETRY",
    "PHASE_SWAP",
    "SUBSTEPS_PER_ACCOUNT",
    "encode_nonce",
    "sequence_key",
]
