from __future__ import annotations

from pydantic import BaseModel


class Permit2Allowance(BaseModel):
    amount: int
    expiration: int
    nonce: int = 0

    def is_active(self, now_ts: int) -> bool:
        return self.amount > 0 and self.expiration > now_ts


def parse_quantity(value) -> int:
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Expected hex quantity, got {value!r}")
    if value in ("0x", ""):
        return 0
    return int(value, 16)
