"""Narrow parsed view over the stored authorization blob, plus caveat checks.

The blob itself stays opaque: it is forwarded byte-for-byte to the delegation
manager. Only the fields the engine needs to decide validity are read here.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from dca_executor.config import EngineSettings
from dca_executor.core.abi import hex_to_bytes
from dca_executor.core.exceptions import CATEGORY_REVERT
from dca_executor.data.store.schemas import DelegationRecord
from dca_executor.logging_utils import get_logger

logger = get_logger(__name__)

SECONDS_PER_DAY = 86_400


class DelegationParseError(ValueError):
    category = CATEGORY_REVERT


@dataclass(frozen=True)
class Caveat:
    enforcer: str
    terms: bytes
    args: bytes = b""


@dataclass
class ParsedDelegation:
    delegate: str
    delegator: str
    caveats: List[Caveat]
    has_signature: bool
    raw: Dict[str, Any] = field(repr=False, default_factory=dict)


@dataclass
class CaveatCheck:
    valid: bool
    reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    valid_until: Optional[int] = None


def _address(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.startswith("0x") or len(value) != 42:
        raise DelegationParseError(f"delegation field '{key}' is not an address")
    return value


def parse_delegation(blob: Any) -> ParsedDelegation:
    if isinstance(blob, str):
        try:
            payload = json.loads(blob)
        except json.JSONDecodeError as exc:
            raise DelegationParseError(f"delegation blob is not JSON: {exc.msg}") from exc
    elif isinstance(blob, dict):
        payload = dict(blob)
    else:
        raise DelegationParseError(f"unsupported delegation blob type {type(blob).__name__}")
    if not isinstance(payload, dict):
        raise DelegationParseError("delegation blob must be an object")

    caveats: List[Caveat] = []
    for position, raw in enumerate(payload.get("caveats") or []):
        if not isinstance(raw, dict) or "enforcer" not in raw:
            raise DelegationParseError(f"caveat {position} has no enforcer")
        try:
            caveats.append(
                Caveat(
                    enforcer=str(raw["enforcer"]),
                    terms=hex_to_bytes(raw.get("terms") or "0x"),
                    args=hex_to_bytes(raw.get("args") or "0x"),
                )
            )
        except ValueError as exc:
            raise DelegationParseError(f"caveat {position} terms are not hex") from exc

    signature = payload.get("signature")
    return ParsedDelegation(
        delegate=_address(payload, "delegate"),
        delegator=_address(payload, "delegator"),
        caveats=caveats,
        has_signature=isinstance(signature, str) and len(signature) > 2,
        raw=payload,
    )


def _timestamp_window(terms: bytes) -> tuple[int, int]:
    if len(terms) != 32:
        raise DelegationParseError(f"timestamp caveat terms must be 32 bytes, got {len(terms)}")
    return int.from_bytes(terms[:16], "big"), int.from_bytes(terms[16:], "big")


def validate_caveats(
    parsed: ParsedDelegation,
    now_ts: int,
    timestamp_enforcer: str,
    limited_calls_enforcer: str,
    warning_days: int = 7,
) -> CaveatCheck:
    check = CaveatCheck(valid=True)
    for caveat in parsed.caveats:
        enforcer = caveat.enforcer.lower()
        if timestamp_enforcer and enforcer == timestamp_enforcer.lower():
            valid_after, valid_until = _timestamp_window(caveat.terms)
            if valid_after and now_ts < valid_after:
                return CaveatCheck(valid=False, reason=f"Delegation not yet valid (valid after {valid_after})")
            if valid_until:
                if now_ts > valid_until:
                    return CaveatCheck(valid=False, reason=f"Delegation expired at {valid_until}")
                check.valid_until = valid_until
                days_left = (valid_until - now_ts) / SECONDS_PER_DAY
                if days_left <= warning_days:
                    check.warnings.append(f"Delegation expires in {days_left:.1f} days")
        elif limited_calls_enforcer and enforcer == limited_calls_enforcer.lower():
            if len(caveat.terms) != 32:
                raise DelegationParseError(f"limited-calls caveat terms must be 32 bytes, got {len(caveat.terms)}")
            max_calls = int.from_bytes(caveat.terms, "big")
            if max_calls == 0:
                return CaveatCheck(valid=False, reason="Delegation call limit exhausted (max calls is 0)")
            # redemption counts live on-chain; this is informational only
            logger.debug("Delegation limited to %d calls; usage is not tracked locally", max_calls)
    return check


def validate_delegation(
    record: DelegationRecord,
    operator: str,
    now: datetime,
    settings: EngineSettings,
) -> tuple[Optional[ParsedDelegation], CaveatCheck]:
    """Full pre-flight validity check for one enrollment row."""
    if record.expires_at <= now:
        return None, CaveatCheck(valid=False, reason="Delegation record expired")
    try:
        parsed = parse_delegation(record.delegation_data)
    except DelegationParseError as exc:
        return None, CaveatCheck(valid=False, reason=f"Invalid delegation: {exc}")
    if parsed.delegate.lower() != operator.lower():
        return parsed, CaveatCheck(
            valid=False, reason=f"Delegation grantee {parsed.delegate} does not match operator {operator}"
        )
    if not parsed.has_signature:
        return parsed, CaveatCheck(valid=False, reason="Delegation missing signature")
    try:
        check = validate_caveats(
            parsed,
            int(now.timestamp()),
            settings.timestamp_enforcer,
            settings.limited_calls_enforcer,
            settings.expiry_warning_days,
        )
    except DelegationParseError as exc:
        return parsed, CaveatCheck(valid=False, reason=f"Invalid delegation: {exc}")
    if check.valid and record.expires_at - now <= timedelta(days=settings.expiry_warning_days):
        check.warnings.append(f"Delegation record expires at {record.expires_at.isoformat()}")
    for warning in check.warnings:
        logger.warning("%s: %s", record.smart_account_address, warning)
    return parsed, check


__all__ = [
    "Caveat",
    "CaveatCheck",
    "DelegationParseError",
    "ParsedDelegation",
    "parse_delegation",
    "validate_caveats",
    "validate_delegation",
]
