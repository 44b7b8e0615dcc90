from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

_CONFIG_CACHE: Dict[str, Any] | None = None


def repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def load_config(path: str | Path | None = None) -> Dict[str, Any]:
    root = repo_root()
    env_path = root / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    config_path = Path(path) if path else Path(os.getenv("DCA_EXECUTOR_CONFIG", root / "config" / "default.yaml"))
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    return data


def get_config(refresh: bool = False) -> Dict[str, Any]:
    global _CONFIG_CACHE
    if refresh or _CONFIG_CACHE is None:
        _CONFIG_CACHE = load_config()
    return _CONFIG_CACHE


@dataclass(frozen=True)
class TokenInfo:
    key: str
    address: str
    symbol: str
    decimals: int
    min_trade: float
    fallback_price_usd: Optional[float] = None

    def to_base_units(self, amount: float) -> int:
        return int(round(amount * (10**self.decimals)))

    def to_human(self, amount: int) -> float:
        return amount / (10**self.decimals)


@dataclass(frozen=True)
class EngineSettings:
    """Typed view over the YAML config used by the orchestrator and its phases."""

    chain_id: int
    native_decimals: int
    tokens: Dict[str, TokenInfo]
    permit2: str
    delegation_manager: str
    account_factory: str
    routers: List[str]
    timestamp_enforcer: str
    limited_calls_enforcer: str
    thresholds: Dict[str, int]
    strong_pct: float
    mild_pct: float
    fee_bps: int
    bps_denominator: int
    min_delegation_value_usd: float
    price_cache_ttl_sec: float
    quote_validity_sec: float
    max_quotes_per_run: int
    slippage_small_bps: int
    slippage_large_bps: int
    slippage_threshold_usd: float
    batch_size: int
    batch_delay_sec: float
    swap_receipt_timeout_sec: float
    approval_receipt_timeout_sec: float
    receipt_poll_sec: float
    retry: Dict[str, float] = field(default_factory=dict)
    min_operator_balance_native: float = 0.001
    permit2_expiry_days: int = 365
    expiry_warning_days: int = 7
    log_dir: str = "runs"
    history_limit: int = 50

    @property
    def usdc(self) -> TokenInfo:
        return self.tokens["usdc"]

    def target_token(self, key: Optional[str]) -> TokenInfo:
        name = (key or "weth").strip().lower()
        if name not in self.tokens or name == "usdc":
            raise ValueError(f"Unsupported target asset: {key}")
        return self.tokens[name]

    def token_by_address(self, address: str) -> Optional[TokenInfo]:
        lowered = address.lower()
        for token in self.tokens.values():
            if token.address.lower() == lowered:
                return token
        return None

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]] = None) -> "EngineSettings":
        data = cfg if cfg is not None else get_config()
        chain = data.get("chain", {})
        contracts = data.get("contracts", {})
        enforcers = contracts.get("enforcers", {})
        decision = data.get("decision", {})
        fees = data.get("fees", {})
        eligibility = data.get("eligibility", {})
        quotes = data.get("quotes", {})
        submission = data.get("submission", {})
        runs = data.get("runs", {})

        tokens: Dict[str, TokenInfo] = {}
        for key, raw in (data.get("tokens") or {}).items():
            tokens[key] = TokenInfo(
                key=key,
                address=str(raw["address"]),
                symbol=str(raw.get("symbol", key.upper())),
                decimals=int(raw["decimals"]),
                min_trade=float(raw.get("min_trade", 0.0)),
                fallback_price_usd=raw.get("fallback_price_usd"),
            )
        if "usdc" not in tokens:
            raise ValueError("tokens.usdc must be configured")

        return cls(
            chain_id=int(chain.get("chain_id", 8453)),
            native_decimals=int(chain.get("native_decimals", 18)),
            tokens=tokens,
            permit2=str(contracts.get("permit2", "")),
            delegation_manager=str(contracts.get("delegation_manager", "")),
            account_factory=str(contracts.get("account_factory", "")),
            routers=[str(addr) for addr in contracts.get("routers", [])],
            timestamp_enforcer=str(enforcers.get("timestamp", "")),
            limited_calls_enforcer=str(enforcers.get("limited_calls", "")),
            thresholds={
                "extreme_fear_max": int(decision.get("extreme_fear_max", 25)),
                "fear_max": int(decision.get("fear_max", 45)),
                "neutral_max": int(decision.get("neutral_max", 54)),
                "greed_max": int(decision.get("greed_max", 75)),
            },
            strong_pct=float(decision.get("strong_pct", 5.0)),
            mild_pct=float(decision.get("mild_pct", 2.5)),
            fee_bps=int(fees.get("fee_bps", 20)),
            bps_denominator=int(fees.get("bps_denominator", 10_000)),
            min_delegation_value_usd=float(eligibility.get("min_delegation_value_usd", 10)),
            price_cache_ttl_sec=float(eligibility.get("price_cache_ttl_sec", 60)),
            quote_validity_sec=float(quotes.get("validity_sec", 30)),
            max_quotes_per_run=int(quotes.get("max_quotes_per_run", 100)),
            slippage_small_bps=int(quotes.get("slippage_small_bps", 50)),
            slippage_large_bps=int(quotes.get("slippage_large_bps", 30)),
            slippage_threshold_usd=float(quotes.get("slippage_threshold_usd", 100)),
            batch_size=max(1, int(submission.get("batch_size", 50))),
            batch_delay_sec=float(submission.get("batch_delay_sec", 0.5)),
            swap_receipt_timeout_sec=float(submission.get("swap_receipt_timeout_sec", 120)),
            approval_receipt_timeout_sec=float(submission.get("approval_receipt_timeout_sec", 60)),
            receipt_poll_sec=float(submission.get("receipt_poll_sec", 2.0)),
            retry={key: float(value) for key, value in (data.get("retry") or {}).items()},
            min_operator_balance_native=float(data.get("operator", {}).get("min_balance_native", 0.001)),
            permit2_expiry_days=int(data.get("approvals", {}).get("permit2_expiry_days", 365)),
            expiry_warning_days=int(data.get("delegation", {}).get("expiry_warning_days", 7)),
            log_dir=str(runs.get("log_dir", "runs")),
            history_limit=int(runs.get("history_limit", 50)),
        )


__all__ = ["EngineSettings", "TokenInfo", "get_config", "load_config", "repo_root"]
