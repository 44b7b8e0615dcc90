from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from dca_executor.config import EngineSettings, TokenInfo
from dca_executor.core.cache import TtlCache
from dca_executor.core.exceptions import UpstreamError
from dca_executor.data.chain.provider import ChainReader
from dca_executor.data.routing.provider import RoutingProvider
from dca_executor.data.store.schemas import DelegationRecord
from dca_executor.logging_utils import get_logger
from dca_executor.orchestrator.models import WalletData
from dca_executor.policies.decision import ACTION_BUY, Decision

logger = get_logger(__name__)


def compute_amounts(
    balance: int,
    percentage: float,
    cap: int,
    fee_bps: int = 20,
    denominator: int = 10_000,
) -> Tuple[int, int, int]:
    """Return (gross, fee, net) in base units, integer arithmetic throughout."""
    pct_bps = int(round(percentage * 100))
    gross = min(balance * pct_bps // denominator, max(cap, 0), balance)
    fee = gross * fee_bps // denominator
    return gross, fee, gross - fee


class ReferencePriceOracle:
    """USD price per whole target token, derived from a 1 USDC probe quote.

    Prices are cached for ``settings.price_cache_ttl_sec``; when a probe fails
    the last known (stale) price is used, and failing that the configured
    fallback price.
    """

    def __init__(
        self,
        routing: RoutingProvider,
        settings: EngineSettings,
        swapper: str,
        cache: Optional[TtlCache[float]] = None,
    ) -> None:
        self.routing = routing
        self.settings = settings
        self.swapper = swapper
        self.cache: TtlCache[float] = cache or TtlCache(settings.price_cache_ttl_sec)
        self._locks: Dict[str, asyncio.Lock] = {}

    async def price_usd(self, token: TokenInfo) -> float:
        key = token.address.lower()
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self.cache.get(key)
            if cached is not None:
                return cached
            usdc = self.settings.usdc
            probe = usdc.to_base_units(1.0)
            try:
                quote = await self.routing.get_quote(
                    self.swapper, usdc.address, token.address, probe, self.settings.slippage_small_bps
                )
                received = token.to_human(quote.output_amount)
                if received <= 0:
                    raise UpstreamError(f"reference quote for {token.symbol} returned zero output")
            except UpstreamError as exc:
                stale = self.cache.get_stale(key)
                if stale is not None:
                    logger.warning("Reference price for %s unavailable (%s); using stale %.2f", token.symbol, exc, stale)
                    return stale
                if token.fallback_price_usd:
                    logger.warning(
                        "Reference price for %s unavailable (%s); using fallback %.2f",
                        token.symbol,
                        exc,
                        token.fallback_price_usd,
                    )
                    return float(token.fallback_price_usd)
                raise
            price = 1.0 / received
            self.cache.set(key, price)
            return price


@dataclass
class EligibilityOutcome:
    eligible: List[WalletData] = field(default_factory=list)
    rejected: Dict[str, str] = field(default_factory=dict)


async def _evaluate(
    record: DelegationRecord,
    index: int,
    decision: Decision,
    chain: ChainReader,
    settings: EngineSettings,
    oracle: ReferencePriceOracle,
) -> Tuple[Optional[WalletData], Optional[str]]:
    account = record.smart_account_address
    usdc = settings.usdc
    try:
        target = settings.target_token(record.target_asset)
    except ValueError as exc:
        return None, str(exc)

    usdc_balance, target_balance = await asyncio.gather(
        chain.erc20_balance(usdc.address, account),
        chain.erc20_balance(target.address, account),
    )
    price = await oracle.price_usd(target)
    total_value_usd = usdc.to_human(usdc_balance) + target.to_human(target_balance) * price
    if total_value_usd < settings.min_delegation_value_usd:
        return None, f"Total value ${total_value_usd:.2f} below ${settings.min_delegation_value_usd:.2f} minimum"

    if decision.action == ACTION_BUY:
        token_in, token_out, balance, unit_usd = usdc, target, usdc_balance, 1.0
    else:
        token_in, token_out, balance, unit_usd = target, usdc, target_balance, price

    gross, fee, net = compute_amounts(
        balance,
        decision.percentage,
        record.max_amount_per_swap,
        settings.fee_bps,
        settings.bps_denominator,
    )
    if gross > balance:
        return None, "Swap amount exceeds balance"
    if gross <= 0 or token_in.to_human(gross) < token_in.min_trade:
        return None, f"Swap amount {token_in.to_human(gross):g} {token_in.symbol} below minimum trade size {token_in.min_trade:g}"

    wallet = WalletData(
        record=record,
        account=account,
        index=index,
        token_in=token_in,
        token_out=token_out,
        balance=balance,
        swap_amount=gross,
        fee=fee,
        swap_amount_after_fee=net,
        total_value_usd=total_value_usd,
        swap_value_usd=token_in.to_human(net) * unit_usd,
    )
    return wallet, None


async def compute_eligibility(
    records: List[Tuple[int, DelegationRecord]],
    decision: Decision,
    chain: ChainReader,
    settings: EngineSettings,
    oracle: ReferencePriceOracle,
) -> EligibilityOutcome:
    """Read balances concurrently and size each account's trade.

    ``records`` pairs every delegation with its stable account index for the
    run. An account whose balances cannot be read is dropped for this run.
    """
    outcome = EligibilityOutcome()

    async def _one(index: int, record: DelegationRecord):
        try:
            return await _evaluate(record, index, decision, chain, settings, oracle)
        except Exception as exc:
            return None, f"Balance read failed: {exc}"

    evaluated = await asyncio.gather(*(_one(index, record) for index, record in records))
    for (index, record), (wallet, reason) in zip(records, evaluated):
        if wallet is not None:
            outcome.eligible.append(wallet)
            logger.info(
                "%s eligible: %s %s (fee %s, net %s)",
                wallet.account,
                wallet.pair,
                wallet.swap_amount,
                wallet.fee,
                wallet.swap_amount_after_fee,
            )
        else:
            outcome.rejected[record.smart_account_address] = reason or "ineligible"
            logger.info("%s skipped: %s", record.smart_account_address, reason)
    outcome.eligible.sort(key=lambda wallet: wallet.index)
    return outcome


__all__ = ["EligibilityOutcome", "ReferencePriceOracle", "compute_amounts", "compute_eligibility"]
