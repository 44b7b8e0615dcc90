from __future__ import annotations

import argparse
import asyncio
import random
import re
import sys
import uuid
from contextlib import AsyncExitStack
from pathlib import Path

from rich.console import Console
from rich.table import Table

from dca_executor.composition import Collaborators, build_collaborators
from dca_executor.config import EngineSettings, load_config
from dca_executor.core.exceptions import ProviderMisconfigured, RunAborted
from dca_executor.data.store.schemas import utc_now
from dca_executor.logging_utils import setup_logging
from dca_executor.orchestrator.context import RunContext
from dca_executor.orchestrator.correction import load_targets, run_correction
from dca_executor.orchestrator.models import RUN_ABORTED, RUN_COMPLETED
from dca_executor.orchestrator.nonce import NonceAllocator
from dca_executor.orchestrator.quotes import QuoteBudget
from dca_executor.orchestrator.runner import Orchestrator
from dca_executor.orchestrator.trade_log import print_previews
from dca_executor.policies.decision import ACTION_HOLD, Decision

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _address(value: str) -> str:
    if not _ADDRESS_RE.match(value or ""):
        raise argparse.ArgumentTypeError(f"not a 20-byte hex address: {value!r}")
    return value


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from exc
    if number <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return number


def _settings(config_path: str | None) -> EngineSettings:
    return EngineSettings.from_config(load_config(config_path))


async def _open(collaborators: Collaborators, stack: AsyncExitStack) -> None:
    for adapter in collaborators.closeables():
        await stack.enter_async_context(adapter)


async def cmd_run(dry_run: bool, wallet: str | None, force: bool, config_path: str | None) -> int:
    settings = _settings(config_path)
    collaborators = build_collaborators()
    async with AsyncExitStack() as stack:
        await _open(collaborators, stack)
        orchestrator = Orchestrator(
            settings,
            sentiment=collaborators.sentiment,
            chain=collaborators.chain,
            routing=collaborators.routing,
            relay=collaborators.relay,
            store=collaborators.store,
        )
        report = await orchestrator.run(dry_run=dry_run, wallet=wallet, force=force)
    print(f"Run {report.run_id} finished: {report.status}" + (f" ({report.reason})" if report.reason else ""))
    if report.status == RUN_ABORTED:
        return 2
    if report.status == RUN_COMPLETED and report.failed and not report.succeeded:
        return 1
    return 0


async def cmd_history(owner: str, limit: int | None, config_path: str | None) -> int:
    settings = _settings(config_path)
    collaborators = build_collaborators()
    async with AsyncExitStack() as stack:
        await _open(collaborators, stack)
        entries = await collaborators.store.execution_history(owner, limit or settings.history_limit)
    table = Table(title=f"Execution history for {owner}")
    for column in ("timestamp", "action", "amount_in", "amount_out", "fgi", "status", "tx_hash / error"):
        table.add_column(column)
    for entry in entries:
        table.add_row(
            entry.timestamp.isoformat(),
            entry.action,
            entry.amount_in,
            entry.amount_out or "",
            str(entry.fear_greed_index),
            entry.status,
            entry.tx_hash or entry.error_message or "",
        )
    Console().print(table)
    return 0


async def cmd_correct(targets_path: str, dry_run: bool, config_path: str | None) -> int:
    settings = _settings(config_path)
    targets = load_targets(targets_path)
    collaborators = build_collaborators()
    now = utc_now()
    async with AsyncExitStack() as stack:
        await _open(collaborators, stack)
        ctx = RunContext(
            settings=settings,
            chain=collaborators.chain,
            routing=collaborators.routing,
            relay=collaborators.relay,
            store=collaborators.store,
            run_id=f"correction-{now.strftime('%Y%m%dT%H%M%SZ')}-{uuid.uuid4().hex[:8]}",
            allocator=NonceAllocator(int(now.timestamp() * 1000)),
            decision=Decision(action=ACTION_HOLD, percentage=0.0, reason="manual correction"),
            score=0,
            rng=random.Random(),
            quote_budget=QuoteBudget(settings.max_quotes_per_run),
        )
        report = await run_correction(ctx, targets, dry_run=dry_run)
    print_previews(report.previews)
    for wallet, reason in report.skipped.items():
        print(f"skipped {wallet}: {reason}")
    if dry_run:
        return 0
    failed = [result for result in report.results if not result.success]
    print(f"Correction {report.run_id}: {len(report.results) - len(failed)} succeeded, {len(failed)} failed")
    return 1 if failed else 0


def cmd_mock_api(host: str, port: int) -> int:
    import uvicorn

    uvicorn.run("mock_api.server:app", host=host, port=port, log_level="info")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dca-executor", description="Sentiment-driven DCA executor")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--log-file", type=str, default=None, help="Also write logs to this file")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Execute today's DCA run")
    run.add_argument("--dry-run", action="store_true", help="Quote and preview without submitting anything")
    run.add_argument("--wallet", type=_address, default=None, help="Restrict the run to one smart account")
    run.add_argument("--force", action="store_true", help="Run even if today's run already happened")
    run.add_argument("--config", type=str, default=None, help="Path to a YAML config file")

    history = sub.add_parser("history", help="Show execution history for an owner")
    history.add_argument("--owner", type=_address, required=True, help="Owner (user) address")
    history.add_argument("--limit", type=_positive_int, default=None, help="Max rows (default from config)")
    history.add_argument("--config", type=str, default=None, help="Path to a YAML config file")

    correct = sub.add_parser("correct", help="Run a manual correction batch")
    correct.add_argument("--targets", type=str, required=True, help="YAML or JSON list of correction targets")
    correct.add_argument("--dry-run", action="store_true", help="Preview the batch without submitting")
    correct.add_argument("--config", type=str, default=None, help="Path to a YAML config file")

    mock = sub.add_parser("mock-api", help="Serve the offline mock API")
    mock.add_argument("--host", type=str, default="127.0.0.1")
    mock.add_argument("--port", type=_positive_int, default=18080)
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging(verbose=args.verbose, log_file=args.log_file)

    try:
        if args.command == "run":
            code = asyncio.run(cmd_run(args.dry_run, args.wallet, args.force, args.config))
        elif args.command == "history":
            code = asyncio.run(cmd_history(args.owner, args.limit, args.config))
        elif args.command == "correct":
            if not Path(args.targets).exists():
                parser.error(f"targets file not found: {args.targets}")
            code = asyncio.run(cmd_correct(args.targets, args.dry_run, args.config))
        else:
            code = cmd_mock_api(args.host, args.port)
    except (ProviderMisconfigured, RunAborted, FileNotFoundError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        code = 2
    sys.exit(code)


if __name__ == "__main__":
    main()
