from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from dca_executor.config import repo_root
from dca_executor.orchestrator.models import ExecutionResult, RunReport


class TradeLogger:
    """Per-run artifacts: ``results.jsonl`` plus ``run_summary.json`` under ``runs/<timestamp>``."""

    def __init__(self, base_dir: Optional[Path] = None, console: Optional[Console] = None) -> None:
        root = repo_root()
        base = Path(base_dir) if base_dir else root / "runs"
        if not base.is_absolute():
            base = root / base
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
        self.run_dir = base / timestamp
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.run_dir / "results.jsonl"
        self._file = self.path.open("a", encoding="utf-8")
        self._entries: List[Dict[str, Any]] = []
        self.console = console or Console()

    def log(self, result: ExecutionResult) -> None:
        entry = result.model_dump(mode="json")
        self._entries.append(entry)
        self._file.write(json.dumps(entry) + "\n")
        self._file.flush()

    def write_summary(self, report: RunReport) -> Path:
        path = self.run_dir / "run_summary.json"
        path.write_text(json.dumps(report.summary(), indent=2, sort_keys=True), encoding="utf-8")
        return path

    def summarize(self, report: RunReport) -> None:
        table = Table(title=f"DCA Run {report.run_id} ({report.status})")
        table.add_column("Account")
        table.add_column("Pair")
        table.add_column("Amount In", justify="right")
        table.add_column("Amount Out", justify="right")
        table.add_column("Status")
        table.add_column("Detail")
        for result in report.results:
            status = "ok" if result.success else (result.error_type or "failed")
            if result.is_retry:
                status = f"retry:{status}"
            table.add_row(
                result.wallet_address,
                result.pair,
                str(result.amount_in),
                str(result.amount_out or ""),
                status,
                result.tx_hash or result.error_detail or "",
            )
        self.console.print(table)
        for account, reason in report.excluded.items():
            self.console.print(f"[yellow]excluded[/yellow] {account}: {reason}")
        counts = self.status_counts()
        if counts:
            self.console.print(", ".join(f"{key}={value}" for key, value in sorted(counts.items())))

    def status_counts(self) -> Dict[str, int]:
        return dict(Counter("success" if entry.get("success") else (entry.get("error_type") or "unknown") for entry in self._entries))

    def close(self) -> None:
        self._file.close()


PREVIEW_COLUMNS = ("account", "pair", "amount_in", "fee", "net", "expected_out", "min_out", "status")


def print_previews(previews: List[Dict[str, Any]], console: Optional[Console] = None) -> None:
    table = Table(title="Dry Run Preview")
    for column in PREVIEW_COLUMNS:
        table.add_column(column)
    for preview in previews:
        table.add_row(*(str(preview.get(column, "")) for column in PREVIEW_COLUMNS))
    (console or Console()).print(table)


__all__ = ["TradeLogger", "print_previews"]
