import io
import json
from pathlib import Path

import pytest
from rich.console import Console

from conftest import USDC, account


@pytest.mark.asyncio
async def test_run_artifacts_written(world, tmp_path: Path):
    world.enroll(1, usdc=1_000 * USDC)
    world.enroll(2, usdc=2 * USDC)
    output = io.StringIO()
    orchestrator = world.orchestrator()
    orchestrator.write_artifacts = True
    orchestrator.log_dir = tmp_path
    orchestrator.console = Console(file=output, width=200)

    report = await orchestrator.run()

    (run_dir,) = [path for path in tmp_path.iterdir() if path.is_dir()]
    summary = json.loads((run_dir / "run_summary.json").read_text(encoding="utf-8"))
    assert summary["run_id"] == report.run_id
    assert summary["status"] == "completed"
    assert summary["action"] == "buy"
    assert summary["succeeded"] == 1
    assert summary["volume"] == "49900000"
    assert account(2) in summary["excluded"]

    lines = (run_dir / "results.jsonl").read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["wallet_address"] for line in lines] == [account(1)]
    assert "excluded" in output.getvalue()
    assert "success=1" in output.getvalue()


@pytest.mark.asyncio
async def test_dry_run_prints_preview_table(world):
    world.enroll(1, usdc=1_000 * USDC)
    output = io.StringIO()
    orchestrator = world.orchestrator()
    orchestrator.write_artifacts = True
    orchestrator.console = Console(file=output, width=200)

    await orchestrator.run(dry_run=True)

    assert "Dry Run Preview" in output.getvalue()
    assert "49900000" in output.getvalue()
