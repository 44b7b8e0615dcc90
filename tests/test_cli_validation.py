import pytest

from dca_executor.main import _build_parser, main


def test_invalid_wallet_address() -> None:
    parser = _build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args(["run", "--wallet", "0x1234"])


def test_correct_requires_targets() -> None:
    parser = _build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args(["correct", "--dry-run"])


def test_history_limit_must_be_positive() -> None:
    parser = _build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args(["history", "--owner", "0x" + "ee" * 20, "--limit", "0"])


def test_run_flags_parsed() -> None:
    args = _build_parser().parse_args(["-v", "run", "--dry-run", "--force", "--wallet", "0x" + "5A" * 20])
    assert args.command == "run"
    assert args.verbose and args.dry_run and args.force
    assert args.wallet == "0x" + "5A" * 20


def test_missing_targets_file(tmp_path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["correct", "--targets", str(tmp_path / "missing.yaml")])
    assert excinfo.value.code == 2


def test_underfunded_operator_exits_cleanly(tmp_path, monkeypatch, capsys) -> None:
    for flag in ("SENTIMENT_LIVE", "CHAIN_LIVE", "ROUTING_LIVE", "RELAY_LIVE"):
        monkeypatch.setenv(flag, "0")
    monkeypatch.setenv("STORE_BACKEND", "memory")
    targets = tmp_path / "targets.yaml"
    targets.write_text(
        "- wallet: \"0x" + "5a" * 20 + "\"\n  token_in: usdc\n  token_out: weth\n  amount: 10\n", encoding="utf-8"
    )

    with pytest.raises(SystemExit) as excinfo:
        main(["correct", "--targets", str(targets)])

    assert excinfo.value.code == 2
    assert "below required" in capsys.readouterr().err
