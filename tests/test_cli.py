import json
import shutil
from pathlib import Path

import pandas as pd
import pytest

from bidrecon.cli import main


SAMPLE_DATA = Path(__file__).resolve().parent.parent / "sample_data"

CONFIG = """\
paths:
  takeoff: ../data/takeoff.json
  bids: ../data/bids.json
comparison:
  suggestion_top_k: 3
output:
  directory: ../reports
"""


@pytest.fixture
def workspace(tmp_path):
    shutil.copytree(SAMPLE_DATA, tmp_path / "data")
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_path = config_dir / "config.yaml"
    config_path.write_text(CONFIG, encoding="utf-8")
    return tmp_path, config_path


def _read_bids(root):
    with (root / "data" / "bids.json").open(encoding="utf-8") as handle:
        return {bid["id"]: bid for bid in json.load(handle)}


def test_cli_reconciles_against_takeoff(workspace, capsys):
    root, config_path = workspace
    exit_code = main(["--config", str(config_path), "reconcile", "--bid", "B1"])

    assert exit_code == 0
    reports = root / "reports"
    for name in ("matches.csv", "discrepancies.csv", "summary.csv", "reconciliation_audit.json"):
        assert (reports / name).exists()

    matches = pd.read_csv(reports / "matches.csv")
    assert matches["source_id"].tolist() == ["T1", "T2", "T3", "T4"]
    summary = pd.read_csv(reports / "summary.csv")
    assert summary.loc[0, "match_percentage"] == 75

    out = capsys.readouterr().out
    assert "Bright Spark Electric" in out
    assert "3/4 (75%)" in out


def test_cli_bid_to_bid_with_explicit_comparison(workspace):
    root, config_path = workspace
    exit_code = main(
        [
            "--config",
            str(config_path),
            "reconcile",
            "--bid",
            "B1",
            "--mode",
            "bid-to-bid",
            "--compare",
            "B2",
            "--output-dir",
            str(root / "b2b"),
            "--quiet",
        ]
    )

    assert exit_code == 0
    summary = pd.read_csv(root / "b2b" / "summary.csv")
    assert summary.loc[0, "mode"] == "bid_to_bid"
    assert summary.loc[0, "comparison_ids"] == "B2"
    assert summary.loc[0, "match_percentage"] == 50
    matches = pd.read_csv(root / "b2b" / "matches.csv")
    assert set(matches["counterpart_bid_id"]) == {"B2"}


def test_cli_rejects_unknown_bids(workspace):
    _, config_path = workspace
    assert main(["--config", str(config_path), "reconcile", "--bid", "B9", "--quiet"]) == 1
    assert (
        main(["--config", str(config_path), "reconcile", "--bid", "B1", "--mode", "bid", "--compare", "B9", "--quiet"])
        == 1
    )
    assert main(["--config", str(config_path), "accept", "--bid", "B9"]) == 1


def test_cli_decline_and_accept_update_snapshot(workspace, capsys):
    root, config_path = workspace

    assert main(["--config", str(config_path), "decline", "--bid", "B2", "--reason", "Over budget", "--notes", "Late"]) == 0
    assert "Bid B2: declined" in capsys.readouterr().out
    bids = _read_bids(root)
    assert bids["B2"]["status"] == "declined"
    assert bids["B2"]["decline_reason"] == "Over budget\n\nAdditional Notes:\nLate"
    assert bids["B2"]["declined_at"]

    assert main(["--config", str(config_path), "accept", "--bid", "B2"]) == 0
    bids = _read_bids(root)
    assert bids["B2"]["status"] == "accepted"
    assert bids["B2"]["decline_reason"] is None

    assert main(["--config", str(config_path), "pending", "--bid", "B2"]) == 0
    assert _read_bids(root)["B2"]["status"] == "pending"


def test_cli_decline_requires_reason(workspace):
    root, config_path = workspace
    assert main(["--config", str(config_path), "decline", "--bid", "B1", "--reason", "   "]) == 1
    assert _read_bids(root)["B1"]["status"] == "pending"


def test_cli_lifecycle_refuses_non_json_target(workspace):
    root, config_path = workspace
    target = root / "bids.csv"
    assert main(["--config", str(config_path), "accept", "--bid", "B1", "--save-to", str(target)]) == 1
    assert not target.exists()


def test_cli_missing_config(tmp_path):
    assert main(["--config", str(tmp_path / "missing.yaml"), "reconcile", "--bid", "B1"]) == 1


def test_cli_suggestion_provider_override(workspace):
    root, config_path = workspace
    exit_code = main(
        ["--config", str(config_path), "reconcile", "--bid", "B1", "--suggestion-provider", "none", "--quiet"]
    )

    assert exit_code == 0
    with (root / "reports" / "reconciliation_audit.json").open(encoding="utf-8") as handle:
        assert json.load(handle)["suggestions"] == {}
