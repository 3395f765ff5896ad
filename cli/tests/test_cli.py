"""Tests for the Talkah operator CLI.

Every test runs the commands against a throwaway SQLite file so the
engine, catalog and reconciler are exercised end to end.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from typer.testing import CliRunner

from talkah_cli.app import app

runner = CliRunner()


@pytest.fixture()
def db_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'state.db'}"


def _invoke(db_url: str, *args: str, json_mode: bool = False) -> Any:
    options = ["--json"] if json_mode else []
    return runner.invoke(app, [*options, "--database-url", db_url, *args])


def _json(result: Any) -> Any:
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def _write_event(tmp_path: Path, **overrides: Any) -> Path:
    event: dict[str, Any] = {
        "external_event_id": "evt_replay_1",
        "event_type": "payment_failed",
        "user_id": "u1",
        "occurred_at": "2030-01-01T00:00:00Z",
        "payload": {"attempt_count": 1},
    }
    event.update(overrides)
    path = tmp_path / "event.json"
    path.write_text(json.dumps(event), encoding="utf-8")
    return path


class TestCatalogCommands:
    def test_plans_empty_before_seed(self, db_url: str) -> None:
        result = _invoke(db_url, "plans")

        assert result.exit_code == 0
        assert "seed-plans" in result.output

    def test_seed_plans_with_prices(self, db_url: str) -> None:
        plans = _json(_invoke(db_url, "seed-plans", "--price", "pro_monthly=price_123", json_mode=True))

        assert [plan["id"] for plan in plans] == ["free", "pro", "premium"]
        assert plans[1]["stripe_price_id_monthly"] == "price_123"

    def test_seed_plans_rejects_malformed_price(self, db_url: str) -> None:
        result = _invoke(db_url, "seed-plans", "--price", "pro_monthly")

        assert result.exit_code == 2

    def test_plans_json(self, db_url: str) -> None:
        _invoke(db_url, "seed-plans")

        plans = _json(_invoke(db_url, "plans", json_mode=True))

        premium = plans[-1]
        assert premium["id"] == "premium"
        assert premium["limits"] == {"calls": None, "texts": None, "emails": None}

    def test_plans_table(self, db_url: str) -> None:
        _invoke(db_url, "seed-plans")

        result = _invoke(db_url, "plans")

        assert result.exit_code == 0
        assert "premium" in result.output
        assert "unlimited" in result.output


class TestSubscriptionCommands:
    def test_provision_and_view(self, db_url: str) -> None:
        _invoke(db_url, "seed-plans")

        state = _json(_invoke(db_url, "provision", "u1", "--customer-ref", "cus_1", json_mode=True))
        view = _json(_invoke(db_url, "view", "u1", json_mode=True))

        assert state["plan_id"] == "free"
        assert state["external_customer_ref"] == "cus_1"
        assert view["plan"]["id"] == "free"
        assert [item["used"] for item in view["usage"]] == [0, 0, 0]

    def test_view_human_output(self, db_url: str) -> None:
        _invoke(db_url, "seed-plans")
        _invoke(db_url, "provision", "u1")

        result = _invoke(db_url, "view", "u1")

        assert result.exit_code == 0
        assert "Usage this period" in result.output

    def test_view_unknown_user_exits_3(self, db_url: str) -> None:
        _invoke(db_url, "seed-plans")

        result = _invoke(db_url, "view", "ghost")

        assert result.exit_code == 3
        assert "SubscriptionNotFoundError" in result.output

    def test_rollover_nothing_due(self, db_url: str) -> None:
        _invoke(db_url, "seed-plans")
        _invoke(db_url, "provision", "u1")

        assert _json(_invoke(db_url, "rollover", json_mode=True)) == {"rolled_over": []}
        assert _json(_invoke(db_url, "rollover", "u1", json_mode=True)) == {"rolled_over": []}
        assert "No billing periods were due" in _invoke(db_url, "rollover").output


class TestReplayCommand:
    def test_replay_applies_event(self, db_url: str, tmp_path: Path) -> None:
        _invoke(db_url, "seed-plans")
        _invoke(db_url, "provision", "u1")

        result = _json(_invoke(db_url, "replay", str(_write_event(tmp_path)), json_mode=True))
        view = _json(_invoke(db_url, "view", "u1", json_mode=True))

        assert result["outcome"] == "applied"
        assert view["status"] == "past_due"

    def test_replay_twice_is_duplicate(self, db_url: str, tmp_path: Path) -> None:
        _invoke(db_url, "seed-plans")
        _invoke(db_url, "provision", "u1")
        event_file = str(_write_event(tmp_path))
        _invoke(db_url, "replay", event_file)

        result = _json(_invoke(db_url, "replay", event_file, json_mode=True))

        assert result["outcome"] == "ignored"
        assert result["reason"] == "duplicate"

    def test_replay_failed_event_exits_1(self, db_url: str, tmp_path: Path) -> None:
        _invoke(db_url, "seed-plans")

        result = _invoke(db_url, "replay", str(_write_event(tmp_path, user_id="ghost")))

        assert result.exit_code == 1
        assert "failed" in result.output

    def test_replay_invalid_file_exits_2(self, db_url: str, tmp_path: Path) -> None:
        result = _invoke(db_url, "replay", str(_write_event(tmp_path, event_type="refund")))

        assert result.exit_code == 2

    def test_replay_missing_file(self, db_url: str, tmp_path: Path) -> None:
        result = _invoke(db_url, "replay", str(tmp_path / "absent.json"))

        assert result.exit_code != 0
