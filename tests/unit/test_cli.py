"""
Unit tests for the tweet-pipeline CLI.
"""

import json

import pytest
from typer.testing import CliRunner

from tweet_pipeline import cli
from tweet_pipeline.cli import app
from tweet_pipeline.settings import get_settings
from tweet_pipeline.coordinator import DLQRecord
from tweet_pipeline.models import Event

runner = CliRunner()


def write_records(path, n: int) -> None:
    with open(path, "w", encoding="utf-8") as f:
        for i in range(n):
            e = Event(id=f"e{i}", source="Twitter", payload={}, createdAt=1700000000)
            f.write(DLQRecord.from_failure(e, "busy", attempt_count=3).to_json() + "\n")


def test_dlq_prints_latest_records(tmp_path):
    p = tmp_path / "dlq.ndjson"
    write_records(p, 5)

    result = runner.invoke(app, ["dlq", "--path", str(p), "--limit", "2"])
    assert result.exit_code == 0
    lines = [json.loads(ln) for ln in result.stdout.splitlines() if ln.strip()]
    assert [r["event_id"] for r in lines] == ["e3", "e4"]
    assert lines[0]["attempt_count"] == 3


def test_dlq_oldest(tmp_path):
    p = tmp_path / "dlq.ndjson"
    write_records(p, 5)

    result = runner.invoke(app, ["dlq", "--path", str(p), "--limit", "2", "--oldest"])
    assert result.exit_code == 0
    ids = [json.loads(ln)["event_id"] for ln in result.stdout.splitlines() if ln.strip()]
    assert ids == ["e0", "e1"]


def test_dlq_missing_file(tmp_path):
    result = runner.invoke(app, ["dlq", "--path", str(tmp_path / "none.ndjson")])
    assert result.exit_code == 0
    assert result.stdout.strip() == ""


@pytest.fixture
def cli_env(tmp_path, monkeypatch, broker):
    """Point the CLI at an in-memory broker and a temporary DLQ."""

    async def fake_connect(redis_url):
        return broker

    monkeypatch.setenv("PIPELINE_DLQ_PATH", str(tmp_path / "dlq.ndjson"))
    monkeypatch.setenv("PIPELINE_INITIAL_RETRY_DELAY_MS", "1")
    monkeypatch.setattr(cli, "_connect", fake_connect)
    get_settings.cache_clear()
    yield broker
    get_settings.cache_clear()


def test_submit_reports_accepted_and_rejected(tmp_path, cli_env, raw_tweet):
    events = tmp_path / "events.ndjson"
    lines = [
        json.dumps({**raw_tweet, "id": "a"}),
        "",
        json.dumps({"source": "Twitter"}),
        "not json",
        json.dumps({**raw_tweet, "id": "b"}),
    ]
    events.write_text("\n".join(lines) + "\n", encoding="utf-8")

    result = runner.invoke(app, ["submit", str(events)])
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == {
        "accepted": 2,
        "rejected": 2,
        "delivered": 2,
        "dead_lettered": 0,
    }
    assert sorted(m["id"] for m in cli_env.published_on("tweet_events")) == ["a", "b"]
    assert cli_env.closed


def test_submit_dead_letters_undeliverable(tmp_path, cli_env, raw_tweet):
    cli_env.always_fail = True
    events = tmp_path / "events.ndjson"
    events.write_text(json.dumps(raw_tweet) + "\n", encoding="utf-8")

    result = runner.invoke(app, ["submit", str(events)])
    assert result.exit_code == 0, result.output
    summary = json.loads(result.stdout)
    assert summary["accepted"] == 1
    assert summary["dead_lettered"] == 1
    assert (tmp_path / "dlq.ndjson").exists()
