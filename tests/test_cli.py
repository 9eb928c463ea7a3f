from __future__ import annotations

from datetime import datetime, timedelta, timezone

from typer.testing import CliRunner

from aha_digest.cli import app
from aha_digest.config import get_settings
from aha_digest.db import session_scope
from aha_digest.models import AbtestResult, Digest, FeedbackEvent, ProviderCall, Topic, User
from aha_digest.services.credits import record_provider_call

from conftest import seed_item, seed_source

runner = CliRunner()

START = datetime(2024, 6, 15, 0, tzinfo=timezone.utc)


def _init_with_items() -> tuple[int, list[int]]:
    result = runner.invoke(app, ["init-db", "--email", "me@example.com", "--topic", "ai"])
    assert result.exit_code == 0, result.output
    with session_scope(get_settings()) as session:
        topic = session.query(Topic).one()
        source = seed_source(session, topic)
        items = [
            seed_item(session, source, "First story", START + timedelta(hours=1), embedding=[1.0, 0.0]),
            seed_item(session, source, "Second story", START + timedelta(hours=2), embedding=[0.0, 1.0]),
        ]
        session.commit()
        return topic.id, [item.id for item in items]


def test_init_db_is_idempotent(isolated_env):
    first = runner.invoke(app, ["init-db", "--topic", "ai"])
    second = runner.invoke(app, ["init-db", "--topic", "ai"])

    assert first.exit_code == 0
    assert "Created topic: ai" in first.output
    assert second.exit_code == 0
    assert "Created topic" not in second.output


def test_run_window_and_show_digest(isolated_env):
    topic_id, _ = _init_with_items()

    run = runner.invoke(
        app,
        ["run-window", "--topic-id", str(topic_id), "--start", "2024-06-15T00:00:00Z", "--end", "2024-06-15T08:00:00Z"],
    )
    shown = runner.invoke(app, ["show-digest", "--topic-id", str(topic_id)])
    as_json = runner.invoke(app, ["show-digest", "--topic-id", str(topic_id), "--json"])

    assert run.exit_code == 0, run.output
    assert "2 items from 2 candidates" in run.output
    assert "Second story" in run.output
    assert shown.exit_code == 0
    assert "[complete]" in shown.output
    assert as_json.exit_code == 0
    assert '"score_debug"' in as_json.output


def test_run_window_rejects_bad_timestamp(isolated_env):
    topic_id, _ = _init_with_items()

    result = runner.invoke(app, ["run-window", "--topic-id", str(topic_id), "--start", "yesterday", "--end", "now"])

    assert result.exit_code != 0


def test_tick_schedules_and_runs(isolated_env):
    _init_with_items()

    result = runner.invoke(app, ["tick", "--now", "2024-06-15T09:00:00Z", "--run"])
    again = runner.invoke(app, ["tick", "--now", "2024-06-15T09:30:00Z"])

    assert result.exit_code == 0, result.output
    assert "2024-06-15T08:00:00.000Z -> 2024-06-15T16:00:00.000Z" in result.output
    assert ": complete" in result.output
    assert "No windows due." in again.output
    with session_scope(get_settings()) as session:
        assert session.query(Digest).count() == 1


def test_credits_requires_monthly_limit(isolated_env, monkeypatch):
    _init_with_items()

    missing = runner.invoke(app, ["credits"])
    monkeypatch.setenv("MONTHLY_CREDITS", "100")
    monkeypatch.setenv("DAILY_THROTTLE_CREDITS", "5")
    get_settings.cache_clear()
    shown = runner.invoke(app, ["credits"])
    reset = runner.invoke(app, ["reset-budget", "--period", "daily"])

    assert missing.exit_code == 1
    assert shown.exit_code == 0
    assert "monthly" in shown.output
    assert "paid calls allowed: yes" in shown.output
    assert reset.exit_code == 0
    assert "Reset daily budget" in reset.output


def test_feedback_undo_and_rebuild(isolated_env):
    topic_id, item_ids = _init_with_items()

    liked = runner.invoke(app, ["feedback", "--topic-id", str(topic_id), "--item-id", str(item_ids[0]), "--action", "like"])
    saved = runner.invoke(app, ["feedback", "--topic-id", str(topic_id), "--item-id", str(item_ids[1]), "--action", "save"])

    assert liked.exit_code == 0, liked.output
    assert "profile samples=2" in saved.output

    with session_scope(get_settings()) as session:
        event_id = session.query(FeedbackEvent).order_by(FeedbackEvent.id.desc()).first().id

    undone = runner.invoke(app, ["undo-feedback", "--event-id", str(event_id)])
    missing = runner.invoke(app, ["undo-feedback", "--event-id", "999"])
    rebuilt = runner.invoke(app, ["rebuild-profile", "--topic-id", str(topic_id)])

    assert "profile samples=1" in undone.output
    assert missing.exit_code == 1
    assert "samples=1" in rebuilt.output


def test_abtest_records_errors_without_credentials(isolated_env):
    topic_id, _ = _init_with_items()

    result = runner.invoke(
        app,
        [
            "abtest",
            "--topic-id",
            str(topic_id),
            "--start",
            "2024-06-15T00:00:00Z",
            "--end",
            "2024-06-15T08:00:00Z",
            "--variant",
            "a:openai:gpt-4o-mini",
            "--variant",
            "b:anthropic:claude-3-5-haiku-latest:none:300",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "[completed]: 2 items x 2 variants, 4 errors" in result.output
    with session_scope(get_settings()) as session:
        assert session.query(AbtestResult).count() == 4


def test_abtest_rejects_malformed_variant(isolated_env):
    topic_id, _ = _init_with_items()

    result = runner.invoke(
        app,
        ["abtest", "--topic-id", str(topic_id), "--start", "2024-06-15T00:00:00Z", "--end", "2024-06-15T08:00:00Z",
         "--variant", "only-name"],
    )

    assert result.exit_code != 0


def test_run_window_on_empty_window(isolated_env):
    topic_id, _ = _init_with_items()

    result = runner.invoke(
        app,
        ["run-window", "--topic-id", str(topic_id), "--start", "2024-07-01T00:00:00Z", "--end", "2024-07-01T08:00:00Z"],
    )

    assert result.exit_code == 0, result.output
    assert "0 items from 0 candidates" in result.output
    assert "No items in this digest." in result.output


def test_summarize_requires_one_input(isolated_env, tmp_path):
    runner.invoke(app, ["init-db"])
    note = tmp_path / "note.txt"
    note.write_text("pasted body", encoding="utf-8")

    neither = runner.invoke(app, ["summarize"])
    both = runner.invoke(app, ["summarize", "--text", "x", "--file", str(note)])

    assert neither.exit_code == 1
    assert "exactly one of --text or --file" in neither.output
    assert both.exit_code == 1


def test_summarize_stops_when_budget_spent(isolated_env, monkeypatch):
    monkeypatch.setenv("MONTHLY_CREDITS", "1")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    get_settings.cache_clear()
    runner.invoke(app, ["init-db"])
    with session_scope(get_settings()) as session:
        user_id = session.query(User.id).scalar()
        record_provider_call(
            session, user_id=user_id, purpose="triage", provider="openai", model="m", status="ok", credits=5.0
        )
        session.commit()

    result = runner.invoke(app, ["summarize", "--text", "A long pasted article."])

    assert result.exit_code == 1
    assert "BUDGET_EXCEEDED" in result.output
    with session_scope(get_settings()) as session:
        purposes = [row.purpose for row in session.query(ProviderCall).all()]
    assert purposes == ["triage"]
