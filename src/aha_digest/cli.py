from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from pathlib import Path

import typer
from sqlalchemy import select

from .config import get_settings
from .db import init_db, session_scope
from .errors import DigestError
from .log import setup_logging
from .models import (
    BUDGET_PERIOD_DAILY,
    BUDGET_PERIOD_MONTHLY,
    FEEDBACK_DISLIKE,
    FEEDBACK_LIKE,
    FEEDBACK_SAVE,
    FEEDBACK_SKIP,
    Digest,
    Topic,
    User,
)
from .schemas import AbtestVariantConfig
from .services.abtest import DEFAULT_MAX_ITEMS, create_abtest_run, describe_run, run_abtest_job, summarize_abtest
from .services.credits import compute_credits_status, reset_budget
from .services.digest_assembler import DigestRuntime, load_digest_items, process_job, run_digest_for_window
from .services.job_queue import InMemoryJobQueue
from .services.llm_router import create_router
from .services.preference_profiles import PreferenceProfileStore
from .services.scheduler import get_schedulable_topics, parse_scheduler_config, schedule_due_windows
from .services.summaries import summarize_text
from .time_utils import parse_iso, to_iso, utcnow
from .views.table_renderer import (
    render_abtest_summary,
    render_credits_status,
    render_digest_items,
    render_summary,
)

app = typer.Typer(help="Aha digest: scheduled, LLM-triaged digests per topic", no_args_is_help=True)


class DigestMode(str, Enum):
    low = "low"
    normal = "normal"
    high = "high"


class FeedbackAction(str, Enum):
    like = FEEDBACK_LIKE
    save = FEEDBACK_SAVE
    dislike = FEEDBACK_DISLIKE
    skip = FEEDBACK_SKIP


class BudgetPeriod(str, Enum):
    monthly = BUDGET_PERIOD_MONTHLY
    daily = BUDGET_PERIOD_DAILY


@app.callback()
def main_callback() -> None:
    setup_logging(get_settings().log_level)


def _parse_time(raw: str | None, option: str) -> datetime:
    if not raw:
        return utcnow()
    try:
        return parse_iso(raw)
    except ValueError as exc:
        raise typer.BadParameter(f"{option} must be an ISO-8601 timestamp") from exc


def _primary_user_id(session) -> int:
    user_id = session.scalar(select(User.id).order_by(User.created_at.asc(), User.id.asc()).limit(1))
    if user_id is None:
        typer.echo("No user account yet. Run `aha-digest init-db` first.")
        raise typer.Exit(code=1)
    return user_id


def _require_topic(session, user_id: int, topic_id: int) -> Topic:
    topic = session.get(Topic, topic_id)
    if topic is None or topic.user_id != user_id:
        typer.echo(f"Topic not found: {topic_id}")
        raise typer.Exit(code=1)
    return topic


def _require_monthly_limit(settings) -> float:
    if settings.monthly_credits is None:
        typer.echo("MONTHLY_CREDITS is not configured; credit tracking is off.")
        raise typer.Exit(code=1)
    return settings.monthly_credits


def _parse_variant(raw: str, order: int) -> AbtestVariantConfig:
    # name:provider:model[:reasoning_effort[:max_output_tokens]]
    parts = [part.strip() for part in raw.split(":")]
    if len(parts) < 3 or not all(parts[:3]):
        raise typer.BadParameter("variant must look like name:provider:model[:effort[:max_tokens]]")
    max_tokens = None
    if len(parts) > 4 and parts[4]:
        try:
            max_tokens = int(parts[4])
        except ValueError as exc:
            raise typer.BadParameter(f"invalid max_output_tokens in variant: {raw}") from exc
    return AbtestVariantConfig(
        name=parts[0],
        provider=parts[1],
        model=parts[2],
        reasoning_effort=(parts[3] or None) if len(parts) > 3 else None,
        max_output_tokens=max_tokens,
        order=order,
    )


@app.command("init-db")
def init_db_command(
    email: str | None = typer.Option(None, "--email", help="Email for the primary account"),
    topic: list[str] = typer.Option([], "--topic", help="Create a topic with this name (repeatable)"),
) -> None:
    """Create tables and the primary account."""

    settings = get_settings()
    init_db(settings)
    with session_scope(settings) as session:
        user = session.scalar(select(User).order_by(User.created_at.asc(), User.id.asc()).limit(1))
        if user is None:
            user = User(email=email)
            session.add(user)
            session.flush()
            typer.echo(f"Created user {user.id}")
        existing = set(session.scalars(select(Topic.name).where(Topic.user_id == user.id)).all())
        for name in topic:
            if name in existing:
                continue
            session.add(Topic(user_id=user.id, name=name))
            typer.echo(f"Created topic: {name}")
        session.commit()
    typer.echo(f"Database ready: {settings.db_url}")


@app.command("tick")
def tick(
    now_text: str | None = typer.Option(None, "--now", help="ISO timestamp, defaults to current UTC time"),
    run_inline: bool = typer.Option(False, "--run/--no-run", help="Run enqueued jobs immediately"),
) -> None:
    """Schedule due windows for every topic."""

    settings = get_settings()
    init_db(settings)
    now = _parse_time(now_text, "--now")
    queue = InMemoryJobQueue()
    with session_scope(settings) as session:
        targets = get_schedulable_topics(session)
        enqueued = schedule_due_windows(session, queue, targets, parse_scheduler_config(settings), now)
        if not enqueued:
            typer.echo("No windows due.")
            return
        for target, window in enqueued:
            typer.echo(
                f"due: topic={target.topic_id} {to_iso(window.window_start)} -> {to_iso(window.window_end)}"
                f" mode={window.mode or 'since_last_run'}"
            )
        if not run_inline:
            return

        runtime = DigestRuntime.from_settings(settings)
        for job in queue.drain():
            result = process_job(session, runtime, job)
            typer.echo(f"{job.job_id}: {result.status}" + (f" ({result.error})" if result.error else ""))


@app.command("run-window")
def run_window(
    topic_id: int = typer.Option(..., "--topic-id"),
    start_text: str = typer.Option(..., "--start", help="ISO timestamp"),
    end_text: str = typer.Option(..., "--end", help="ISO timestamp"),
    mode: DigestMode = typer.Option(DigestMode.normal, "--mode"),
) -> None:
    """Build the digest for one window now."""

    settings = get_settings()
    init_db(settings)
    window_start = _parse_time(start_text, "--start")
    window_end = _parse_time(end_text, "--end")
    with session_scope(settings) as session:
        user_id = _primary_user_id(session)
        _require_topic(session, user_id, topic_id)
        runtime = DigestRuntime.from_settings(settings)
        result = run_digest_for_window(session, runtime, user_id, topic_id, window_start, window_end, mode.value)
        if result.status != "complete":
            typer.echo(f"Digest failed [{result.error_kind}]: {result.error}")
            raise typer.Exit(code=1)
        typer.echo(
            f"Digest {result.digest_id}: {result.items} items from {result.candidates} candidates"
            f" (tier={result.tier}, triaged={result.triaged}, failures={result.triage_failures},"
            f" summarized={result.summarized},"
            f" credits={result.credits_used:.4f})"
        )
        typer.echo(render_digest_items(load_digest_items(session, result.digest_id)), nl=False)


@app.command("show-digest")
def show_digest(
    digest_id: int | None = typer.Option(None, "--id"),
    topic_id: int | None = typer.Option(None, "--topic-id", help="Show the latest digest of a topic"),
    as_json: bool = typer.Option(False, "--json", help="Print score debug records as JSON"),
) -> None:
    """Show a stored digest."""

    settings = get_settings()
    init_db(settings)
    with session_scope(settings) as session:
        if digest_id is not None:
            digest = session.get(Digest, digest_id)
        else:
            stmt = select(Digest).order_by(Digest.window_end.desc(), Digest.id.desc()).limit(1)
            if topic_id is not None:
                stmt = stmt.where(Digest.topic_id == topic_id)
            digest = session.scalar(stmt)
        if digest is None:
            typer.echo("No digest found.")
            raise typer.Exit(code=1)

        if as_json:
            payload = {
                "digest_id": digest.id,
                "status": digest.status,
                "tier": digest.tier,
                "window_start": to_iso(digest.window_start),
                "window_end": to_iso(digest.window_end),
                "items": [
                    {
                        "rank": item.rank,
                        "candidate_id": item.candidate_id,
                        "score": item.score,
                        "triage": json.loads(item.triage_json) if item.triage_json else None,
                        "score_debug": json.loads(item.score_debug_json),
                    }
                    for item in digest.items
                ],
            }
            typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))
            return

        heading = (
            f"Digest {digest.id} [{digest.status}] topic={digest.topic_id} tier={digest.tier} "
            f"{to_iso(digest.window_start)} -> {to_iso(digest.window_end)}"
        )
        if digest.error_kind:
            heading += f"\nerror: {digest.error_kind}: {digest.error_message or ''}"
        typer.echo(render_digest_items(load_digest_items(session, digest.id), heading=heading), nl=False)


@app.command("credits")
def credits_command(
    at_text: str | None = typer.Option(None, "--at", help="ISO timestamp, defaults to now"),
) -> None:
    """Show credit usage for the current month and day."""

    settings = get_settings()
    init_db(settings)
    monthly_limit = _require_monthly_limit(settings)
    with session_scope(settings) as session:
        status = compute_credits_status(
            session,
            user_id=_primary_user_id(session),
            monthly_limit=monthly_limit,
            daily_limit=settings.daily_throttle_credits,
            window_end=_parse_time(at_text, "--at"),
        )
        typer.echo(render_credits_status(status), nl=False)


@app.command("reset-budget")
def reset_budget_command(
    period: BudgetPeriod = typer.Option(BudgetPeriod.monthly, "--period"),
) -> None:
    """Offset the current period's spend so paid calls resume."""

    settings = get_settings()
    init_db(settings)
    monthly_limit = _require_monthly_limit(settings)
    with session_scope(settings) as session:
        row = reset_budget(
            session,
            user_id=_primary_user_id(session),
            period=period.value,
            monthly_limit=monthly_limit,
            daily_limit=settings.daily_throttle_credits,
        )
        session.commit()
        typer.echo(f"Reset {period.value} budget (offset {row.credits_at_reset:.4f} credits)")


@app.command("feedback")
def feedback(
    topic_id: int = typer.Option(..., "--topic-id"),
    item_id: int = typer.Option(..., "--item-id", help="Content item id"),
    action: FeedbackAction = typer.Option(..., "--action"),
    digest_id: int | None = typer.Option(None, "--digest-id"),
) -> None:
    """Record feedback on an item and update the topic profile."""

    settings = get_settings()
    init_db(settings)
    store = PreferenceProfileStore(alpha=settings.preference_ema_alpha)
    with session_scope(settings) as session:
        user_id = _primary_user_id(session)
        _require_topic(session, user_id, topic_id)
        event = store.record_feedback(session, user_id, topic_id, item_id, action.value, digest_id=digest_id)
        session.commit()
        profile = store.get_profile(session, user_id, topic_id)
        typer.echo(f"Feedback {event.id} recorded: {action.value} (profile samples={profile.sample_count})")


@app.command("undo-feedback")
def undo_feedback(event_id: int = typer.Option(..., "--event-id")) -> None:
    """Delete a feedback event and rebuild the profile without it."""

    settings = get_settings()
    init_db(settings)
    store = PreferenceProfileStore(alpha=settings.preference_ema_alpha)
    with session_scope(settings) as session:
        profile = store.delete_feedback(session, event_id)
        if profile is None:
            typer.echo(f"Feedback event not found: {event_id}")
            raise typer.Exit(code=1)
        session.commit()
        typer.echo(f"Feedback {event_id} removed (profile samples={profile.sample_count})")


@app.command("rebuild-profile")
def rebuild_profile(topic_id: int = typer.Option(..., "--topic-id")) -> None:
    """Replay all feedback for a topic into a fresh profile."""

    settings = get_settings()
    init_db(settings)
    store = PreferenceProfileStore(alpha=settings.preference_ema_alpha)
    with session_scope(settings) as session:
        user_id = _primary_user_id(session)
        _require_topic(session, user_id, topic_id)
        profile = store.rebuild(session, user_id, topic_id)
        session.commit()
        typer.echo(f"Profile rebuilt for topic {topic_id} (samples={profile.sample_count})")


@app.command("summarize")
def summarize(
    text: str | None = typer.Option(None, "--text", help="Text to summarize"),
    file: Path | None = typer.Option(None, "--file", exists=True, dir_okay=False, readable=True),
    title: str | None = typer.Option(None, "--title"),
    url: str | None = typer.Option(None, "--url"),
    author: str | None = typer.Option(None, "--author"),
    source_type: str | None = typer.Option(None, "--source-type"),
    tier: DigestMode = typer.Option(DigestMode.normal, "--tier"),
) -> None:
    """Summarize pasted text or a file on demand."""

    if (text is None) == (file is None):
        typer.echo("Pass exactly one of --text or --file.")
        raise typer.Exit(code=1)
    body = text if text is not None else file.read_text(encoding="utf-8")

    settings = get_settings()
    init_db(settings)
    with session_scope(settings) as session:
        user_id = _primary_user_id(session)
        try:
            summary = summarize_text(
                session,
                create_router(settings),
                settings,
                user_id,
                body,
                title=title,
                author=author,
                url=url,
                source_type=source_type,
                tier=tier.value,
            )
        except DigestError as exc:
            session.commit()
            typer.echo(f"Summary failed [{exc.kind}]: {exc}")
            raise typer.Exit(code=1) from exc
        session.commit()
        typer.echo(render_summary(summary), nl=False)


@app.command("abtest")
def abtest(
    topic_id: int = typer.Option(..., "--topic-id"),
    start_text: str = typer.Option(..., "--start", help="ISO timestamp"),
    end_text: str = typer.Option(..., "--end", help="ISO timestamp"),
    variant: list[str] = typer.Option(
        ..., "--variant", help="name:provider:model[:effort[:max_tokens]] (repeatable)"
    ),
    max_items: int = typer.Option(DEFAULT_MAX_ITEMS, "--max-items", min=1),
) -> None:
    """Replay one window's candidates through several LLM variants."""

    settings = get_settings()
    init_db(settings)
    variants = [_parse_variant(raw, order) for order, raw in enumerate(variant, start=1)]
    window_start = _parse_time(start_text, "--start")
    window_end = _parse_time(end_text, "--end")
    with session_scope(settings) as session:
        user_id = _primary_user_id(session)
        _require_topic(session, user_id, topic_id)
        try:
            run = create_abtest_run(session, user_id, topic_id, window_start, window_end, variants, max_items)
        except DigestError as exc:
            typer.echo(str(exc))
            raise typer.Exit(code=1) from exc
        session.commit()

        runtime = DigestRuntime.from_settings(settings)
        result = run_abtest_job(session, runtime.router_factory, run.id)
        session.refresh(run)
        info = describe_run(run)
        typer.echo(
            f"A/B run {result.run_id} [{result.status}]: {result.item_count} items x "
            f"{result.variant_count} variants, {result.error_count} errors"
        )
        if info["error"]:
            typer.echo(f"error: {info['error']}")
        typer.echo(render_abtest_summary(summarize_abtest(session, run.id)), nl=False)
        if result.status != "completed":
            raise typer.Exit(code=1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
