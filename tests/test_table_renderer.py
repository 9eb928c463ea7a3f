from __future__ import annotations

from aha_digest.schemas import AbtestVariantSummary, CreditsStatus, DigestItemView
from aha_digest.views.table_renderer import (
    _title_cell,
    render_abtest_summary,
    render_credits_status,
    render_digest_items,
)


def test_title_cell_links_to_item_url():
    url = "https://example.com/posts/2024/06/new-benchmark?ref=feed&id=42"
    title = _title_cell("New benchmark", url)
    assert hasattr(title, "spans")
    assert url in str(title.style)


def test_title_cell_without_url_is_plain_text():
    assert _title_cell("Untitled", "") == "Untitled"


def test_digest_render_marks_failed_triage():
    rendered = render_digest_items(
        [
            DigestItemView(
                rank=1,
                kind="cluster",
                candidate_id="cluster:3",
                title="Model release",
                url="https://example.com/a",
                score=0.912,
                ai_score=0.9,
                triage_failed=False,
            ),
            DigestItemView(
                rank=2,
                kind="item",
                candidate_id="item:8",
                title="Quiet update",
                url="",
                score=0.1,
                ai_score=None,
                triage_failed=True,
            ),
        ],
        heading="Digest 1 [complete]",
    )

    assert "Digest 1 [complete]" in rendered
    assert "Model release" in rendered
    assert "0.912" in rendered
    assert "0.90" in rendered
    assert "Quiet update" in rendered


def test_empty_digest_render():
    assert "No items in this digest." in render_digest_items([])


def test_credits_render_shows_daily_dash_when_unset():
    rendered = render_credits_status(
        CreditsStatus(
            monthly_used=95.0,
            monthly_limit=100.0,
            monthly_remaining=5.0,
            daily_used=None,
            daily_limit=None,
            daily_remaining=None,
            paid_calls_allowed=True,
            warning_level="approaching",
        )
    )

    assert "95.00" in rendered
    assert "paid calls allowed: yes" in rendered
    assert "warning: approaching" in rendered


def test_abtest_summary_render():
    rendered = render_abtest_summary(
        [
            AbtestVariantSummary(
                name="fast",
                provider="openai",
                model="gpt-4o-mini",
                ok_count=3,
                error_count=1,
                mean_ai_score=0.6,
                input_tokens=360,
                output_tokens=90,
            )
        ]
    )

    assert "fast" in rendered
    assert "gpt-4o-mini" in rendered
    assert "3/1" in rendered
    assert "0.600" in rendered
    assert "360/90" in rendered
    assert "No variants recorded" in render_abtest_summary([])


def test_abtest_summary_keeps_variant_names_whole_at_80_columns(monkeypatch):
    monkeypatch.setenv("COLUMNS", "80")
    rendered = render_abtest_summary(
        [
            AbtestVariantSummary(
                name="cheap-haiku",
                provider="anthropic",
                model="claude-3-5-haiku-latest",
                ok_count=12,
                error_count=0,
                mean_ai_score=None,
                input_tokens=14400,
                output_tokens=3600,
            )
        ]
    )

    assert "Variant" in rendered
    assert "cheap-haiku" in rendered
    assert "12/0" in rendered
