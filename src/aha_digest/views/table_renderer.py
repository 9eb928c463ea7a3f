from __future__ import annotations

from rich import box
from rich.console import Console
from rich.table import Table
from rich.text import Text

from ..schemas import AbtestVariantSummary, CreditsStatus, DigestItemView, SummaryResult


def _console() -> Console:
    return Console(
        force_terminal=True,
        color_system="standard",
        markup=False,
        highlight=False,
    )


def _build_table() -> Table:
    return Table(
        show_header=True,
        header_style="bold cyan",
        box=box.SQUARE,
        show_lines=True,
        pad_edge=True,
        expand=True,
    )


def _title_cell(title: str, url: str) -> Text | str:
    if not url:
        return title
    return Text(title, style=f"link {url}")


def _format_ai_score(item: DigestItemView) -> str:
    if item.triage_failed or item.ai_score is None:
        return "-"
    return f"{item.ai_score:.2f}"


def render_digest_items(items: list[DigestItemView], heading: str | None = None) -> str:
    console = _console()
    with console.capture() as capture:
        if heading:
            console.print(heading)
        if not items:
            console.print("No items in this digest.")
        else:
            console.print(_digest_table(items))
    return capture.get()


def _digest_table(items: list[DigestItemView]) -> Table:
    table = _build_table()
    table.add_column("#", justify="right", width=4, no_wrap=True)
    table.add_column("Kind", width=8, no_wrap=True)
    table.add_column("Title (clickable)", ratio=4, overflow="fold")
    table.add_column("AI", justify="right", width=6, no_wrap=True)
    table.add_column("Score", justify="right", width=8, no_wrap=True)
    for item in items:
        title = _title_cell(item.title or item.candidate_id, item.url)
        if item.one_liner:
            title = Text.assemble(title, "\n", (item.one_liner, "dim"))
        table.add_row(
            str(item.rank),
            item.kind,
            title,
            _format_ai_score(item),
            f"{item.score:.3f}",
        )
    return table


def _format_credits(value: float | None) -> str:
    return "-" if value is None else f"{value:.2f}"


def render_credits_status(status: CreditsStatus) -> str:
    console = _console()
    with console.capture() as capture:
        table = _build_table()
        table.add_column("Period", width=10, no_wrap=True)
        table.add_column("Used", justify="right")
        table.add_column("Limit", justify="right")
        table.add_column("Remaining", justify="right")
        table.add_row(
            "monthly",
            _format_credits(status.monthly_used),
            _format_credits(status.monthly_limit),
            _format_credits(status.monthly_remaining),
        )
        table.add_row(
            "daily",
            _format_credits(status.daily_used),
            _format_credits(status.daily_limit),
            _format_credits(status.daily_remaining),
        )
        console.print(table)
        console.print(f"paid calls allowed: {'yes' if status.paid_calls_allowed else 'no'}")
        if status.warning_level != "none":
            console.print(f"warning: {status.warning_level}")
    return capture.get()


def render_abtest_summary(summaries: list[AbtestVariantSummary]) -> str:
    console = _console()
    with console.capture() as capture:
        if not summaries:
            console.print("No variants recorded for this run.")
        else:
            console.print(_abtest_table(summaries))
    return capture.get()


def _abtest_table(summaries: list[AbtestVariantSummary]) -> Table:
    # Sized to stay readable on an 80 column terminal.
    table = _build_table()
    table.add_column("Variant", ratio=1, min_width=10, overflow="fold")
    table.add_column("Provider", width=12, overflow="fold")
    table.add_column("Model", ratio=1, min_width=12, overflow="fold")
    table.add_column("OK/Err", justify="right", width=7, no_wrap=True)
    table.add_column("Mean AI", justify="right", width=7, no_wrap=True)
    table.add_column("Tokens", justify="right", width=11, overflow="fold")
    for summary in summaries:
        table.add_row(
            summary.name,
            summary.provider,
            summary.model,
            f"{summary.ok_count}/{summary.error_count}",
            "-" if summary.mean_ai_score is None else f"{summary.mean_ai_score:.3f}",
            f"{summary.input_tokens}/{summary.output_tokens}",
        )
    return table


def render_summary(summary: SummaryResult) -> str:
    console = _console()
    with console.capture() as capture:
        console.print(summary.one_liner)
        for bullet in summary.bullets:
            console.print(f"- {bullet}")
        for section in summary.sections:
            console.print("")
            console.print(section.title)
            for entry in section.items:
                console.print(f"  - {entry}")
        if summary.discussion_highlights:
            console.print("")
            console.print("Discussion")
            for entry in summary.discussion_highlights:
                console.print(f"  - {entry}")
        console.print("")
        console.print(f"{summary.provider}:{summary.model} credits={summary.credits:.4f}")
    return capture.get()
