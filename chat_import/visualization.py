"""
Visualization functions for chat imports.

Provides plotting capabilities using plotly: how an export's messages are
spread over time, and how each batch of an import fared.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

import plotly.graph_objects as go  # type: ignore[import-untyped]

from chat_import.importer.models import BatchStatus, BatchSummary, NormalizedMessage

logger = logging.getLogger(__name__)


def build_daily_counts(messages: Iterable[NormalizedMessage]) -> List[Dict[str, Any]]:
    """
    Count messages per UTC day.

    Args:
        messages: Normalized messages (e.g. from a parse with collect=True).

    Returns:
        List of {"date": "YYYY-MM-DD", "count": n} sorted by date.
    """
    counts: Dict[str, int] = {}
    for message in messages:
        day = message.timestamp.date().isoformat()
        counts[day] = counts.get(day, 0) + 1
    return daily_counts_to_rows(counts)


def daily_counts_to_rows(counts: Mapping[str, int]) -> List[Dict[str, Any]]:
    """Turn a {day: count} mapping (ParseStats.daily_counts) into sorted rows."""
    return [{"date": day, "count": counts[day]} for day in sorted(counts)]


def _write(fig: go.Figure, output_file: Optional[str]) -> None:
    if output_file:
        fig.write_html(output_file)
        logger.info(f"Plot written to {output_file}")


def plot_import_timeline(
    daily_counts: List[Dict[str, Any]],
    output_file: Optional[str] = None,
    title: str = "Messages per day",
) -> go.Figure:
    """
    Plot message frequency over time.

    Args:
        daily_counts: Rows from build_daily_counts or daily_counts_to_rows.
        output_file: Optional HTML file path to save the plot.
        title: Chart title.

    Returns:
        The plotly Figure.
    """
    if not daily_counts:
        logger.warning("No messages to plot")

    fig = go.Figure(
        data=[
            go.Bar(
                x=[row["date"] for row in daily_counts],
                y=[row["count"] for row in daily_counts],
                name="Messages",
            )
        ]
    )
    fig.update_layout(title=title, xaxis_title="Day", yaxis_title="Messages")
    _write(fig, output_file)
    return fig


def plot_batch_outcomes(
    batches: List[BatchSummary],
    output_file: Optional[str] = None,
    title: str = "Import batches",
) -> go.Figure:
    """
    Plot imported versus skipped messages for each batch.

    Args:
        batches: Batch summaries from an ImportOutcome or ledger entry.
        output_file: Optional HTML file path to save the plot.
        title: Chart title.

    Returns:
        The plotly Figure with one "Imported" and one "Skipped" bar trace.
    """
    labels = [f"#{b.batch_index}" for b in batches]
    imported = [b.imported_count if b.status == BatchStatus.COMMITTED else 0 for b in batches]
    skipped = [b.message_count - i for b, i in zip(batches, imported)]

    fig = go.Figure(
        data=[
            go.Bar(name="Imported", x=labels, y=imported),
            go.Bar(name="Skipped", x=labels, y=skipped),
        ]
    )
    fig.update_layout(
        barmode="stack", title=title, xaxis_title="Batch", yaxis_title="Messages"
    )
    _write(fig, output_file)
    return fig
