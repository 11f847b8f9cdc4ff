"""Output formatting helpers for the experiment CLI."""

from __future__ import annotations

import json
from typing import Any, Iterable, List, Optional, Sequence

import click

from experiment_engine.ab_testing.statistics import ConfidenceInterval


def format_rate(rate: float) -> str:
    """Format a conversion rate as a percentage."""
    return f"{rate * 100:.2f}%"


def format_interval(interval: ConfidenceInterval) -> str:
    """Format a confidence interval as a percentage range."""
    return f"[{format_rate(interval.lower)}, {format_rate(interval.upper)}]"


def format_optional(value: Optional[Any], fmt: str = "{}") -> str:
    """Format a value that is missing for the control row."""
    if value is None:
        return "-"
    return fmt.format(value)


def format_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    """Format rows as a left-aligned table with a separator under the header."""
    rows_list: List[List[str]] = [[str(cell) for cell in row] for row in rows]
    widths = [len(str(h)) for h in headers]
    for row in rows_list:
        for idx, cell in enumerate(row):
            if idx >= len(widths):
                widths.append(len(cell))
            else:
                widths[idx] = max(widths[idx], len(cell))

    def _line(cells: Sequence[str]) -> str:
        return "  ".join(str(cell).ljust(widths[i]) for i, cell in enumerate(cells)).rstrip()

    header_line = _line([str(h) for h in headers])
    separator = "-" * len(header_line)
    return "\n".join([header_line, separator] + [_line(row) for row in rows_list])


def echo_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
    """Echo a table."""
    click.echo(format_table(headers, rows))


def echo_json(data: Any) -> None:
    """Echo JSON; datetimes and other non-JSON values are stringified."""
    click.echo(json.dumps(data, ensure_ascii=False, indent=2, default=str))
