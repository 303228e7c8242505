from __future__ import annotations

from ..models.results import RunTotals

"""SUMMARY line rendering.

Format:
    SUMMARY entity={slug} imported={n} updated={n} skipped={n} synced={n}
    errors={n} elapsed_sec={elapsed}
"""


def _format_seconds(value: float) -> str:
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        # 指数表記回避
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return f"{value:.2f}".rstrip("0").rstrip(".")


def render_summary_line(entity: str, totals: RunTotals) -> str:
    """Render a SUMMARY line for one entity run.

    >>> render_summary_line("loans", RunTotals(imported=3, skipped=1, elapsed_seconds=2.0))
    'SUMMARY entity=loans imported=3 updated=0 skipped=1 synced=0 errors=0 elapsed_sec=2'
    """
    return (
        f"SUMMARY entity={entity} "
        f"imported={totals.imported} "
        f"updated={totals.updated} "
        f"skipped={totals.skipped} "
        f"synced={totals.synced} "
        f"errors={totals.errors} "
        f"elapsed_sec={_format_seconds(totals.elapsed_seconds)}"
    )
