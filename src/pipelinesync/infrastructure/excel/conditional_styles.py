"""
Conditional formatting rules for store tabs.

Rules cover whole column ranges over a fixed extent, never individual
data cells.
"""

from __future__ import annotations

from openpyxl.formatting.rule import ColorScaleRule, FormulaRule
from openpyxl.worksheet.worksheet import Worksheet

from pipelinesync.infrastructure.excel.styles import Colors, Fills


def apply_score_gradient(ws: Worksheet, column: str, max_row: int, start_row: int = 2) -> None:
    """
    Apply the 3-point score gradient (0 red, 2.5 amber, 5 green).

    Thresholds are fixed numbers, not percentiles of the data.
    """
    ws.conditional_formatting.add(
        f"{column}{start_row}:{column}{max_row}",
        ColorScaleRule(
            start_type="num",
            start_value=0,
            start_color=Colors.SCORE_LOW,
            mid_type="num",
            mid_value=2.5,
            mid_color=Colors.SCORE_MID,
            end_type="num",
            end_value=5,
            end_color=Colors.SCORE_HIGH,
        ),
    )


def apply_blank_highlight(
    ws: Worksheet,
    column: str,
    max_row: int,
    key_column: str,
    start_row: int = 2,
) -> None:
    """
    Highlight blank cells in ``column`` on rows that hold a record.

    A row holds a record when ``key_column`` is non-empty, so the
    placeholder row and the empty tail stay unstyled.
    """
    ws.conditional_formatting.add(
        f"{column}{start_row}:{column}{max_row}",
        FormulaRule(
            formula=[f'AND(${key_column}{start_row}<>"",LEN(TRIM({column}{start_row}))=0)'],
            stopIfTrue=False,
            fill=Fills.MISSING,
        ),
    )
