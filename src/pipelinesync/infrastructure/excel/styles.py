"""
Excel styling configuration and utilities.

Provides consistent styling across entity and aggregate store tabs:
- Color palette
- Font definitions
- Fill, border and alignment presets
- Header, freeze, filter and validation helpers
"""

from __future__ import annotations

from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.datavalidation import DataValidation
from openpyxl.worksheet.worksheet import Worksheet

from pipelinesync.domain.layouts import StoreLayout
from pipelinesync.domain.models import Flag


# ============================================================================
# Color Palette
# ============================================================================


class Colors:
    """Store color palette (hex codes without #)."""

    HEADER_BG = "4285F4"
    HEADER_TEXT = "FFFFFF"

    # Score gradient (0 -> 2.5 -> 5)
    SCORE_LOW = "F4C7C3"
    SCORE_MID = "FCE8B2"
    SCORE_HIGH = "B7E1CD"

    # Missing next activity
    MISSING_BG = "F4C7C3"

    # Priority flags
    FLAG_HOT = "D9EAD3"
    FLAG_COLD = "F4CCCC"
    FLAG_ATTENTION = "FFF2CC"

    PLACEHOLDER_TEXT = "666666"


# Row background applied with each flag
FLAG_ROW_COLORS: dict[Flag, str] = {
    Flag.HOT: Colors.FLAG_HOT,
    Flag.COLD: Colors.FLAG_COLD,
    Flag.ATTENTION: Colors.FLAG_ATTENTION,
}


# ============================================================================
# Fonts / Fills / Borders / Alignments
# ============================================================================


class Fonts:
    """Font definitions."""

    HEADER = Font(name="Arial", size=10, bold=True, color=Colors.HEADER_TEXT)
    DATA = Font(name="Arial", size=10)
    PLACEHOLDER = Font(name="Arial", size=10, italic=True, color=Colors.PLACEHOLDER_TEXT)


class Fills:
    """Background fill patterns."""

    HEADER = PatternFill(
        start_color=Colors.HEADER_BG, end_color=Colors.HEADER_BG, fill_type="solid"
    )
    MISSING = PatternFill(
        start_color=Colors.MISSING_BG, end_color=Colors.MISSING_BG, fill_type="solid"
    )


class Borders:
    """Border styles."""

    HEADER = Border(bottom=Side(style="medium", color="1A56C4"))


class Alignments:
    """Text alignment definitions."""

    CENTER = Alignment(horizontal="center", vertical="center", wrap_text=False)
    CENTER_WRAP = Alignment(horizontal="center", vertical="center", wrap_text=True)
    LEFT_WRAP = Alignment(horizontal="left", vertical="top", wrap_text=True)


DATE_FORMAT = "yyyy-mm-dd"
SCORE_FORMAT = "0.0"

# Fixed, data-independent extent for column-wide rules
RULE_MIN_ROWS = 1000


# ============================================================================
# Helpers
# ============================================================================


def apply_header_row(ws: Worksheet, layout: StoreLayout, row: int = 1) -> None:
    """
    Write and style the header row, set widths and hide hidden columns.

    Args:
        ws: Worksheet
        layout: Store layout
        row: Row number (1-indexed)
    """
    for col_idx, col in enumerate(layout.columns, start=1):
        cell = ws.cell(row=row, column=col_idx)
        cell.value = col.header
        cell.font = Fonts.HEADER
        cell.fill = Fills.HEADER
        cell.alignment = Alignments.CENTER_WRAP
        cell.border = Borders.HEADER

        dim = ws.column_dimensions[get_column_letter(col_idx)]
        dim.width = col.width
        dim.hidden = col.hidden


def freeze_panes(ws: Worksheet, row: int = 2, col: int = 1) -> None:
    """
    Freeze panes in a worksheet.

    Args:
        ws: Worksheet
        row: First unfrozen row (freeze rows above)
        col: First unfrozen column (freeze columns to the left)
    """
    ws.freeze_panes = ws.cell(row=row, column=col)


def add_autofilter(ws: Worksheet, layout: StoreLayout, last_row: int, header_row: int = 1) -> None:
    """Add an autofilter over the header and body."""
    last_col = get_column_letter(layout.width)
    ws.auto_filter.ref = f"A{header_row}:{last_col}{max(last_row, header_row)}"


def add_dropdown_validation(
    ws: Worksheet,
    column_letter: str,
    options: list[str],
    start_row: int = 2,
    end_row: int = RULE_MIN_ROWS,
) -> None:
    """Add dropdown data validation to a column.

    Args:
        ws: The worksheet to add validation to
        column_letter: Column letter (e.g., "E", "F")
        options: List of valid options for the dropdown
        start_row: Starting row (default 2 to skip header)
        end_row: Ending row
    """
    formula = '"' + ",".join(options) + '"'

    dv = DataValidation(
        type="list",
        formula1=formula,
        showDropDown=False,  # False = show dropdown arrow (counterintuitive)
        allow_blank=True,
    )
    dv.error = f"Please select from: {', '.join(options)}"
    dv.errorTitle = "Invalid Value"
    # Lenient: unknown text is kept and parsed as "no flag"
    dv.showErrorMessage = False
    ws.add_data_validation(dv)
    dv.add(f"{column_letter}{start_row}:{column_letter}{end_row}")


def rule_end_row(row_count: int) -> int:
    """Last row covered by column-wide rules and validation."""
    return max(RULE_MIN_ROWS, row_count + 1)
