"""
Per-cell colour capture, fitting and re-indexing.

Colours are carried as upper-case RRGGBB strings. Anything openpyxl
cannot express as a plain RGB value (theme and indexed colours, empty
fills) is read as the neutral colour.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from openpyxl.cell.cell import Cell
from openpyxl.styles import Font, PatternFill

from pipelinesync.domain.layouts import StoreLayout
from pipelinesync.domain.models import NEUTRAL_BACKGROUND, NEUTRAL_FONT

logger = logging.getLogger(__name__)

_HEX_RE = re.compile(r"^[0-9A-F]{6}$")


def normalize_color(value: Any, neutral: str) -> str:
    """Normalise '#abc123', 'FFABC123' (ARGB) or 'abc123' to 'ABC123'."""
    if not value or not isinstance(value, str):
        return neutral
    text = value.strip().lstrip("#").upper()
    if len(text) == 8:
        text = text[2:]
    elif len(text) == 3:
        text = "".join(ch * 2 for ch in text)
    return text if _HEX_RE.match(text) else neutral


def _rgb_of(color: Any) -> str | None:
    if color is None or getattr(color, "type", None) != "rgb":
        return None
    rgb = getattr(color, "rgb", None)
    return rgb if isinstance(rgb, str) else None


def cell_background(cell: Cell) -> str:
    fill = cell.fill
    if fill is None or not fill.fill_type:
        return NEUTRAL_BACKGROUND
    return normalize_color(_rgb_of(fill.fgColor), NEUTRAL_BACKGROUND)


def cell_font_color(cell: Cell) -> str:
    font = cell.font
    if font is None:
        return NEUTRAL_FONT
    return normalize_color(_rgb_of(font.color), NEUTRAL_FONT)


def fit_colors(colors: list[str], width: int, neutral: str) -> list[str]:
    """Pad with the neutral colour or truncate to exactly ``width``."""
    fitted = list(colors[:width])
    if len(fitted) < width:
        fitted.extend([neutral] * (width - len(fitted)))
    return fitted


def project_colors(
    colors: list[str],
    source: StoreLayout,
    target: StoreLayout,
    neutral: str,
) -> list[str]:
    """
    Re-index a row's colours from ``source`` column order to ``target``.

    Columns are matched by layout key; target columns the source does
    not have get the neutral colour. Arrays that drifted from the
    source width are fitted first.
    """
    if len(colors) != source.width:
        logger.debug(
            "Colour row has %d entries, %s expects %d; fitting",
            len(colors),
            source.name,
            source.width,
        )
    fitted = fit_colors(colors, source.width, neutral)
    return [
        fitted[pos] if pos is not None else neutral
        for pos in source.projection_onto(target)
    ]


def apply_background(cell: Cell, color: str) -> None:
    """Fill a cell; the neutral colour clears any fill."""
    color = normalize_color(color, NEUTRAL_BACKGROUND)
    if color == NEUTRAL_BACKGROUND:
        cell.fill = PatternFill(fill_type=None)
    else:
        cell.fill = PatternFill(start_color=color, end_color=color, fill_type="solid")


def apply_font_color(cell: Cell, color: str) -> None:
    """Recolour a cell's font, keeping its other attributes."""
    color = normalize_color(color, NEUTRAL_FONT)
    current = cell.font
    if color == NEUTRAL_FONT and _rgb_of(current.color) is None:
        return
    cell.font = Font(
        name=current.name,
        size=current.size,
        bold=current.bold,
        italic=current.italic,
        underline=current.underline,
        strike=current.strike,
        color=None if color == NEUTRAL_FONT else color,
    )
