"""Curses rendering for the clifana dashboard.

Layout, top to bottom: menu bar, chart of the current query (about three
quarters of the height), execution log pane, status line. Drawing reads
:class:`~clifana.app.AppState` and never mutates it.

Usage:
    clifana --config config.toml
"""

from __future__ import annotations

import curses
import logging
import math
import time
from collections.abc import Sequence
from typing import Any

from clifana.app import AppState, Refresher, run_app, terminal_session
from clifana.config import AppConfig
from clifana.logsink import LogRing
from clifana.menu import MenuState, MenuMode
from clifana.query import QueryExecutor, Sample

_log = logging.getLogger("clifana.dashboard")

# ── Constants ──────────────────────────────────────────────────────────────

POINT = "•"
MIN_WIDTH = 40
MIN_HEIGHT = 10

# Curses colour-pair IDs
C_NORMAL = 1
C_WARNING = 2
C_CRITICAL = 3
C_TITLE = 4
C_DIM = 5
C_BLUE = 6


# ── Colour helpers ─────────────────────────────────────────────────────────


def _init_colors() -> None:
    if not curses.has_colors():
        return
    curses.start_color()
    curses.use_default_colors()
    curses.init_pair(C_NORMAL, curses.COLOR_GREEN, -1)
    curses.init_pair(C_WARNING, curses.COLOR_YELLOW, -1)
    curses.init_pair(C_CRITICAL, curses.COLOR_RED, -1)
    curses.init_pair(C_TITLE, curses.COLOR_CYAN, -1)
    curses.init_pair(C_DIM, curses.COLOR_WHITE, -1)
    curses.init_pair(C_BLUE, curses.COLOR_BLUE, -1)


def _log_line_color(line: str) -> int:
    if " ERROR " in line or " CRITICAL " in line:
        return C_CRITICAL
    if " WARNING " in line:
        return C_WARNING
    return C_DIM


# ── Formatting helpers ─────────────────────────────────────────────────────


def fmt_value(v: float) -> str:
    """Compact axis label with SI suffixes."""
    if not math.isfinite(v):
        return str(v)
    for div, unit in ((1e12, "T"), (1e9, "G"), (1e6, "M"), (1e3, "k")):
        if abs(v) >= div:
            return f"{v / div:.1f}{unit}"
    return f"{v:.2f}"


def fmt_clock(ts: float) -> str:
    return time.strftime("%H:%M:%S", time.localtime(ts))


# ── Chart geometry ─────────────────────────────────────────────────────────


def _finite(samples: Sequence[Sample]) -> list[Sample]:
    return [s for s in samples if math.isfinite(s.timestamp) and math.isfinite(s.value)]


def value_bounds(samples: Sequence[Sample]) -> tuple[float, float] | None:
    points = _finite(samples)
    if not points:
        return None
    values = [s.value for s in points]
    return min(values), max(values)


def chart_cells(
    samples: Sequence[Sample], width: int, height: int
) -> list[tuple[int, int]]:
    """Map samples onto a ``width`` x ``height`` grid as ``(row, col)`` cells.

    Time runs left to right over the samples' own span, values bottom to top.
    A flat series sits on the middle row. NaN and infinite samples are skipped.
    """
    points = _finite(samples)
    if not points or width < 1 or height < 1:
        return []
    t0 = min(s.timestamp for s in points)
    t1 = max(s.timestamp for s in points)
    v0 = min(s.value for s in points)
    v1 = max(s.value for s in points)
    cells: list[tuple[int, int]] = []
    for s in points:
        col = 0 if t1 == t0 else round((s.timestamp - t0) / (t1 - t0) * (width - 1))
        if v1 == v0:
            row = height // 2
        else:
            row = height - 1 - round((s.value - v0) / (v1 - v0) * (height - 1))
        cells.append((row, col))
    return cells


# ── Curses drawing primitives ──────────────────────────────────────────────


def _safe(win: Any, *args: Any) -> None:
    """addstr wrapper that swallows out-of-bounds errors."""
    try:
        win.addstr(*args)
    except curses.error:
        pass


def _draw_box(
    win: Any,
    y: int,
    x: int,
    h: int,
    w: int,
    title: str = "",
) -> Any | None:
    """Draw a bordered box and return the inner sub-window."""
    max_y, max_x = win.getmaxyx()
    h = min(h, max_y - y)
    w = min(w, max_x - x)
    if h < 3 or w < 4:
        return None
    try:
        sub = win.subwin(h, w, y, x)
        sub.box()
        if title and len(title) + 4 < w:
            sub.addstr(
                0, 2, f" {title} ", curses.color_pair(C_TITLE) | curses.A_BOLD
            )
        return sub
    except curses.error:
        return None


# ── Panel renderers ────────────────────────────────────────────────────────


def draw_chart_panel(
    win: Any, y: int, x: int, w: int, h: int, state: AppState
) -> None:
    box = _draw_box(win, y, x, h, w, state.title)
    if not box:
        return

    bounds = value_bounds(state.data)
    if bounds is None:
        msg = "waiting for data..." if state.last_refresh_ok is None else "no data"
        _safe(box, h // 2, max(1, (w - len(msg)) // 2), msg, curses.color_pair(C_DIM))
        return

    v0, v1 = bounds
    top, bottom = fmt_value(v1), fmt_value(v0)
    label_w = max(len(top), len(bottom)) + 1
    plot_x = 1 + label_w
    plot_w = w - 2 - label_w
    plot_h = h - 3
    if plot_w < 2 or plot_h < 2:
        return

    _safe(box, 1, 1, top.rjust(label_w - 1), curses.color_pair(C_DIM))
    _safe(box, plot_h, 1, bottom.rjust(label_w - 1), curses.color_pair(C_DIM))
    for row, col in chart_cells(state.data, plot_w, plot_h):
        _safe(box, 1 + row, plot_x + col, POINT, curses.color_pair(C_BLUE) | curses.A_BOLD)

    points = _finite(state.data)
    start = fmt_clock(min(s.timestamp for s in points))
    end = fmt_clock(max(s.timestamp for s in points))
    _safe(box, h - 2, plot_x, start, curses.color_pair(C_DIM))
    if plot_w > len(start) + len(end) + 1:
        _safe(box, h - 2, plot_x + plot_w - len(end), end, curses.color_pair(C_DIM))


def draw_log_panel(
    win: Any, y: int, x: int, w: int, h: int, lines: Sequence[str]
) -> None:
    box = _draw_box(win, y, x, h, w, "Execution Log")
    if not box:
        return
    row = 1
    for entry in lines:
        for part in entry.splitlines() or [""]:
            if row >= h - 1:
                return
            _safe(box, row, 1, part[: w - 2], curses.color_pair(_log_line_color(entry)))
            row += 1


def _draw_menu_bar(win: Any, menu: MenuState, w: int) -> None:
    attr = curses.color_pair(C_TITLE) | curses.A_REVERSE
    _safe(win, 0, 0, " " * (w - 1), attr)
    col = 1
    for i, group in enumerate(menu.groups):
        label = f" {group.label} "
        style = attr | curses.A_BOLD if i == menu.group else attr
        if i == menu.group and menu.is_open:
            style = curses.color_pair(C_CRITICAL) | curses.A_BOLD
        _safe(win, 0, col, label, style)
        col += len(label) + 1
    hint = "q: quit  r: refresh"
    if col + len(hint) + 2 < w:
        _safe(win, 0, w - len(hint) - 2, hint, attr)


def _draw_dropdown(win: Any, menu: MenuState) -> None:
    group = menu.open_group
    if group is None:
        return
    col = 1 + sum(len(g.label) + 3 for g in menu.groups[: menu.group])
    labels = [item.label for item in group.items] or ["(empty)"]
    width = max(len(label) for label in labels) + 4
    box = _draw_box(win, 1, col, len(labels) + 2, width)
    if not box:
        return
    for i, label in enumerate(labels):
        style = curses.color_pair(C_DIM)
        if menu.mode is MenuMode.ITEM_FOCUSED and i == menu.item:
            style = curses.color_pair(C_TITLE) | curses.A_REVERSE
        _safe(box, 1 + i, 1, f" {label:<{width - 4}} ", style)


def _status_text(state: AppState) -> tuple[str, int]:
    if state.refreshing:
        return "refreshing...", C_TITLE
    if state.last_refresh_ok is None:
        return "no refresh yet", C_DIM
    at = fmt_clock(state.last_refresh_at) if state.last_refresh_at else "?"
    if state.last_refresh_ok:
        return f"ok {at} ({len(state.data)} samples)", C_NORMAL
    return f"failed {at}: {state.last_error}", C_CRITICAL


def _draw_status(win: Any, y: int, w: int, state: AppState) -> None:
    ts = time.strftime("%Y-%m-%dT%H:%M:%S")
    _safe(win, y, 0, ts, curses.color_pair(C_DIM))
    text, color = _status_text(state)
    _safe(win, y, len(ts) + 2, text[: max(0, w - len(ts) - 3)], curses.color_pair(color))


def draw(stdscr: Any, state: AppState) -> None:
    """Render one frame."""
    max_y, max_x = stdscr.getmaxyx()
    stdscr.erase()

    if max_y < MIN_HEIGHT or max_x < MIN_WIDTH:
        _safe(stdscr, 0, 0, f"Terminal too small (need {MIN_WIDTH}x{MIN_HEIGHT}+)")
        stdscr.refresh()
        return

    _draw_menu_bar(stdscr, state.menu, max_x)

    body_h = max_y - 2
    chart_h = max(5, body_h * 3 // 4)
    log_h = body_h - chart_h
    draw_chart_panel(stdscr, 1, 0, max_x, chart_h, state)
    if log_h >= 3:
        draw_log_panel(stdscr, 1 + chart_h, 0, max_x, log_h, state.log.snapshot())
    _draw_status(stdscr, max_y - 1, max_x, state)

    # Drop-down last so it overlays the chart
    _draw_dropdown(stdscr, state.menu)
    stdscr.refresh()


# ── Entry point ────────────────────────────────────────────────────────────


def run_dashboard(config: AppConfig, ring: LogRing) -> None:
    """Run the interactive dashboard until the user quits."""
    state = AppState.from_config(config, ring)
    refresher = Refresher(QueryExecutor.from_config(config))
    _log.info("starting dashboard: %s every %gs", state.title, state.poll_interval)

    with terminal_session() as stdscr:
        _init_colors()
        try:
            curses.curs_set(0)
        except curses.error:
            pass
        run_app(stdscr, state, refresher, draw)
    _log.info("dashboard stopped")
