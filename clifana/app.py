"""Application state and the dashboard event loop.

The loop owns :class:`AppState`. Each iteration it draws, waits a bounded
slice for a key, applies menu selections and finished refreshes, and starts a
new refresh when the poll interval has elapsed. Queries run on a background
thread (:class:`Refresher`) so a slow backend never stalls the keyboard; their
results come back through a queue and are applied whole.
"""

from __future__ import annotations

import curses
import logging
import queue
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Protocol

from clifana.config import AppConfig
from clifana.logsink import LogRing
from clifana.menu import Action, MenuState, Selection, build_menu
from clifana.query import QueryError, QueryExecutor, Sample, TimeRange

_log = logging.getLogger("clifana.app")

KEY_NONE = -1
KEY_ESC = 27
ESC_DELAY_MS = 25
KEYS_ENTER = (curses.KEY_ENTER, 10, 13)
KEYS_QUIT = (ord("q"), ord("Q"))
KEYS_REFRESH = (ord("r"), ord("R"))


def app_version() -> str:
    try:
        return version("clifana")
    except PackageNotFoundError:
        return "0+unknown"


class TerminalSetupError(Exception):
    """The terminal could not be put into dashboard mode."""


# ── Refresh plumbing ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class RefreshRequest:
    server: str
    query: str
    time_range: TimeRange | None = None


@dataclass
class RefreshResult:
    request: RefreshRequest
    samples: list[Sample] | None = None
    error: BaseException | None = None
    started: float = 0.0
    finished: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


class Refresher:
    """Runs one query at a time on a daemon thread.

    Overlapping requests are skipped, not queued: :meth:`start` returns False
    while a refresh is in flight. Finished results wait in a queue until the
    loop collects them with :meth:`results`.
    """

    def __init__(self, executor: QueryExecutor) -> None:
        self.executor = executor
        self._results: queue.Queue[RefreshResult] = queue.Queue()
        self._busy = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def busy(self) -> bool:
        return self._busy.is_set()

    def start(self, request: RefreshRequest) -> bool:
        if self._busy.is_set():
            return False
        self._busy.set()
        self._thread = threading.Thread(
            target=self._run, args=(request,), name="clifana-refresh", daemon=True
        )
        self._thread.start()
        return True

    def _run(self, request: RefreshRequest) -> None:
        result = RefreshResult(request, started=time.time())
        try:
            result.samples = self.executor.execute(
                request.server, request.query, request.time_range
            )
        except Exception as e:
            result.error = e
        result.finished = time.time()
        self._results.put(result)
        self._busy.clear()

    def results(self) -> list[RefreshResult]:
        """Collect every finished result without blocking."""
        collected: list[RefreshResult] = []
        while True:
            try:
                collected.append(self._results.get_nowait())
            except queue.Empty:
                return collected

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)


# ── State ──────────────────────────────────────────────────────────────────


@dataclass
class AppState:
    """Everything the renderer draws. Mutated only by the event loop."""

    log: LogRing
    menu: MenuState
    server: str
    query: str
    time_range: TimeRange | None = None
    poll_interval: float = 15.0
    tick_interval: float = 0.25
    data: list[Sample] = field(default_factory=lambda: list[Sample]())
    last_poll: float = 0.0
    last_input: float = 0.0
    last_refresh_ok: bool | None = None
    last_refresh_at: float | None = None
    last_error: str = ""
    refresh_requested: bool = True
    refreshing: bool = False
    skip_logged: bool = False
    running: bool = True

    @classmethod
    def from_config(cls, config: AppConfig, log: LogRing) -> AppState:
        dash = config.dashboard
        query = dash.query or (config.queries[0].name if config.queries else "")
        return cls(
            log=log,
            menu=build_menu(config),
            server=dash.server,
            query=query,
            time_range=TimeRange(dash.window, dash.step) if dash.range else None,
            poll_interval=dash.poll_interval,
            tick_interval=dash.tick_interval,
        )

    @property
    def title(self) -> str:
        kind = "range" if self.time_range is not None else "instant"
        return f"{self.server} / {self.query or '(no query)'} [{kind}]"

    def current_request(self) -> RefreshRequest:
        return RefreshRequest(self.server, self.query, self.time_range)

    def apply_result(self, result: RefreshResult) -> None:
        """Fold one finished refresh into the state.

        Success replaces the chart data wholesale. Failure leaves it untouched
        and logs exactly one line. Results for a server/query that is no
        longer selected are dropped; a dropped failure is still logged.
        """
        if result.request != self.current_request():
            if result.error is not None:
                _log.info("discarding stale refresh for %s/%s, which failed: %s: %s",
                          result.request.server, result.request.query,
                          type(result.error).__name__, result.error)
            else:
                _log.debug("discarding stale refresh for %s/%s",
                           result.request.server, result.request.query)
            return
        self.last_refresh_at = result.finished or time.time()
        if result.error is not None:
            self.last_refresh_ok = False
            self.last_error = f"{type(result.error).__name__}: {result.error}"
            if isinstance(result.error, QueryError):
                _log.warning("refresh %s/%s failed: %s",
                             result.request.server, result.request.query,
                             self.last_error)
            else:
                _log.error("refresh %s/%s crashed: %s",
                           result.request.server, result.request.query,
                           self.last_error, exc_info=result.error)
            return
        self.data = list(result.samples or [])
        self.last_refresh_ok = True
        self.last_error = ""
        _log.info("refresh %s/%s: %d sample(s)",
                  result.request.server, result.request.query, len(self.data))

    def switch_target(self, server: str | None = None, query: str | None = None) -> None:
        if server is not None:
            self.server = server
        if query is not None:
            self.query = query
        self.data = []
        self.last_refresh_ok = None
        self.last_error = ""
        self.refresh_requested = True
        _log.info("now charting %s", self.title)


# ── Dispatch ───────────────────────────────────────────────────────────────


def handle_key(state: AppState, key: int) -> bool:
    """Apply one key press. Returns False when the loop should exit."""
    if key in KEYS_QUIT:
        return False
    if key in KEYS_REFRESH:
        state.refresh_requested = True
    elif key == curses.KEY_LEFT:
        state.menu.left()
    elif key == curses.KEY_RIGHT:
        state.menu.right()
    elif key == curses.KEY_UP:
        state.menu.up()
    elif key == curses.KEY_DOWN:
        state.menu.down()
    elif key in KEYS_ENTER:
        state.menu.select()
    elif key == KEY_ESC:
        state.menu.reset()
    return True


def handle_selection(state: AppState, selection: Selection) -> bool:
    """Act on one menu selection. Returns False for Exit."""
    if selection.action is Action.EXIT:
        return False
    if selection.action is Action.REFRESH:
        state.refresh_requested = True
    elif selection.action is Action.ABOUT:
        # warning so it shows at every verbosity
        _log.warning("clifana %s: terminal dashboard for Prometheus queries",
                     app_version())
    elif selection.action is Action.SELECT_SERVER:
        state.switch_target(server=selection.target)
    elif selection.action is Action.SELECT_QUERY:
        state.switch_target(query=selection.target)
    return True


def maybe_refresh(state: AppState, refresher: Refresher, now: float) -> None:
    """Start a refresh if one is due. Skipped while another is in flight."""
    due = now - state.last_poll >= state.poll_interval
    if not (due or state.refresh_requested):
        return
    if not state.query:
        if state.refresh_requested:
            _log.warning("no query configured; nothing to refresh")
        state.refresh_requested = False
        state.last_poll = now
        return
    if refresher.start(state.current_request()):
        state.refresh_requested = False
        state.refreshing = True
        state.skip_logged = False
    elif not state.skip_logged:
        _log.debug("refresh still in flight; skipping until it finishes")
        state.skip_logged = True
    state.last_poll = now


# ── Event loop ─────────────────────────────────────────────────────────────


class Screen(Protocol):
    def timeout(self, delay: int) -> None: ...

    def getch(self) -> int: ...

    def clear(self) -> None: ...


def run_app(
    screen: Screen,
    state: AppState,
    refresher: Refresher,
    render: Callable[[Any, AppState], None],
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Drive the dashboard until the user quits.

    Never waits on the network: the key wait is capped at ``tick_interval``
    so finished refreshes are drawn promptly.
    """
    while state.running:
        render(screen, state)

        elapsed = clock() - state.last_poll
        wait = max(0.0, state.poll_interval - elapsed)
        if state.refresh_requested and not refresher.busy:
            wait = 0.0
        screen.timeout(int(min(wait, state.tick_interval) * 1000))
        key = screen.getch()

        if key != KEY_NONE:
            state.last_input = clock()
            if key == curses.KEY_RESIZE:
                screen.clear()
            elif not handle_key(state, key):
                state.running = False
                break

        for selection in state.menu.drain_events():
            if not handle_selection(state, selection):
                state.running = False
                break
        if not state.running:
            break

        for result in refresher.results():
            state.apply_result(result)
        state.refreshing = refresher.busy

        maybe_refresh(state, refresher, clock())


@contextmanager
def terminal_session() -> Iterator[Any]:
    """Put the terminal into dashboard mode for the duration of the block.

    Same contract as ``curses.wrapper``: whatever ends the block (quit, an
    exception, Ctrl+C) the terminal is restored before control leaves.
    """
    try:
        stdscr = curses.initscr()
    except curses.error as e:
        raise TerminalSetupError(f"cannot initialise terminal: {e}") from e
    try:
        try:
            curses.noecho()
            curses.cbreak()
            stdscr.keypad(True)
            # Esc closes the menu without the 1s ncurses default delay
            curses.set_escdelay(ESC_DELAY_MS)
        except curses.error as e:
            raise TerminalSetupError(f"cannot configure terminal: {e}") from e
        yield stdscr
    finally:
        stdscr.keypad(False)
        curses.echo()
        curses.nocbreak()
        curses.endwin()
