"""Menu bar navigation: groups of leaf items bound to a closed set of actions.

States are ``CLOSED`` (a group is highlighted on the bar, nothing dropped
down), ``GROUP_OPEN`` (a group's items are shown, none focused) and
``ITEM_FOCUSED``. Choosing a focused item queues one :class:`Selection` and
closes the menu; the event loop drains the queue each iteration.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from clifana.config import AppConfig


class Action(enum.Enum):
    EXIT = "exit"
    REFRESH = "refresh"
    ABOUT = "about"
    SELECT_SERVER = "select-server"
    SELECT_QUERY = "select-query"


class MenuMode(enum.Enum):
    CLOSED = "closed"
    GROUP_OPEN = "group-open"
    ITEM_FOCUSED = "item-focused"


@dataclass(frozen=True)
class Selection:
    action: Action
    target: str | None = None


@dataclass(frozen=True)
class MenuItem:
    label: str
    selection: Selection


@dataclass(frozen=True)
class MenuGroup:
    label: str
    items: tuple[MenuItem, ...]


@dataclass
class MenuState:
    groups: list[MenuGroup]
    group: int = 0
    is_open: bool = False
    item: int | None = None
    _events: list[Selection] = field(default_factory=lambda: list[Selection]())

    def __post_init__(self) -> None:
        if not self.groups:
            raise ValueError("a menu needs at least one group")

    @property
    def mode(self) -> MenuMode:
        if not self.is_open:
            return MenuMode.CLOSED
        if self.item is None:
            return MenuMode.GROUP_OPEN
        return MenuMode.ITEM_FOCUSED

    @property
    def open_group(self) -> MenuGroup | None:
        return self.groups[self.group] if self.is_open else None

    def _items(self) -> tuple[MenuItem, ...]:
        return self.groups[self.group].items

    # ── Transitions ────────────────────────────────────────────────────────

    def left(self) -> None:
        self.group = (self.group - 1) % len(self.groups)
        self.item = None

    def right(self) -> None:
        self.group = (self.group + 1) % len(self.groups)
        self.item = None

    def up(self) -> None:
        if not self.is_open or self.item is None:
            return
        self.item = max(0, self.item - 1)

    def down(self) -> None:
        if not self.is_open:
            return
        items = self._items()
        if not items:
            return
        if self.item is None:
            self.item = 0
        else:
            self.item = min(len(items) - 1, self.item + 1)

    def select(self) -> None:
        """Enter: open the highlighted group, focus its first item, or choose."""
        if not self.is_open:
            self.is_open = True
            self.item = None
        elif self.item is None:
            if self._items():
                self.item = 0
        else:
            self._events.append(self._items()[self.item].selection)
            self.reset()

    def reset(self) -> None:
        """Esc: back to closed, nothing emitted."""
        self.is_open = False
        self.item = None

    def drain_events(self) -> list[Selection]:
        events, self._events = self._events, []
        return events


def build_menu(config: AppConfig) -> MenuState:
    """Menu for the dashboard; server and query items come from config."""
    return MenuState(
        [
            MenuGroup(
                "File",
                (
                    MenuItem("Refresh now", Selection(Action.REFRESH)),
                    MenuItem("Exit", Selection(Action.EXIT)),
                ),
            ),
            MenuGroup(
                "Server",
                tuple(
                    MenuItem(s.name, Selection(Action.SELECT_SERVER, s.name))
                    for s in config.servers
                ),
            ),
            MenuGroup(
                "Query",
                tuple(
                    MenuItem(q.name, Selection(Action.SELECT_QUERY, q.name))
                    for q in config.queries
                ),
            ),
            MenuGroup("Help", (MenuItem("About", Selection(Action.ABOUT)),)),
        ]
    )
