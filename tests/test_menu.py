"""Tests for clifana.menu."""

from __future__ import annotations

import random

import pytest

from clifana.config import AppConfig, QueryRef, ServerRef
from clifana.menu import (
    Action,
    MenuGroup,
    MenuItem,
    MenuMode,
    MenuState,
    Selection,
    build_menu,
)


def _menu() -> MenuState:
    return MenuState(
        [
            MenuGroup(
                "File",
                (
                    MenuItem("Refresh now", Selection(Action.REFRESH)),
                    MenuItem("Exit", Selection(Action.EXIT)),
                ),
            ),
            MenuGroup("Empty", ()),
            MenuGroup("Help", (MenuItem("About", Selection(Action.ABOUT)),)),
        ]
    )


class TestTransitions:
    def test_starts_closed(self) -> None:
        menu = _menu()
        assert menu.mode is MenuMode.CLOSED
        assert menu.open_group is None

    def test_enter_opens_group(self) -> None:
        menu = _menu()
        menu.select()
        assert menu.mode is MenuMode.GROUP_OPEN
        assert menu.open_group is not None and menu.open_group.label == "File"

    def test_enter_twice_focuses_first_item(self) -> None:
        menu = _menu()
        menu.select()
        menu.select()
        assert menu.mode is MenuMode.ITEM_FOCUSED
        assert menu.item == 0

    def test_down_from_open_group_focuses_first_item(self) -> None:
        menu = _menu()
        menu.select()
        menu.down()
        assert (menu.mode, menu.item) == (MenuMode.ITEM_FOCUSED, 0)

    def test_item_cursor_clamped(self) -> None:
        menu = _menu()
        menu.select()
        for _ in range(5):
            menu.down()
        assert menu.item == 1
        for _ in range(5):
            menu.up()
        assert menu.item == 0

    def test_up_down_ignored_when_closed(self) -> None:
        menu = _menu()
        menu.down()
        menu.up()
        assert menu.mode is MenuMode.CLOSED

    def test_left_right_wrap_when_closed(self) -> None:
        menu = _menu()
        menu.left()
        assert menu.group == 2
        menu.right()
        assert menu.group == 0
        assert menu.mode is MenuMode.CLOSED

    def test_right_in_open_group_opens_neighbour(self) -> None:
        menu = _menu()
        menu.select()
        menu.down()
        menu.right()
        assert menu.mode is MenuMode.GROUP_OPEN
        assert menu.open_group is not None and menu.open_group.label == "Empty"

    def test_empty_group_has_nothing_to_focus(self) -> None:
        menu = _menu()
        menu.right()
        menu.select()
        menu.down()
        menu.select()
        assert menu.mode is MenuMode.GROUP_OPEN
        assert menu.drain_events() == []

    def test_select_leaf_emits_and_closes(self) -> None:
        menu = _menu()
        menu.select()
        menu.down()
        menu.down()
        menu.select()
        assert menu.mode is MenuMode.CLOSED
        assert menu.drain_events() == [Selection(Action.EXIT)]
        assert menu.drain_events() == []

    @pytest.mark.parametrize("steps", [[], ["select"], ["select", "down"], ["right", "select", "down"]])
    def test_esc_always_closes_without_event(self, steps: list[str]) -> None:
        menu = _menu()
        for step in steps:
            getattr(menu, step)()
        menu.reset()
        assert menu.mode is MenuMode.CLOSED
        assert menu.drain_events() == []

    def test_needs_a_group(self) -> None:
        with pytest.raises(ValueError):
            MenuState([])


class TestRandomSequences:
    MOVES = ("left", "right", "up", "down", "select", "reset")

    @pytest.mark.parametrize("seed", range(20))
    def test_invariants(self, seed: int) -> None:
        rng = random.Random(seed)
        menu = _menu()
        for _ in range(200):
            move = rng.choice(self.MOVES)
            was_focused = menu.mode is MenuMode.ITEM_FOCUSED
            getattr(menu, move)()
            events = menu.drain_events()

            if move == "reset":
                assert menu.mode is MenuMode.CLOSED
                assert events == []
            elif move == "select" and was_focused:
                assert len(events) == 1
                assert menu.mode is MenuMode.CLOSED
            else:
                assert events == []

            # Only the highlighted group can be open, with a valid cursor
            if menu.item is not None:
                assert menu.is_open
                assert 0 <= menu.item < len(menu.groups[menu.group].items)


class TestBuildMenu:
    def test_items_from_config(self) -> None:
        config = AppConfig(
            servers=[ServerRef("default", "http://a"), ServerRef("lab", "http://b")],
            queries=[QueryRef("cpu", "x")],
        )
        menu = build_menu(config)
        labels = [g.label for g in menu.groups]
        assert labels == ["File", "Server", "Query", "Help"]
        server_group = menu.groups[1]
        assert [i.selection for i in server_group.items] == [
            Selection(Action.SELECT_SERVER, "default"),
            Selection(Action.SELECT_SERVER, "lab"),
        ]
        assert menu.groups[2].items[0].selection == Selection(Action.SELECT_QUERY, "cpu")

    def test_exit_reachable(self) -> None:
        menu = build_menu(AppConfig())
        menu.select()
        menu.down()
        menu.down()
        menu.select()
        assert menu.drain_events() == [Selection(Action.EXIT)]
