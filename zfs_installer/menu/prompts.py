from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from archinstall.tui import EditMenu, MenuItem, MenuItemGroup, SelectMenu, Tui
from archinstall.tui.result import ResultType
from pydantic import SecretStr


class PromptProvider(ABC):
    """Dialogs with the operator."""

    @abstractmethod
    def message(self, text: str) -> None:
        """Show a message and wait for acknowledgement."""

    @abstractmethod
    def select_many(self, header: str, options: Sequence[tuple[str, Any]], preselected: Sequence[Any] = ()) -> list[Any]:
        """Checklist; returns the selected values."""

    @abstractmethod
    def select_one(self, header: str, options: Sequence[tuple[str, Any]], default: Any = None) -> Any:
        """Radio list; returns the selected value."""

    @abstractmethod
    def ask_text(self, title: str, header: str, default: str = "") -> str:
        pass

    @abstractmethod
    def ask_secret(self, title: str, header: str) -> SecretStr:
        """Hidden input; a blank answer is an empty secret."""


class TuiPrompts(PromptProvider):
    """Prompts on archinstall's curses TUI"""

    def message(self, text: str) -> None:
        with Tui():
            SelectMenu(MenuItemGroup([MenuItem("OK", None)]), header=text).run()

    def select_many(self, header: str, options: Sequence[tuple[str, Any]], preselected: Sequence[Any] = ()) -> list[Any]:
        group = MenuItemGroup([MenuItem(label, value) for label, value in options])
        if preselected:
            group.set_selected_by_value(list(preselected))

        with Tui():
            result = SelectMenu(group, multi=True, header=header).run()

        if result.type_ != ResultType.Selection:
            return []
        return list(result.get_values())

    def select_one(self, header: str, options: Sequence[tuple[str, Any]], default: Any = None) -> Any:
        items = [MenuItem(label, value) for label, value in options]
        focus_item = next((item for item in items if item.value == default), None)

        with Tui():
            result = SelectMenu(MenuItemGroup(items, focus_item=focus_item) if focus_item else MenuItemGroup(items), header=header).run()

        if result.type_ == ResultType.Skip or not result.item():
            return default
        return result.item().value

    def ask_text(self, title: str, header: str, default: str = "") -> str:
        with Tui():
            result = EditMenu(title, header=header, default_text=default, allow_skip=True).input()

        if result.type_ != ResultType.Selection:
            return default
        return result.text() or ""

    def ask_secret(self, title: str, header: str) -> SecretStr:
        with Tui():
            result = EditMenu(title, header=header, hide_input=True, allow_skip=True).input()

        if result.type_ != ResultType.Selection:
            return SecretStr("")
        return SecretStr(result.text() or "")
