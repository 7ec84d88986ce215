"""Single-flight yes/no confirmation dialog."""

import asyncio
import logging
from typing import Callable, Literal, NamedTuple

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class KeyPress(NamedTuple):
    """A key event as delivered by the front end."""

    key: str
    ctrl: bool = False
    meta: bool = False
    alt: bool = False
    shift: bool = False

    @property
    def has_modifier(self) -> bool:
        return self.ctrl or self.meta or self.alt or self.shift


class ConfirmRequest(BaseModel):
    """Content of one confirmation dialog."""

    title: str = "確認"
    description: str = ""
    confirm_label: str = "実行する"
    cancel_label: str = "キャンセル"
    tone: Literal["danger", "primary"] = "danger"
    show_cancel: bool = True


class DialogSurface:
    """
    Front-end hooks for showing the confirmation dialog.

    Front ends subclass this and forward button clicks to the state
    machine's `accept()` / `cancel()` / `dismiss()`.
    """

    def open(self, request: ConfirmRequest) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def is_text_input_focused(self) -> bool:
        return False


class KeyboardChannel:
    """Registry of key listeners; the first listener to consume a key stops dispatch."""

    def __init__(self):
        self._listeners: list[Callable[[KeyPress], bool]] = []

    def add(self, listener: Callable[[KeyPress], bool]) -> None:
        self._listeners.append(listener)

    def remove(self, listener: Callable[[KeyPress], bool]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def __len__(self) -> int:
        return len(self._listeners)

    def dispatch(self, press: KeyPress) -> bool:
        """Delivers `press` to listeners, newest first. Returns True if consumed."""
        for listener in reversed(list(self._listeners)):
            if listener(press):
                return True
        return False


class ConfirmationStateMachine:
    """
    Coordinates at most one pending confirmation.

    A new request while one is pending resolves the old one with False
    before the new dialog opens. Every exit path (accept, cancel, dismiss,
    Escape, "N", supersede, caller cancellation) goes through `_finalize`,
    which detaches the key listener, closes the dialog, and resolves the
    pending future exactly once.

    Args:
        surface: Dialog front end, or None if no dialog is available.
        keyboard: Key channel the pending dialog listens on.
    """

    def __init__(self, surface: DialogSurface | None = None, keyboard: KeyboardChannel | None = None):
        self.surface = surface
        self.keyboard = keyboard if keyboard is not None else KeyboardChannel()
        self._future: asyncio.Future | None = None
        self._listener: Callable[[KeyPress], bool] | None = None

    @property
    def state(self) -> str:
        return "pending" if self._future is not None else "idle"

    async def confirm(self, request: ConfirmRequest | None = None, **options) -> bool:
        """
        Shows a confirmation dialog and waits for the admin's answer.

        Args:
            request: Dialog content; built from `options` when omitted.
            **options: ConfirmRequest fields.

        Returns:
            bool: True if accepted, False on any other outcome.
        """
        if self.surface is None:
            logger.warning("confirm dialog is unavailable; treating as declined")
            return False
        if request is None:
            request = ConfirmRequest(**options)

        if self._future is not None:
            logger.debug("superseding pending confirmation")
            self._finalize(False)

        future = asyncio.get_running_loop().create_future()
        self._future = future
        self._listener = self._on_key
        self.keyboard.add(self._listener)
        self.surface.open(request)

        try:
            return await future
        except asyncio.CancelledError:
            if self._future is future:
                self._finalize(False)
            raise

    def accept(self) -> None:
        self._finalize(True)

    def cancel(self) -> None:
        self._finalize(False)

    def dismiss(self) -> None:
        """Backdrop or close-button dismissal."""
        self._finalize(False)

    def _on_key(self, press: KeyPress) -> bool:
        if press.key == "Escape":
            self._finalize(False)
            return True
        if self.surface is not None and self.surface.is_text_input_focused():
            return False
        if press.key in ("n", "N") and not press.has_modifier:
            self._finalize(False)
            return True
        return False

    def _finalize(self, result: bool) -> None:
        future = self._future
        if self._listener is not None:
            self.keyboard.remove(self._listener)
            self._listener = None
        self._future = None
        if future is None:
            return
        if self.surface is not None:
            self.surface.close()
        if not future.done():
            future.set_result(result)
