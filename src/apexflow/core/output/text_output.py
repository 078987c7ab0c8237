"""
Text delivery to the focused application.

The pipeline only knows the ``OutputSink`` interface. ``TextOutputController``
is the default sink: it pastes through the clipboard and restores the previous
clipboard contents, or types character by character.
"""

import sys
import time
from typing import Awaitable, Callable, Optional, Protocol, TextIO, Union

from ...utils.logger import get_logger
from ...utils.platform import (
    create_keyboard,
    get_clipboard_commands,
    get_clipboard_text,
    get_shortcut_modifier,
    set_clipboard_text,
)

logger = get_logger(__name__)


class OutputSink(Protocol):
    def deliver(self, text: str) -> Union[bool, Awaitable[bool]]:
        ...


class TextOutputController:
    def __init__(
        self,
        instant: bool = True,
        on_complete: Optional[Callable[[], None]] = None,
        keyboard=None,
    ):
        self.instant = instant
        self._keyboard = keyboard
        self._on_complete = on_complete

    @property
    def keyboard(self):
        if self._keyboard is None:
            self._keyboard = create_keyboard()
        return self._keyboard

    def deliver(self, text: str) -> bool:
        try:
            self.output_text(text, instant=self.instant)
        except Exception as e:
            logger.error(f"Text output failed: {e}", exc_info=True)
            return False
        return True

    def output_text(self, text: str, instant: bool = True) -> None:
        if instant:
            self._paste_text(text)
        else:
            self.keyboard.type(text)

        if self._on_complete:
            self._on_complete()

    def _paste_text(self, text: str) -> None:
        logger.debug(f"Pasting text via clipboard ({len(text)} chars)")

        commands = get_clipboard_commands()
        if commands is None:
            logger.warning("No clipboard available, falling back to direct typing")
            self.keyboard.type(text)
            return

        old_clipboard = get_clipboard_text(commands)

        if not set_clipboard_text(text, commands):
            # Fallback to direct typing
            self.keyboard.type(text)
            return

        time.sleep(0.05)

        with self.keyboard.pressed(get_shortcut_modifier()):
            self.keyboard.tap("v")

        time.sleep(0.1)

        if old_clipboard:
            set_clipboard_text(old_clipboard, commands)


class StreamOutputSink:
    """Writes delivered text to a stream, one line per session."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stdout

    def deliver(self, text: str) -> bool:
        self.stream.write(text + "\n")
        self.stream.flush()
        return True
