"""Default context signal sources backed by platform tools."""

import asyncio
import os
import subprocess
import tempfile
import time
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from ...utils.logger import get_logger
from ...utils.platform import (
    create_keyboard,
    get_clipboard_commands,
    get_clipboard_text,
    get_platform,
    get_screenshot_command,
    get_shortcut_modifier,
    get_subprocess_kwargs,
    read_command_output,
    set_clipboard_text,
)
from .types import SignalKind

logger = get_logger(__name__)


class ContextSource(ABC):
    kind: SignalKind

    @abstractmethod
    async def read(self) -> str:
        ...


class ClipboardSource(ContextSource):
    kind = SignalKind.CLIPBOARD

    async def read(self) -> str:
        return await asyncio.to_thread(get_clipboard_text)


class SelectedTextSource(ContextSource):
    """
    Text currently selected in the focused application.

    On Linux the X11 primary selection holds it directly. Elsewhere a copy
    shortcut is sent and the previous clipboard contents are restored.
    """

    kind = SignalKind.SELECTED_TEXT
    copy_delay = 0.15

    async def read(self) -> str:
        return await asyncio.to_thread(self._read_sync)

    def _read_sync(self) -> str:
        commands = get_clipboard_commands()
        if commands is None:
            raise RuntimeError("clipboard is not supported on this platform")

        if commands.primary:
            return read_command_output(commands.primary)

        previous = get_clipboard_text(commands)
        set_clipboard_text("", commands)

        keyboard = create_keyboard()
        with keyboard.pressed(get_shortcut_modifier()):
            keyboard.tap("c")
        time.sleep(self.copy_delay)

        try:
            return get_clipboard_text(commands)
        finally:
            if previous:
                set_clipboard_text(previous, commands)


class ScreenTextSource(ContextSource):
    """OCR of the current screen via a screenshot tool and tesseract."""

    kind = SignalKind.SCREEN

    def __init__(self, tesseract_cmd: str = "tesseract", timeout: float = 5.0):
        self.tesseract_cmd = tesseract_cmd
        self.timeout = timeout

    async def read(self) -> str:
        return await asyncio.to_thread(self._read_sync)

    def _read_sync(self) -> str:
        fd, path = tempfile.mkstemp(prefix="apexflow-screen-", suffix=".png")
        os.close(fd)
        try:
            screenshot_cmd = get_screenshot_command(path)
            if screenshot_cmd is None:
                raise RuntimeError(f"screen capture is not supported on {get_platform()}")

            subprocess.run(
                screenshot_cmd,
                **get_subprocess_kwargs(capture_output=True, timeout=self.timeout, check=True),
            )
            result = subprocess.run(
                [self.tesseract_cmd, path, "stdout"],
                **get_subprocess_kwargs(
                    capture_output=True, text=True, timeout=self.timeout, check=True
                ),
            )
            return result.stdout
        finally:
            try:
                os.remove(path)
            except OSError:
                pass


class VocabularySource(ContextSource):
    kind = SignalKind.VOCABULARY

    def __init__(self, words: Sequence[str]):
        self.words: List[str] = [w.strip() for w in words if w and w.strip()]

    async def read(self) -> str:
        return ", ".join(self.words)


def default_sources(settings, tesseract_cmd: Optional[str] = None) -> List[ContextSource]:
    return [
        ClipboardSource(),
        SelectedTextSource(),
        ScreenTextSource(tesseract_cmd or "tesseract"),
        VocabularySource(settings.vocabulary),
    ]
