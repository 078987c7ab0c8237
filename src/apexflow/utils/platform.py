"""Platform-specific utilities for cross-platform compatibility."""

import platform
import subprocess
import sys
from dataclasses import dataclass
from typing import List, Optional

from .logger import get_logger

logger = get_logger(__name__)


def get_platform() -> str:
    system = platform.system()
    if system == "Darwin":
        return "macos"
    return system.lower()


def get_subprocess_kwargs(**kwargs) -> dict:
    # Keep helper processes from flashing a console window on Windows
    if sys.platform == "win32":
        kwargs.setdefault("creationflags", getattr(subprocess, "CREATE_NO_WINDOW", 0))
    return kwargs


@dataclass(frozen=True)
class ClipboardCommands:
    copy: List[str]
    paste: List[str]
    primary: Optional[List[str]] = None


def get_clipboard_commands() -> Optional[ClipboardCommands]:
    system = get_platform()

    if system == "linux":
        return ClipboardCommands(
            copy=["xclip", "-selection", "clipboard"],
            paste=["xclip", "-selection", "clipboard", "-o"],
            primary=["xclip", "-selection", "primary", "-o"],
        )
    if system == "macos":
        return ClipboardCommands(copy=["pbcopy"], paste=["pbpaste"])
    if system == "windows":
        return ClipboardCommands(
            copy=["clip"], paste=["powershell", "-command", "Get-Clipboard"]
        )

    logger.warning(f"No clipboard commands known for platform {system}")
    return None


def read_command_output(cmd: List[str], timeout: float = 1.0) -> str:
    try:
        result = subprocess.run(
            cmd,
            **get_subprocess_kwargs(capture_output=True, text=True, timeout=timeout),
        )
        return result.stdout if result.returncode == 0 else ""
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return ""


def get_clipboard_text(commands: Optional[ClipboardCommands] = None) -> str:
    commands = commands or get_clipboard_commands()
    if commands is None:
        return ""
    return read_command_output(commands.paste)


def set_clipboard_text(text: str, commands: Optional[ClipboardCommands] = None) -> bool:
    commands = commands or get_clipboard_commands()
    if commands is None:
        return False
    try:
        subprocess.run(
            commands.copy,
            **get_subprocess_kwargs(input=text, text=True, timeout=1, check=True),
        )
        return True
    except (
        subprocess.TimeoutExpired,
        FileNotFoundError,
        subprocess.CalledProcessError,
    ) as e:
        logger.error(f"Failed to set clipboard: {e}")
        return False


def get_screenshot_command(path: str) -> Optional[List[str]]:
    system = get_platform()
    if system == "macos":
        return ["screencapture", "-x", path]
    if system == "linux":
        return ["import", "-window", "root", path]
    return None


def create_keyboard():
    # pynput needs a display server at import time
    from pynput.keyboard import Controller

    return Controller()


def get_shortcut_modifier():
    from pynput.keyboard import Key

    return Key.cmd if get_platform() == "macos" else Key.ctrl
