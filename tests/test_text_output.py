"""
Tests for text delivery.

The keyboard and clipboard helpers are mocked so nothing is typed into the
desktop running the tests.
"""

import io
from unittest.mock import MagicMock, patch

import pytest

from apexflow.core.output import StreamOutputSink, TextOutputController

OUTPUT = "apexflow.core.output.text_output"


@pytest.fixture
def keyboard():
    return MagicMock()


@pytest.fixture(autouse=True)
def no_sleep():
    with patch(f"{OUTPUT}.time.sleep"), \
            patch(f"{OUTPUT}.get_shortcut_modifier", return_value="ctrl"):
        yield


class TestPaste:
    def test_pastes_and_restores_clipboard(self, keyboard):
        """Test paste mode pastes and restores the clipboard."""
        commands = object()
        with patch(f"{OUTPUT}.get_clipboard_commands", return_value=commands), \
                patch(f"{OUTPUT}.get_clipboard_text", return_value="previous"), \
                patch(f"{OUTPUT}.set_clipboard_text", return_value=True) as set_clipboard:
            controller = TextOutputController(keyboard=keyboard)
            assert controller.deliver("hello world") is True

        assert [c.args for c in set_clipboard.call_args_list] == [
            ("hello world", commands),
            ("previous", commands),
        ]
        keyboard.pressed.assert_called_once_with("ctrl")
        keyboard.tap.assert_called_once_with("v")
        keyboard.type.assert_not_called()

    def test_empty_clipboard_not_restored(self, keyboard):
        """Test an empty clipboard is not restored."""
        with patch(f"{OUTPUT}.get_clipboard_commands", return_value=object()), \
                patch(f"{OUTPUT}.get_clipboard_text", return_value=None), \
                patch(f"{OUTPUT}.set_clipboard_text", return_value=True) as set_clipboard:
            TextOutputController(keyboard=keyboard).deliver("text")

        assert set_clipboard.call_count == 1

    def test_no_clipboard_types_directly(self, keyboard):
        """Test without clipboard tools the text is typed."""
        with patch(f"{OUTPUT}.get_clipboard_commands", return_value=None):
            assert TextOutputController(keyboard=keyboard).deliver("typed") is True

        keyboard.type.assert_called_once_with("typed")
        keyboard.tap.assert_not_called()

    def test_clipboard_write_failure_types_directly(self, keyboard):
        """Test a failed clipboard write falls back to typing."""
        with patch(f"{OUTPUT}.get_clipboard_commands", return_value=object()), \
                patch(f"{OUTPUT}.get_clipboard_text", return_value="old"), \
                patch(f"{OUTPUT}.set_clipboard_text", return_value=False):
            TextOutputController(keyboard=keyboard).deliver("typed")

        keyboard.type.assert_called_once_with("typed")
        keyboard.tap.assert_not_called()


class TestTyping:
    def test_typing_mode(self, keyboard):
        """Test typing mode types the text."""
        controller = TextOutputController(instant=False, keyboard=keyboard)
        assert controller.deliver("slow text") is True
        keyboard.type.assert_called_once_with("slow text")

    def test_on_complete_called(self, keyboard):
        """Test on_complete runs after delivery."""
        on_complete = MagicMock()
        TextOutputController(instant=False, keyboard=keyboard, on_complete=on_complete).deliver("x")
        on_complete.assert_called_once()

    def test_keyboard_failure_returns_false(self, keyboard):
        """Test a keyboard error returns False."""
        keyboard.type.side_effect = RuntimeError("no display")
        controller = TextOutputController(instant=False, keyboard=keyboard)
        assert controller.deliver("text") is False

    def test_keyboard_created_lazily(self):
        """Test the keyboard is created on first delivery only."""
        created = MagicMock()
        with patch(f"{OUTPUT}.create_keyboard", return_value=created) as factory:
            controller = TextOutputController(instant=False)
            factory.assert_not_called()
            controller.deliver("a")
            controller.deliver("b")

        factory.assert_called_once()
        assert created.type.call_count == 2


class TestStreamOutputSink:
    def test_writes_one_line(self):
        """Test each delivery writes one line."""
        buffer = io.StringIO()
        sink = StreamOutputSink(buffer)

        assert sink.deliver("first") is True
        assert sink.deliver("second") is True
        assert buffer.getvalue() == "first\nsecond\n"
