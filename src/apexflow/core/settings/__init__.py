from .settings import (
    Settings,
    TranscriptionRecord,
    add_history_record,
    clear_history,
    get_settings,
    load_history,
)

__all__ = [
    "Settings",
    "TranscriptionRecord",
    "get_settings",
    "add_history_record",
    "load_history",
    "clear_history",
]
