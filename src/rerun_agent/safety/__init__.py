"""
Safety module - run cancellation and the toggle hotkey.
"""
from rerun_agent.safety.cancellation import (
    CancelScope,
    RunCancelled,
    async_wait_with_cancel,
    async_wait_until,
)
from rerun_agent.safety.hotkey import (
    HotkeyConfig,
    HotkeyListener,
    normalize_key_name,
)

__all__ = [
    "CancelScope",
    "RunCancelled",
    "async_wait_with_cancel",
    "async_wait_until",
    "HotkeyConfig",
    "HotkeyListener",
    "normalize_key_name",
]
