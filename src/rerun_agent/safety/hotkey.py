"""
Global toggle hotkey using pynput.

The listener runs on pynput's own thread; the callback it invokes must be
thread-safe (see HostChannel.toggle_threadsafe).
"""

import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Set

from rerun_agent.logging import get_logger

logger = get_logger(__name__)

# pynput key objects (keyboard.Key | keyboard.KeyCode)
KeyType = Any

MODIFIER_ALIASES = {
    "ctrl_l": "ctrl",
    "ctrl_r": "ctrl",
    "shift_l": "shift",
    "shift_r": "shift",
    "alt_l": "alt",
    "alt_r": "alt",
    "alt_gr": "alt",
    "cmd_l": "cmd",
    "cmd_r": "cmd",
}


@dataclass
class HotkeyConfig:
    """Parsed hotkey configuration."""

    modifiers: Set[str]
    key: str

    @classmethod
    def parse(cls, hotkey_str: str) -> "HotkeyConfig":
        """
        Parse hotkey string like 'ctrl+shift+r' into components.
        """
        parts = [p.strip() for p in hotkey_str.lower().split("+") if p.strip()]
        if not parts:
            raise ValueError(f"Empty hotkey: {hotkey_str!r}")
        return cls(modifiers=set(parts[:-1]), key=parts[-1])

    def __str__(self) -> str:
        return "+".join(sorted(self.modifiers) + [self.key])


def normalize_key_name(key: KeyType) -> str:
    """Get normalized key name for a pynput key event."""
    name = getattr(key, "name", None)
    if name:
        name = name.lower()
        return MODIFIER_ALIASES.get(name, name)

    char = getattr(key, "char", None)
    if char:
        return char.lower()

    return ""


class HotkeyListener:
    """
    Watches for one global key combination and calls on_activate.

    Activation fires once per press of the combination; holding the keys
    down does not repeat it.
    """

    def __init__(self, hotkey: str, on_activate: Callable[[], None]):
        self.hotkey_config = HotkeyConfig.parse(hotkey)
        self.on_activate = on_activate

        self._listener: Optional[Any] = None
        self._lock = threading.Lock()
        self._pressed_modifiers: Set[str] = set()
        self._armed = True

    @property
    def active(self) -> bool:
        return self._listener is not None

    def start(self) -> bool:
        """
        Start listening.

        Returns:
            False if no keyboard hook is available (e.g. headless session)
        """
        if self._listener is not None:
            return True

        try:
            from pynput import keyboard

            self._listener = keyboard.Listener(
                on_press=self.handle_press,
                on_release=self.handle_release,
            )
            self._listener.start()
        except Exception as e:
            self._listener = None
            logger.warning("Toggle hotkey unavailable", hotkey=str(self.hotkey_config), error=str(e))
            return False

        logger.info("Toggle hotkey listening", hotkey=str(self.hotkey_config))
        return True

    def stop(self) -> None:
        """Stop the listener."""
        if self._listener is not None:
            self._listener.stop()
            self._listener = None
            logger.info("Toggle hotkey stopped")

    def handle_press(self, key: KeyType) -> None:
        """Handle key press event."""
        key_name = normalize_key_name(key)

        with self._lock:
            if key_name in ("ctrl", "shift", "alt", "cmd"):
                self._pressed_modifiers.add(key_name)
                return

            if not self._matches(key_name) or not self._armed:
                return
            self._armed = False

        try:
            self.on_activate()
        except Exception as e:
            logger.error("Error in hotkey callback", error=str(e))

    def handle_release(self, key: KeyType) -> None:
        """Handle key release event."""
        key_name = normalize_key_name(key)

        with self._lock:
            self._pressed_modifiers.discard(key_name)
            if key_name == self.hotkey_config.key:
                self._armed = True

    def _matches(self, key_name: str) -> bool:
        if not self.hotkey_config.modifiers.issubset(self._pressed_modifiers):
            return False
        return key_name == self.hotkey_config.key
