"""
Host command channel.

The whole inbound control surface of a controller: a single toggle
(start when idle, cancel when running), a liveness ping and a state query.
Messages are plain dicts with a "type" key so any transport can feed them.
"""

import asyncio
from typing import Any, Dict, Optional

from rerun_agent.controller import RetryController
from rerun_agent.logging import get_logger
from rerun_agent.state import StateSnapshot

logger = get_logger(__name__)

USER_CANCEL_REASON = "cancelled by user"

TOGGLE_TYPES = ("toggle", "action-clicked")


class HostChannel:
    """
    Routes host commands to one controller.

    Must be created and used on the event loop that runs the controller;
    foreign threads go through toggle_threadsafe().
    """

    def __init__(self, controller: RetryController, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.controller = controller
        self._loop = loop
        self._task: Optional[asyncio.Task] = None

    @property
    def task(self) -> Optional[asyncio.Task]:
        """The detached task of the latest run, if any."""
        return self._task

    def toggle(self) -> StateSnapshot:
        """
        Start a run if idle, cancel it if running.

        The run is begun synchronously before its loop is scheduled, so the
        returned snapshot already shows it running and a second toggle in
        the same loop tick cancels it.
        """
        if self.controller.running:
            logger.info("Toggle received, cancelling")
            self.controller.cancel(USER_CANCEL_REASON)
        else:
            logger.info("Toggle received, starting")
            loop = self._loop or asyncio.get_running_loop()
            self._loop = loop
            if self.controller.begin(loop):
                self._task = loop.create_task(self.controller.run_begun())
        return self.controller.current_state()

    def toggle_threadsafe(self) -> None:
        """Toggle from a thread other than the event loop's (hotkey hooks)."""
        if self._loop is None:
            raise RuntimeError("HostChannel has no event loop; call toggle() or pass loop= first")
        self._loop.call_soon_threadsafe(self.toggle)

    def handle(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Dispatch one inbound message.

        Returns the reply message, or None when the type is not recognized.
        """
        msg_type = message.get("type")

        if msg_type in TOGGLE_TYPES:
            snapshot = self.toggle()
            return {"type": "update-state", "payload": snapshot.to_dict()}

        if msg_type == "ping":
            return {"type": "pong", "payload": {"originalMessage": message}}

        if msg_type == "get-state":
            return {"type": "update-state", "payload": self.controller.current_state().to_dict()}

        logger.warning("Unable to parse message", type=msg_type if msg_type is not None else "(missing)")
        return None

    async def wait(self) -> Optional[StateSnapshot]:
        """Wait for the detached run to finish and return its final snapshot."""
        if self._task is None:
            return None
        return await self._task
