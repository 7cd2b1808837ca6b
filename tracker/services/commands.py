"""
Device commands (arm / disarm / reboot).

A command is a single overwritten value at /devices/D/commands/pending that
the device polls. There is no queue and no acknowledgement channel: success
means the store accepted the write, not that the device acted on it.

The triggering button shows a busy state while the write is in flight, a
"sent" state on success and returns to idle after a fixed window whether or
not the device has reacted. On failure the button reverts immediately and
the error propagates to the caller.
"""
import asyncio
import inspect
from typing import Awaitable, Callable, Optional, Union

import structlog

from tracker.config import Settings, get_settings
from tracker.schemas import COMMAND_LABELS, DeviceCommand
from tracker.services.display import DisplayBoard
from tracker.store_client import StoreWriteError, device_path

logger = structlog.get_logger("commands")

BUSY = "busy"
SENT = "sent"
IDLE = "idle"

ARM_BUTTON = "arm-button"

Confirm = Callable[[str], Union[bool, Awaitable[bool]]]


def command_prompt(command: DeviceCommand) -> str:
    return f"Are you sure you want to {COMMAND_LABELS[command]}?"


def button_id(command: DeviceCommand) -> str:
    return f"command-{command.value.lower()}"


async def _confirmed(confirm: Confirm, prompt: str) -> bool:
    result = confirm(prompt)
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


class CommandDispatcher:
    """Writes pending commands and manages the button affordance."""

    def __init__(self, store, device_id: str, board: DisplayBoard, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = store
        self.device_id = device_id
        self.board = board
        self._resets: dict[str, asyncio.TimerHandle] = {}

    @property
    def pending_path(self) -> str:
        return device_path(self.device_id, "commands", "pending")

    async def send(self, command: DeviceCommand, button: Optional[str] = None) -> None:
        """
        Write ``command`` as the pending command.

        Raises StoreWriteError when the store rejects the write, after
        reverting the button.
        """
        command = DeviceCommand(command)
        button = button or button_id(command)
        self._cancel_reset(button)
        self.board.set_state(button, BUSY)
        try:
            await self.store.set(self.pending_path, command.value)
        except StoreWriteError as e:
            logger.error("Failed to send command", command=command.value, error=e.message)
            self.board.set_state(button, IDLE)
            raise
        logger.info("Command sent", command=command.value, device_id=self.device_id)
        self.board.set_state(button, SENT)
        self._schedule_reset(button)

    async def toggle_arm(self, confirm: Confirm) -> Optional[DeviceCommand]:
        """
        Send the inverse of the current armed state.

        ``confirm`` receives the prompt text and must return True before
        anything is written. Returns the command sent, or None if the user
        declined.
        """
        armed = await self.store.get(device_path(self.device_id, "status", "systemArmed"))
        command = DeviceCommand.DISARM if armed else DeviceCommand.ARM
        if not await _confirmed(confirm, command_prompt(command)):
            logger.info("Arm toggle cancelled", command=command.value)
            return None
        await self.send(command, button=ARM_BUTTON)
        # Label shows the next action until the device reports its new state
        self.board.set_text("arm-label", "Arm" if armed else "Disarm")
        return command

    def _schedule_reset(self, button: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.board.set_state(button, IDLE)
            return
        self._resets[button] = loop.call_later(
            self.settings.command_busy_window_s, self._reset, button
        )

    def _reset(self, button: str) -> None:
        self._resets.pop(button, None)
        self.board.set_state(button, IDLE)

    def _cancel_reset(self, button: str) -> None:
        handle = self._resets.pop(button, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        for button in list(self._resets):
            self._cancel_reset(button)
