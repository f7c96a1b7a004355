"""Command dispatch: guard policy and serialised execution of actions."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from .actions import Action, ActionTable
from .session import HardwareSession

LOGGER = logging.getLogger(__name__)

_LEADING_INTEGER = re.compile(r"\s*([+-]?)([0-9]+)")
# Longer digit runs can never name an action.
_MAX_CODE_DIGITS = 9


@dataclass(slots=True, frozen=True)
class Idle:
    pass


@dataclass(slots=True, frozen=True)
class Busy:
    """An action is running. ``code`` is ``None`` while the rig starts up."""

    code: Optional[int] = None


DispatchState = Union[Idle, Busy]


class DispatchOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED_UNKNOWN = "unknown_action"
    REJECTED_NOT_READY = "hardware_not_ready"
    REJECTED_DUPLICATE = "duplicate"
    REJECTED_BUSY = "in_progress"


def parse_command_code(payload: bytes) -> Optional[int]:
    """Return the leading base-10 integer of ``payload``, if any.

    Only ASCII digits count. Trailing garbage is ignored (``b"12abc"`` -> 12);
    payloads without a leading integer, or with an implausibly long one,
    yield ``None``.
    """

    text = payload.decode("utf-8", errors="replace")
    match = _LEADING_INTEGER.match(text)
    if match is None:
        return None
    sign, digits = match.groups()
    digits = digits.lstrip("0") or "0"
    if len(digits) > _MAX_CODE_DIGITS:
        return None
    return int(sign + digits)


class CommandDispatcher:
    """Consumes command codes and runs at most one action at a time.

    Commands that arrive while an action is running, or that repeat the last
    accepted code, are dropped rather than queued.
    """

    def __init__(
        self,
        actions: ActionTable,
        session: HardwareSession,
        *,
        max_power: float,
        on_state_change: Optional[Callable[[DispatchState], None]] = None,
    ) -> None:
        self._actions = actions
        self._session = session
        self._max_power = max_power
        self._on_state_change = on_state_change

        self._state: DispatchState = Busy()
        self._last_code: Optional[int] = None
        self._running: Optional[asyncio.Task[None]] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._inbox: Optional[asyncio.Queue[bytes]] = None
        self._consumer: Optional[asyncio.Task[None]] = None

    @property
    def state(self) -> DispatchState:
        return self._state

    @property
    def last_code(self) -> Optional[int]:
        return self._last_code

    @property
    def in_progress(self) -> bool:
        return isinstance(self._state, Busy)

    async def start(self) -> None:
        if self._consumer is not None:
            raise RuntimeError("CommandDispatcher already started")

        self._loop = asyncio.get_running_loop()
        self._inbox = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume())

    async def stop(self) -> None:
        """Stop consuming commands; a running action is left to finish."""

        consumer = self._consumer
        self._consumer = None
        if consumer is not None:
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer

    async def abandon(self) -> None:
        """Cancel the running action, if any, and wait for it to settle."""

        running = self._running
        if running is None or running.done():
            return
        LOGGER.info("Abandoning command %s", self._last_code)
        running.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await running

    def submit(self, payload: bytes) -> None:
        """Queue a raw payload for dispatch; safe to call from any thread."""

        loop = self._loop
        inbox = self._inbox
        if loop is None or inbox is None or self._consumer is None:
            LOGGER.warning("Dropping command %r; dispatcher not running", payload)
            return

        try:
            current_loop = asyncio.get_running_loop()
        except RuntimeError:
            current_loop = None

        if current_loop is loop:
            inbox.put_nowait(bytes(payload))
        else:
            loop.call_soon_threadsafe(inbox.put_nowait, bytes(payload))

    def handle_message(self, topic: str, payload: bytes) -> None:
        LOGGER.info(
            "Received message on MQTT topic %s: %s",
            topic,
            payload.decode("utf-8", errors="replace"),
        )
        self.submit(payload)

    def activate(self) -> None:
        """Leave the start-up state and begin accepting commands."""

        if self._state == Busy(None):
            self._set_state(Idle())
            LOGGER.info("Command dispatcher is live")

    def on_command_received(self, payload: bytes) -> DispatchOutcome:
        text = payload.decode("utf-8", errors="replace")
        code = parse_command_code(payload)

        action = self._actions.get(code)
        if action is None:
            LOGGER.info("Unknown action %s/%s...", text, code)
            return DispatchOutcome.REJECTED_UNKNOWN

        assert code is not None
        if not self._session.ready:
            LOGGER.info(
                "Not acting on %d since the hub is not initialized yet!", code
            )
            return DispatchOutcome.REJECTED_NOT_READY

        if code == self._last_code:
            LOGGER.info("Ignoring duplicate command %d!", code)
            return DispatchOutcome.REJECTED_DUPLICATE

        if isinstance(self._state, Busy):
            LOGGER.info(
                "Ignoring command %d since the last one (%s) is still ongoing...",
                code,
                self._last_code,
            )
            return DispatchOutcome.REJECTED_BUSY

        self._last_code = code
        self._set_state(Busy(code))
        self._running = asyncio.create_task(self._execute(action))
        return DispatchOutcome.ACCEPTED

    async def wait_idle(self) -> None:
        """Wait for the running action, if any, to settle."""

        running = self._running
        if running is not None and not running.done():
            await asyncio.wait({running})

    async def drain(self) -> None:
        """Wait until every submitted payload has been through the guards."""

        if self._inbox is not None and self._consumer is not None:
            await self._inbox.join()

    async def _consume(self) -> None:
        assert self._inbox is not None
        while True:
            payload = await self._inbox.get()
            try:
                self.on_command_received(payload)
            except Exception:
                LOGGER.exception("Failed to dispatch command %r", payload)
            finally:
                self._inbox.task_done()

    async def _execute(self, action: Action) -> None:
        try:
            context = self._session.context(self._max_power)
            await action.run(context)
        except Exception:
            LOGGER.exception("Command %d (%s) failed", action.code, action.name)
        else:
            LOGGER.info("Processed command %d!", action.code)
        finally:
            self._set_state(Idle())

    def _set_state(self, state: DispatchState) -> None:
        self._state = state
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception:  # pragma: no cover - observer errors are non-fatal
                LOGGER.debug("Dispatch state observer raised", exc_info=True)
