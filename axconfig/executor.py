"""Serialized command/response execution over a device transport.

Commands are queued in submission order and run one at a time. A worker
task drives the cycle: write the active command, read whatever the
transport has, split it into lines and hand each line to the active
command until one matches its terminal prefix. A per-command timer cancels
a stuck read and rejects the command with :class:`ProtocolTimeout`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from typing import Deque, Optional

from .core.errors import DeviceError, ProtocolTimeout, TransportError
from .core.models import Command, PendingCommand
from .core.protocols import Transport

LOGGER = logging.getLogger(__name__)

DEFAULT_NUDGE_DELAY_SECONDS = 0.1


def _printable(text: str) -> str:
    return text.replace("\r", "|").replace("\n", "|")


class CommandExecutor:
    """Owns the command queue and the single in-flight command for one transport."""

    def __init__(
        self,
        transport: Transport,
        *,
        nudge_delay: float = DEFAULT_NUDGE_DELAY_SECONDS,
    ) -> None:
        self._transport = transport
        self._nudge_delay = nudge_delay
        self._queue: Deque[PendingCommand] = deque()
        self._active: Optional[PendingCommand] = None
        self._worker: Optional[asyncio.Task[None]] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self._read_task: Optional[asyncio.Future[Optional[str]]] = None
        self._background: set[asyncio.Task[None]] = set()
        self._receive_buffer = ""

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def active(self) -> Optional[PendingCommand]:
        return self._active

    @property
    def queued(self) -> int:
        return len(self._queue)

    @property
    def idle(self) -> bool:
        return self._active is None and not self._queue

    def submit(self, command: Command) -> asyncio.Future[PendingCommand]:
        """Queue a command; the returned future resolves to its :class:`PendingCommand`.

        The future is rejected with a :class:`DeviceError` on transport
        failure or timeout.
        """
        pending = PendingCommand(command)
        self._queue.append(pending)
        LOGGER.debug(
            "Queued command %s (queue=%d, active=%s)",
            _printable(command.output),
            len(self._queue),
            self._active is not None,
        )
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())
        return pending.future

    async def execute(self, command: Command) -> PendingCommand:
        return await self.submit(command)

    def reset_buffer(self) -> None:
        """Discard any partially received data."""
        self._receive_buffer = ""

    async def aclose(self) -> None:
        """Stop the worker and reject everything outstanding."""
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
        if self._active is not None:
            self._complete(self._active, TransportError("Executor closed"))
        while self._queue:
            self._queue.popleft().complete(TransportError("Executor closed"))
        for task in list(self._background):
            task.cancel()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _run(self) -> None:
        try:
            while not self.idle:
                try:
                    await self._tick()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    LOGGER.exception("Command executor tick failed")
                # One step per loop iteration
                await asyncio.sleep(0)
        finally:
            self._cancel_read_task()

    async def _tick(self) -> None:
        if self._active is None:
            if not self._queue:
                return
            pending = self._queue.popleft()
            self._activate(pending)
            LOGGER.debug(">>> %s", _printable(pending.command.output))
            try:
                await self._transport.write(pending.command.output)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._complete(pending, _as_transport_error(exc, "Write failed"))
                return

        pending = self._active
        if pending is None:
            return

        if pending.timed_out():
            self._complete(pending, ProtocolTimeout("Timeout before read"))
            return

        data = await self._read(pending)
        if self._active is not pending:
            # Timed out (or failed) while the read was in flight
            if data:
                self._receive_buffer += data
            return

        if data is None and self._transport.kind == "serial":
            # Some serial drivers hold buffered content until more bytes arrive
            try:
                await self._transport.write("\r")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.debug("Serial nudge write failed: %s", exc)
            await asyncio.sleep(self._nudge_delay)

        if data:
            LOGGER.debug("<<< %s", _printable(data))
            self._receive_buffer += data
        self._drain_lines()

    async def _read(self, pending: PendingCommand) -> Optional[str]:
        read_task = asyncio.ensure_future(self._transport.read())
        self._read_task = read_task
        try:
            await asyncio.wait({read_task})
        finally:
            if not read_task.done():
                read_task.cancel()
            if self._read_task is read_task:
                self._read_task = None

        if read_task.cancelled():
            return None
        exc = read_task.exception()
        if exc is not None:
            if self._active is pending:
                self._complete(pending, _as_transport_error(exc, "Read failed"))
            return None
        return read_task.result()

    def _drain_lines(self) -> None:
        while self._active is not None:
            raw_line, separator, remainder = self._receive_buffer.partition("\n")
            if not separator:
                return
            self._receive_buffer = remainder
            pending = self._active
            line = raw_line.strip()
            terminal = pending.add_response(line)
            LOGGER.debug(
                "LINE: %s (lines=%d, terminal=%s)", line, len(pending.lines), terminal
            )
            if terminal:
                self._complete(pending)
                return

    def _activate(self, pending: PendingCommand) -> None:
        self._active = pending
        pending.start()
        timeout_ms = pending.command.timeout_ms
        if timeout_ms:
            loop = asyncio.get_running_loop()
            self._timeout_handle = loop.call_later(
                timeout_ms / 1000.0, self._on_timeout, pending
            )

    def _on_timeout(self, pending: PendingCommand) -> None:
        self._timeout_handle = None
        if pending is not self._active or pending.done:
            return
        LOGGER.debug("Command timed out: %s", _printable(pending.command.output))
        self._cancel_read_task()
        task = asyncio.get_running_loop().create_task(self._cancel_transport_read())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        self._complete(
            pending,
            ProtocolTimeout(
                f"Timeout after {pending.command.timeout_ms} ms waiting for "
                f"{pending.command.terminal_prefix!r}"
            ),
        )

    async def _cancel_transport_read(self) -> None:
        try:
            await self._transport.cancel_read()
        except Exception as exc:
            LOGGER.debug("Transport read cancellation failed: %s", exc)

    def _cancel_read_task(self) -> None:
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()

    def _complete(
        self, pending: PendingCommand, error: Optional[DeviceError] = None
    ) -> None:
        if self._timeout_handle is not None and self._active is pending:
            self._timeout_handle.cancel()
            self._timeout_handle = None
        if self._active is pending:
            self._active = None
        if error is not None:
            LOGGER.debug(
                "Command failed: %s -- %s", _printable(pending.command.output), error
            )
        pending.complete(error)


def _as_transport_error(exc: BaseException, context: str) -> DeviceError:
    if isinstance(exc, DeviceError):
        return exc
    return TransportError(f"{context}: {exc}")
