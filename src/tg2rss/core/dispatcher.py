"""
Dispatcher - Ordered command queue in front of the sync engine.

A single worker consumes commands one at a time in arrival order, so two
sync passes never run concurrently and the engine is the only writer of
feed files and cursors. The periodic timer only ever enqueues.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Union

from tg2rss.core.engine import SyncEngine
from tg2rss.utils.logger import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class SyncAllChannels:
    """Run a sync pass over every subscribed channel."""


@dataclass(frozen=True)
class AddChannel:
    """Start tracking the channel with this username."""

    username: str


Command = Union[SyncAllChannels, AddChannel]


class Dispatcher:
    """
    Bounded command queue with a single consumer.

    Example:
        dispatcher = Dispatcher(engine, capacity=100)

        async with asyncio.TaskGroup() as tg:
            tg.create_task(dispatcher.supervise())
            tg.create_task(dispatcher.run_timer(300))

        # Elsewhere, e.g. an HTTP handler
        dispatcher.submit(AddChannel("durov"))
    """

    def __init__(
        self,
        engine: SyncEngine,
        capacity: int = 100,
        restart_delay: float = 1.0,
    ) -> None:
        """
        Initialize dispatcher.

        Args:
            engine: Sync engine executing the commands
            capacity: Maximum number of queued commands
            restart_delay: Seconds to wait before restarting a crashed worker
        """
        self.engine = engine
        self.capacity = capacity
        self.restart_delay = restart_delay
        self.queue: asyncio.Queue[Command] = asyncio.Queue(maxsize=capacity)
        self.processed = 0
        self.restarts = 0

    def submit(self, command: Command) -> bool:
        """
        Enqueue a command without waiting.

        Returns:
            False if the queue is full; the command is dropped
        """
        try:
            self.queue.put_nowait(command)
        except asyncio.QueueFull:
            log.error("Failed to send %s: queue is full", type(command).__name__)
            return False
        log.debug("Queued %s", command)
        return True

    async def handle(self, command: Command) -> None:
        """Execute a single command."""
        match command:
            case SyncAllChannels():
                await self.engine.sync_all()
            case AddChannel(username=username):
                await self.engine.add_channel(username)
            case _:
                raise TypeError(f"Unknown command: {command!r}")

    async def _process(self, command: Command) -> None:
        log.info("Got new command %s", type(command).__name__)
        try:
            await self.handle(command)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Failed to process %s with %s", command, e)
        else:
            log.info("Command %s processed", type(command).__name__)
        finally:
            self.processed += 1
            self.queue.task_done()

    async def run_worker(self) -> None:
        """Consume commands forever, strictly one at a time."""
        log.info("Starting sync worker")
        while True:
            command = await self.queue.get()
            await self._process(command)

    async def drain(self) -> int:
        """Process everything currently queued, then return how many ran."""
        count = 0
        while not self.queue.empty():
            command = self.queue.get_nowait()
            await self._process(command)
            count += 1
        return count

    async def supervise(self) -> None:
        """Run the worker, restarting it if it dies unexpectedly."""
        while True:
            try:
                await self.run_worker()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.restarts += 1
                log.exception("Sync worker crashed, restarting (restart #%d)", self.restarts)
                await asyncio.sleep(self.restart_delay)

    async def run_timer(self, interval: float) -> None:
        """Enqueue a sync pass now and then every `interval` seconds."""
        while True:
            log.info("Sending RSS update command")
            self.submit(SyncAllChannels())
            await asyncio.sleep(interval)
