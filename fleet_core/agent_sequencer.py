import asyncio
import logging
import time
from typing import Callable, Optional

from fleet_core.mission_message_defs import Envelope


class AgentSequencer:
    """Runs one agent's message handling and periodic tick on a single sequence.

    Transports call submit() from any callback; the run loop is the only place
    the handler and the tick function are invoked, so the two never interleave.
    The tick fires every tick_period even when no message arrives.
    """

    def __init__(self, handler: Callable[[str, Envelope], None], tick: Callable[[], None],
                 tick_period: float = 0.05, on_error: Optional[Callable[[Exception], None]] = None,
                 logger=None):
        self.handler = handler
        self.tick = tick
        self.tick_period = tick_period
        self.on_error = on_error
        self.logger = logger or logging.getLogger("AgentSequencer")

        self.inbox: asyncio.Queue = asyncio.Queue()
        self.stop_event = asyncio.Event()
        self.ticks = 0

    def submit(self, channel: str, envelope: Envelope) -> None:
        self.inbox.put_nowait((channel, envelope))

    def stop(self):
        self.stop_event.set()

    async def run(self):
        loop_clock = time.monotonic
        next_tick = loop_clock()
        self.stop_event.clear()

        while not self.stop_event.is_set():
            timeout = next_tick - loop_clock()
            if timeout > 0:
                try:
                    channel, envelope = await asyncio.wait_for(self.inbox.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass
                else:
                    self._guarded(self.handler, channel, envelope)
                    continue

            self._guarded(self.tick)
            self.ticks += 1
            next_tick += self.tick_period
            # A slow tick must not queue up a burst of catch-up ticks
            now = loop_clock()
            if next_tick < now:
                next_tick = now + self.tick_period

    def _guarded(self, fn, *args):
        try:
            fn(*args)
        except Exception as e:
            if self.on_error is not None:
                self.on_error(e)
            else:
                self.logger.error(f"Unhandled error in agent sequence: {e}", exc_info=True)
