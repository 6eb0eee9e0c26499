import asyncio
import logging
import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from fleet_core.mission_message_defs import Envelope
from fleet_core.utils.errors import BusConnectionError, MessageFormatError

# Callbacks receive (channel, envelope). They must not block: runtime nodes
# pass AgentSequencer.submit so handling happens on the agent's own sequence.
EnvelopeCallback = Callable[[str, Envelope], None]


class MissionTransport:
    """Fire-and-forget pub/sub over named channels."""

    async def start(self):
        pass

    async def stop(self):
        pass

    def publish(self, channel: str, envelope: Envelope) -> None:
        raise NotImplementedError("Subclasses must implement publish")

    def subscribe(self, channel: str, callback: EnvelopeCallback) -> None:
        raise NotImplementedError("Subclasses must implement subscribe")

    def unsubscribe(self, channel: str, callback: Optional[EnvelopeCallback] = None) -> None:
        """Drop one callback, or every callback of this transport when callback is None."""
        raise NotImplementedError("Subclasses must implement unsubscribe")


class InMemoryTransport(MissionTransport):
    """Single-process bus. Every subscriber of a channel gets every envelope."""

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger("InMemoryTransport")
        self.subscribers: Dict[str, List[EnvelopeCallback]] = defaultdict(list)
        self.published: List[tuple] = []  # (channel, envelope) history

    def publish(self, channel: str, envelope: Envelope) -> None:
        self.published.append((channel, envelope))
        self.logger.debug(f"{envelope.kind.value} from {envelope.sender_id} on {channel}")
        # Copy: a callback may subscribe or unsubscribe while we fan out
        for callback in list(self.subscribers.get(channel, [])):
            try:
                callback(channel, envelope)
            except Exception as e:
                self.logger.error(f"Subscriber on {channel} failed: {e}", exc_info=True)

    def subscribe(self, channel: str, callback: EnvelopeCallback) -> None:
        if callback not in self.subscribers[channel]:
            self.subscribers[channel].append(callback)

    def unsubscribe(self, channel: str, callback: Optional[EnvelopeCallback] = None) -> None:
        if channel not in self.subscribers:
            return
        if callback is None:
            del self.subscribers[channel]
        elif callback in self.subscribers[channel]:
            self.subscribers[channel].remove(callback)


class HttpBusTransport(MissionTransport):
    """Client for the mission_bus server.

    Publishing and subscription changes are scheduled as background tasks and
    never raise into the caller; failures are logged. Incoming envelopes are
    fetched with an adaptive polling loop.
    """

    def __init__(self, agent_id: str, bus_url: str, logger=None,
                 min_poll_interval: float = 0.05, max_poll_interval: float = 1.0,
                 idle_backoff_after: float = 30.0):
        self.agent_id = agent_id
        self.bus_url = bus_url.rstrip('/')
        self.logger = logger or logging.getLogger(f"HttpBusTransport_{agent_id}")
        self.min_poll_interval = min_poll_interval
        self.max_poll_interval = max_poll_interval
        self.idle_backoff_after = idle_backoff_after

        self.session: Optional[aiohttp.ClientSession] = None
        self.callbacks: Dict[str, List[EnvelopeCallback]] = defaultdict(list)
        self.polling_task = None
        self.stop_polling_event = asyncio.Event()
        self.processed_message_ids = set()
        self.pending_sends = set()

    async def start(self):
        """Open the HTTP session, register existing subscriptions and start polling."""
        if self.session is None:
            self.session = aiohttp.ClientSession()
        try:
            async with self.session.get(f"{self.bus_url}/status") as response:
                if response.status != 200:
                    raise BusConnectionError(f"Mission bus at {self.bus_url} answered {response.status}")
        except aiohttp.ClientError as e:
            await self.session.close()
            self.session = None
            raise BusConnectionError(f"Cannot reach mission bus at {self.bus_url}: {e}") from e

        for channel in list(self.callbacks):
            await self._register_channel(channel)
        self.stop_polling_event.clear()
        self.polling_task = asyncio.create_task(self._message_polling_loop())
        self.logger.info(f"Connected to mission bus at {self.bus_url} as {self.agent_id}")

    async def stop(self):
        """Stop polling, flush pending sends, leave every bus channel and close the session.

        Local callbacks are kept so a later start() registers them again.
        """
        if self.polling_task:
            self.stop_polling_event.set()
            try:
                await asyncio.wait_for(self.polling_task, timeout=5)
            except asyncio.TimeoutError:
                self.logger.warning("Polling task did not stop gracefully, cancelling")
                self.polling_task.cancel()
            self.polling_task = None

        if self.pending_sends:
            await asyncio.gather(*self.pending_sends, return_exceptions=True)

        if self.session:
            for channel in list(self.callbacks):
                await self._unregister_channel(channel)
            await self.session.close()
            self.session = None

    def publish(self, channel: str, envelope: Envelope) -> None:
        self._spawn(self._post_envelope(channel, envelope))

    def subscribe(self, channel: str, callback: EnvelopeCallback) -> None:
        first = channel not in self.callbacks or not self.callbacks[channel]
        if callback not in self.callbacks[channel]:
            self.callbacks[channel].append(callback)
        if first and self.session is not None:
            self._spawn(self._register_channel(channel))

    def unsubscribe(self, channel: str, callback: Optional[EnvelopeCallback] = None) -> None:
        if channel not in self.callbacks:
            return
        if callback is not None and callback in self.callbacks[channel]:
            self.callbacks[channel].remove(callback)
        if callback is None or not self.callbacks[channel]:
            del self.callbacks[channel]
            if self.session is not None:
                self._spawn(self._unregister_channel(channel))

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self.pending_sends.add(task)
        task.add_done_callback(self.pending_sends.discard)

    async def _post_envelope(self, channel: str, envelope: Envelope):
        if self.session is None:
            self.logger.warning(f"Dropping {envelope.kind.value} for {channel}: transport not started")
            return
        url = f"{self.bus_url}/channels/{quote(channel, safe='')}/messages"
        try:
            async with self.session.post(url, json=envelope.to_dict()) as response:
                if response.status not in (200, 201, 202, 204):
                    error_text = await response.text()
                    self.logger.error(f"Failed to publish on {channel}. Status: {response.status}, Response: {error_text}")
        except aiohttp.ClientError as e:
            self.logger.error(f"Exception publishing on {channel}: {e}", exc_info=True)

    async def _register_channel(self, channel: str):
        url = f"{self.bus_url}/subscribers/{quote(self.agent_id, safe='')}/channels"
        try:
            async with self.session.post(url, json={"channel": channel}) as response:
                if response.status not in (200, 201, 204):
                    error_text = await response.text()
                    self.logger.error(f"Failed to subscribe to {channel}. Status: {response.status}, Response: {error_text}")
                else:
                    self.logger.info(f"subscribed to {channel}")
        except aiohttp.ClientError as e:
            self.logger.error(f"Exception subscribing to {channel}: {e}", exc_info=True)

    async def _unregister_channel(self, channel: str):
        url = (f"{self.bus_url}/subscribers/{quote(self.agent_id, safe='')}"
               f"/channels/{quote(channel, safe='')}")
        try:
            async with self.session.delete(url) as response:
                if response.status not in (200, 204, 404):
                    error_text = await response.text()
                    self.logger.error(f"Failed to unsubscribe from {channel}. Status: {response.status}, Response: {error_text}")
        except aiohttp.ClientError as e:
            self.logger.error(f"Exception unsubscribing from {channel}: {e}", exc_info=True)

    async def _message_polling_loop(self):
        """Poll for new messages using adaptive polling."""
        current_interval = self.min_poll_interval
        last_message_time = time.monotonic()
        url = f"{self.bus_url}/subscribers/{quote(self.agent_id, safe='')}/messages"

        self.logger.info(f"Starting message polling loop for {self.agent_id}")

        while not self.stop_polling_event.is_set():
            try:
                async with self.session.get(url) as response:
                    if response.status == 200:
                        messages = await response.json()
                        if messages:
                            current_interval = self.min_poll_interval
                            last_message_time = time.monotonic()
                            for message in messages:
                                self._process_message(message)
                        elif time.monotonic() - last_message_time > self.idle_backoff_after:
                            current_interval = min(current_interval * 1.5, self.max_poll_interval)
                    else:
                        error_text = await response.text()
                        self.logger.warning(f"Error polling messages: {response.status}, {error_text}")
            except (aiohttp.ClientError, ValueError) as e:
                self.logger.error(f"Exception in polling loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self.stop_polling_event.wait(), timeout=current_interval)
            except asyncio.TimeoutError:
                pass

    def _process_message(self, message):
        message_id = message.get('id')
        if message_id is not None:
            if message_id in self.processed_message_ids:
                return
            self.processed_message_ids.add(message_id)
            # Bus ids increase monotonically; keep the newest
            if len(self.processed_message_ids) > 1000:
                self.processed_message_ids = set(sorted(self.processed_message_ids)[-500:])

        channel = message.get('channel')
        try:
            envelope = Envelope.from_dict(message.get('envelope'))
        except MessageFormatError as e:
            self.logger.warning(f"Dropping malformed message {message_id} on {channel}: {e.message}")
            return

        for callback in list(self.callbacks.get(channel, [])):
            try:
                callback(channel, envelope)
            except Exception as e:
                self.logger.error(f"Error in message callback for {channel}: {e}", exc_info=True)
