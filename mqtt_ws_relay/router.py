import asyncio
import logging
import time
from typing import Dict, Optional

from .metrics import Metrics
from .protocol import encode_message
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


class Router:
    """
    Fans broker messages out to subscribed clients.

    Messages from the broker thread go through submit() into a bounded queue;
    run() is the only consumer, so messages are dispatched in arrival order on
    the event loop. Sends are tracked per connection and never awaited by the
    consumer.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        metrics: Optional[Metrics] = None,
        send_timeout: float = 5.0,
        queue_size: int = 1000,
        log_times: bool = False,
    ):
        self.registry = registry
        self.metrics = metrics or Metrics()
        self.send_timeout = send_timeout
        self.log_times = log_times
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        # connection -> its in-flight send
        self._sending: Dict[object, asyncio.Task] = {}

    def start(self):
        self._loop = asyncio.get_running_loop()
        self._task = self._loop.create_task(self.run())

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for task in list(self._sending.values()):
            task.cancel()
        await asyncio.gather(*self._sending.values(), return_exceptions=True)

    def submit(self, topic: str, payload: bytes):
        """Thread-safe: hand a broker message to the event loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("router not running; dropping message on %r", topic)
            return
        try:
            loop.call_soon_threadsafe(self.enqueue, topic, payload)
        except RuntimeError:
            # loop closed between the check and the call
            logger.warning("event loop closed; dropping message on %r", topic)

    def enqueue(self, topic: str, payload: bytes):
        self.metrics.messages_in_total += 1
        try:
            self._queue.put_nowait((topic, payload))
        except asyncio.QueueFull:
            self.metrics.messages_dropped_total += 1
            logger.warning("inbound queue full; dropping message on %r", topic)

    async def run(self):
        while True:
            topic, payload = await self._queue.get()
            try:
                self.dispatch(topic, payload)
            except Exception:
                logger.exception("dispatch failed for topic %r", topic)
            finally:
                self._queue.task_done()

    async def join(self):
        """Wait until every queued message has been dispatched and its sends have finished."""
        await self._queue.join()
        await self.drain()

    async def drain(self):
        while self._sending:
            await asyncio.gather(*self._sending.values(), return_exceptions=True)

    def dispatch(self, topic: str, payload: bytes) -> int:
        """
        Start delivery of one message to every live subscriber of topic.

        Each send runs as its own task, so a stalled client never holds up the
        others or the next message. A client whose previous send is still in
        flight loses this delivery. Returns the number of sends started.
        """
        t0 = time.perf_counter()
        targets = [conn for conn in self.registry.matching(topic) if not conn.closed]
        if not targets:
            return 0

        frame = encode_message(topic, payload)
        started = 0
        for conn in targets:
            if conn in self._sending:
                self.metrics.delivery_failures_total += 1
                logger.warning("send to %r still pending; delivery on %r dropped", conn, topic)
                continue
            task = asyncio.ensure_future(self._deliver(conn, frame))
            self._sending[conn] = task
            task.add_done_callback(lambda t, c=conn: self._send_done(c, t))
            started += 1

        ms = (time.perf_counter() - t0) * 1000
        self.metrics.observe_event("FANOUT", ms)
        if self.log_times:
            logger.info("[FANOUT] topic=%s targets=%d started=%d cycle_ms=%.3f",
                        topic, len(targets), started, ms)
        return started

    def _send_done(self, conn, task: asyncio.Task):
        if self._sending.get(conn) is task:
            del self._sending[conn]

    async def _deliver(self, conn, frame: str) -> bool:
        try:
            await asyncio.wait_for(conn.send_str(frame), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            self.metrics.delivery_failures_total += 1
            logger.warning("send to %r timed out; delivery dropped", conn)
            return False
        except Exception as e:
            self.metrics.delivery_failures_total += 1
            logger.warning("send to %r failed: %s", conn, e)
            return False
        self.metrics.deliveries_total += 1
        return True
