import logging
import time
import weakref
from typing import Optional, Union

from aiohttp import WSMsgType, web

from .errors import ProtocolError
from .metrics import Metrics
from .protocol import decode_request, encode_error
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


class ConnectionLifecycleManager:
    """
    Per-connection Open/Closed state machine.

    A connection is Open while it is registered. close() unregisters it and
    remembers the handle, so later events for it, open() included, are ignored.
    """

    def __init__(self, registry: SubscriptionRegistry, metrics: Optional[Metrics] = None, log_times: bool = False):
        self.registry = registry
        self.metrics = metrics or Metrics()
        self.log_times = log_times
        self._closed = weakref.WeakSet()

    def open(self, conn):
        if conn in self._closed:
            logger.debug("ignoring open for a closed connection")
            return
        if self.registry.on_connect(conn):
            self.metrics.connects_total += 1

    def close(self, conn):
        self._closed.add(conn)
        if conn not in self.registry:
            return
        topics = self.registry.on_disconnect(conn)
        self.metrics.disconnects_total += 1
        logger.debug("connection closed, dropped %d subscription(s)", len(topics))

    async def handle_message(self, conn, data: Union[str, bytes]):
        if conn not in self.registry:
            return

        t0 = time.perf_counter()
        try:
            request = decode_request(data)
        except ProtocolError as e:
            self.metrics.invalid_requests_total += 1
            logger.info("malformed client request: %r", data[:200])
            try:
                await conn.send_str(encode_error(str(e)))
            except Exception as send_err:
                logger.warning("could not send error response: %s", send_err)
            return

        if not request.is_subscribe:
            logger.debug("ignoring request action=%r topic=%r", request.action, request.topic)
            return

        if self.registry.subscribe(conn, request.topic):
            self.metrics.subscribes_total += 1

        ms = (time.perf_counter() - t0) * 1000
        self.metrics.observe_event("SUBSCRIBE", ms)
        if self.log_times:
            logger.info("[SUBSCRIBE] topic=%s cycle_ms=%.3f", request.topic, ms)

    async def serve(self, ws: web.WebSocketResponse):
        """Run one prepared WebSocket through its lifecycle until it closes."""
        self.open(ws)
        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    try:
                        await self.handle_message(ws, msg.data)
                    except Exception:
                        # one bad frame must not end the session
                        logger.exception("failed to handle client frame")
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("websocket error: %s", ws.exception())
                    break
        finally:
            self.close(ws)
