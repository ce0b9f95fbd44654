import asyncio
import logging
from typing import Optional

from aiohttp import web

from . import config
from .broker_client import BrokerClient
from .http_api import make_app
from .lifecycle import ConnectionLifecycleManager
from .metrics import Metrics
from .registry import SubscriptionRegistry
from .router import Router

logger = logging.getLogger(__name__)


class Relay:
    """Owns the registry and wires the broker, router and lifecycle manager around it."""

    def __init__(
        self,
        broker,
        metrics: Optional[Metrics] = None,
        unsubscribe_idle: bool = True,
        send_timeout: float = 5.0,
        queue_size: int = 1000,
        log_times: bool = False,
    ):
        self.broker = broker
        self.metrics = metrics or Metrics()
        self.registry = SubscriptionRegistry(broker, self.metrics, unsubscribe_idle=unsubscribe_idle)
        self.router = Router(self.registry, self.metrics, send_timeout=send_timeout,
                             queue_size=queue_size, log_times=log_times)
        self.lifecycle = ConnectionLifecycleManager(self.registry, self.metrics, log_times=log_times)

        broker.on_message = self.router.submit
        broker.on_connected = self.resubscribe
        broker.on_error = self._on_broker_error

    def resubscribe(self):
        # a fresh broker session has no subscriptions; restore every topic with an audience
        topics = self.registry.active_topics()
        for topic in topics:
            self.broker.subscribe(topic)
        if topics:
            logger.info("re-subscribed %d topic(s) after broker connect", len(topics))

    def _on_broker_error(self, err):
        logger.warning("broker unavailable: %s", err)

    async def start(self):
        self.router.start()
        self.broker.start()

    async def stop(self):
        await self.broker.stop()
        await self.router.stop()


def build_relay() -> Relay:
    broker = BrokerClient(
        host=config.MQTT_HOST,
        port=config.MQTT_PORT,
        client_id=config.MQTT_CLIENT_ID,
        tls=config.materialize_tls(),
        keepalive=config.MQTT_KEEPALIVE,
        qos=config.MQTT_QOS,
        publish_timeout=config.MQTT_PUBLISH_TIMEOUT_SEC,
    )
    return Relay(
        broker,
        unsubscribe_idle=config.UNSUBSCRIBE_IDLE_TOPICS,
        send_timeout=config.WS_SEND_TIMEOUT_SEC,
        queue_size=config.INBOUND_QUEUE_SIZE,
        log_times=config.LOG_EVENT_TIMES,
    )


async def start_http(relay: Relay) -> web.AppRunner:
    app = make_app(relay)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, config.HTTP_HOST, config.HTTP_PORT)
    await site.start()
    logger.info("Server running on http://%s:%d (WebSocket at / and /ws)", config.HTTP_HOST, config.HTTP_PORT)
    return runner


async def run_all():
    relay = build_relay()
    await relay.start()
    runner = await start_http(relay)
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
        await relay.stop()
