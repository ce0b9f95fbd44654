import asyncio
import logging
from typing import Callable, Optional

import paho.mqtt.client as mqtt

from .config import TLSFiles
from .errors import PublishError

logger = logging.getLogger(__name__)


class BrokerClient:
    """
    Long-lived MQTT connection built on paho-mqtt.

    paho runs its network loop in its own thread; every callback is handed to
    the asyncio loop with call_soon_threadsafe so the relay only ever sees
    broker events on the loop thread. Reconnects are left to paho.
    """

    def __init__(
        self,
        host: str,
        port: int = 8883,
        client_id: str = "",
        tls: Optional[TLSFiles] = None,
        keepalive: int = 30,
        qos: int = 0,
        publish_timeout: float = 10.0,
        client: Optional[mqtt.Client] = None,
    ):
        self.host = host
        self.port = port
        self.keepalive = keepalive
        self.qos = qos
        self.publish_timeout = publish_timeout

        self.on_connected: Optional[Callable[[], None]] = None
        self.on_error: Optional[Callable[[Exception], None]] = None
        self.on_message: Optional[Callable[[str, bytes], None]] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv311,
        )
        if tls is not None:
            self._client.tls_set(ca_certs=tls.ca_path, certfile=tls.cert_path, keyfile=tls.key_path)
        self._client.enable_logger(logger)
        self._client.on_connect = self._handle_connect
        self._client.on_connect_fail = self._handle_connect_fail
        self._client.on_disconnect = self._handle_disconnect
        self._client.on_message = self._handle_message

    @property
    def connected(self) -> bool:
        return self._client.is_connected()

    def start(self):
        self._loop = asyncio.get_running_loop()
        self._client.connect_async(self.host, self.port, keepalive=self.keepalive)
        self._client.loop_start()
        logger.info("connecting to MQTT broker %s:%d", self.host, self.port)

    async def stop(self):
        self._client.disconnect()
        # joins the paho network thread
        await asyncio.to_thread(self._client.loop_stop)

    def subscribe(self, topic: str):
        rc, _mid = self._client.subscribe(topic, qos=self.qos)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            # resent from on_connected once the broker is reachable again
            logger.warning("subscribe %r not sent: %s", topic, mqtt.error_string(rc))

    def unsubscribe(self, topic: str):
        rc, _mid = self._client.unsubscribe(topic)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("unsubscribe %r not sent: %s", topic, mqtt.error_string(rc))

    async def publish(self, topic: str, payload: bytes):
        try:
            info = self._client.publish(topic, payload, qos=self.qos)
        except ValueError as e:
            raise PublishError(str(e)) from e
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(mqtt.error_string(info.rc))

        try:
            await asyncio.to_thread(info.wait_for_publish, self.publish_timeout)
        except (RuntimeError, ValueError) as e:
            raise PublishError(str(e)) from e
        if not info.is_published():
            raise PublishError(f"publish to {topic!r} not acknowledged within {self.publish_timeout}s")

    # paho thread callbacks

    def _handle_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            self._emit_error(ConnectionError(f"MQTT connect refused: {reason_code}"))
            return
        logger.info("connected to MQTT broker %s:%d", self.host, self.port)
        if self.on_connected is not None:
            self._call_in_loop(self.on_connected)

    def _handle_connect_fail(self, client, userdata):
        # TCP or TLS failure on the first connect or a reconnect; paho retries
        self._emit_error(ConnectionError(f"cannot reach MQTT broker {self.host}:{self.port}"))

    def _handle_disconnect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code != 0:
            self._emit_error(ConnectionError(f"MQTT connection lost: {reason_code}"))

    def _handle_message(self, client, userdata, msg):
        # runs on the paho thread; on_message must be thread-safe
        if self.on_message is not None:
            self.on_message(msg.topic, msg.payload)

    def _emit_error(self, err: Exception):
        logger.error("MQTT connection error: %s", err)
        if self.on_error is not None:
            self._call_in_loop(self.on_error, err)

    def _call_in_loop(self, fn, *args):
        if self._loop is None or self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            logger.debug("event loop closed; dropping broker callback")
