"""
Unit tests for the paho-mqtt broker client wrapper, using a mocked paho client.
"""
import asyncio
import threading
import unittest
from unittest.mock import Mock

import paho.mqtt.client as mqtt

from mqtt_ws_relay.broker_client import BrokerClient
from mqtt_ws_relay.config import TLSFiles
from mqtt_ws_relay.errors import PublishError
from tests.fakes import wait_until


def _message_info(rc=mqtt.MQTT_ERR_SUCCESS, published=True):
    info = Mock()
    info.rc = rc
    info.is_published.return_value = published
    return info


class TestBrokerClient(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.paho = Mock()
        self.paho.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
        self.paho.unsubscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 2)
        self.client = BrokerClient("broker.example", 8883, client=self.paho, publish_timeout=0.5)

    def test_tls_configured(self):
        paho = Mock()
        BrokerClient("h", tls=TLSFiles("ca.pem", "cert.pem", "key.pem"), client=paho)
        paho.tls_set.assert_called_once_with(ca_certs="ca.pem", certfile="cert.pem", keyfile="key.pem")

    async def test_start_connects_in_background(self):
        self.client.start()
        self.paho.connect_async.assert_called_once_with("broker.example", 8883, keepalive=30)
        self.paho.loop_start.assert_called_once()
        await self.client.stop()
        self.paho.loop_stop.assert_called_once()

    async def test_stop_joins_network_thread_off_the_loop(self):
        threads = []
        self.paho.loop_stop.side_effect = lambda: threads.append(threading.get_ident())
        self.client.start()
        await self.client.stop()
        self.paho.disconnect.assert_called_once()
        self.assertEqual(len(threads), 1)
        self.assertNotEqual(threads[0], threading.get_ident())

    def test_subscribe_and_unsubscribe(self):
        self.client.subscribe("t")
        self.client.unsubscribe("t")
        self.paho.subscribe.assert_called_once_with("t", qos=0)
        self.paho.unsubscribe.assert_called_once_with("t")

    def test_subscribe_while_disconnected_does_not_raise(self):
        self.paho.subscribe.return_value = (mqtt.MQTT_ERR_NO_CONN, None)
        with self.assertLogs("mqtt_ws_relay.broker_client", level="WARNING"):
            self.client.subscribe("t")

    async def test_publish_success(self):
        info = _message_info()
        self.paho.publish.return_value = info
        await self.client.publish("cmd", b"{}")
        self.paho.publish.assert_called_once_with("cmd", b"{}", qos=0)
        info.wait_for_publish.assert_called_once_with(0.5)

    async def test_publish_rejected(self):
        self.paho.publish.return_value = _message_info(rc=mqtt.MQTT_ERR_NO_CONN)
        with self.assertRaises(PublishError):
            await self.client.publish("cmd", b"{}")

    async def test_publish_not_acknowledged(self):
        self.paho.publish.return_value = _message_info(published=False)
        with self.assertRaises(PublishError):
            await self.client.publish("cmd", b"{}")

    async def test_publish_wait_raises(self):
        info = _message_info()
        info.wait_for_publish.side_effect = RuntimeError("not connected")
        self.paho.publish.return_value = info
        with self.assertRaises(PublishError):
            await self.client.publish("cmd", b"{}")

    def test_message_forwarded(self):
        received = []
        self.client.on_message = lambda topic, payload: received.append((topic, payload))
        self.client._handle_message(self.paho, None, Mock(topic="t", payload=b"42"))
        self.assertEqual(received, [("t", b"42")])

    async def test_connected_callback_runs_on_loop(self):
        loop_thread = threading.get_ident()
        called = asyncio.Event()
        threads = []

        def on_connected():
            threads.append(threading.get_ident())
            called.set()

        self.client.on_connected = on_connected
        self.client.start()
        reason = Mock(is_failure=False)
        await asyncio.to_thread(self.client._handle_connect, self.paho, None, {}, reason, None)
        await asyncio.wait_for(called.wait(), timeout=1)
        self.assertEqual(threads, [loop_thread])

    async def test_connect_refused_reports_error(self):
        errors = []
        self.client.on_error = errors.append
        self.client.start()
        with self.assertLogs("mqtt_ws_relay.broker_client", level="ERROR"):
            self.client._handle_connect(self.paho, None, {}, Mock(is_failure=True), None)
        await asyncio.sleep(0)
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], ConnectionError)

    async def test_unreachable_broker_reports_error(self):
        self.assertEqual(self.paho.on_connect_fail, self.client._handle_connect_fail)
        self.paho.enable_logger.assert_called_once()

        errors = []
        self.client.on_error = errors.append
        self.client.start()
        with self.assertLogs("mqtt_ws_relay.broker_client", level="ERROR"):
            await asyncio.to_thread(self.paho.on_connect_fail, self.paho, None)
        await wait_until(lambda: len(errors) == 1)
        self.assertIsInstance(errors[0], ConnectionError)
        self.assertIn("broker.example:8883", str(errors[0]))


if __name__ == '__main__':
    unittest.main()
