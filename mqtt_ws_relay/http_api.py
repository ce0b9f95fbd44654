import json
import logging
import time

from aiohttp import web

from .errors import PublishError
from .metrics import render_prometheus
from .protocol import INVALID_JSON

logger = logging.getLogger(__name__)

RELAY_KEY = web.AppKey("relay", object)


async def index(request):
    return web.json_response({"message": "Initial Route Running"})


async def publish(request):
    """
    Publish the request body to the broker.

    The whole JSON body, topic included, becomes the MQTT payload.
    """
    relay = request.app[RELAY_KEY]
    try:
        body = await request.json()
    except ValueError:
        return web.json_response({"error": INVALID_JSON}, status=400)

    topic = body.get("topic") if isinstance(body, dict) else None
    if not isinstance(topic, str) or not topic:
        return web.json_response({"error": "Topic is required"}, status=400)

    logger.info("Publishing message: topic=%s msgKey=%s", topic, body.get("msgKey"))
    t0 = time.perf_counter()
    try:
        await relay.broker.publish(topic, json.dumps(body).encode("utf-8"))
    except PublishError as e:
        relay.metrics.publish_failures_total += 1
        logger.error("Publish failed: %s", e)
        return web.json_response({"error": "Publish failed"}, status=500)

    relay.metrics.publishes_total += 1
    relay.metrics.observe_event("PUBLISH", (time.perf_counter() - t0) * 1000)
    return web.json_response({"success": True})


async def websocket(request):
    relay = request.app[RELAY_KEY]
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    await relay.lifecycle.serve(ws)
    return ws


async def stats(request):
    relay = request.app[RELAY_KEY]
    snap = relay.metrics.snapshot()
    snap["registry"] = relay.registry.snapshot()
    snap["broker_connected"] = relay.broker.connected
    return web.json_response(snap)


async def metrics_prom(request):
    relay = request.app[RELAY_KEY]
    return web.Response(text=render_prometheus(relay.metrics.snapshot()), content_type="text/plain")


def make_app(relay):
    app = web.Application()
    app[RELAY_KEY] = relay

    app.router.add_post("/", index)
    app.router.add_post("/mqtt/publish", publish)
    app.router.add_get("/", websocket)
    app.router.add_get("/ws", websocket)
    app.router.add_get("/stats", stats)
    app.router.add_get("/metrics", metrics_prom)

    return app
