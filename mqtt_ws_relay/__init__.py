"""Relay MQTT topics to WebSocket clients."""
