import time
from dataclasses import dataclass, field
from typing import Dict

@dataclass
class Metrics:
    start_time: float = field(default_factory=time.time)

    connects_total: int = 0
    disconnects_total: int = 0
    subscribes_total: int = 0
    invalid_requests_total: int = 0
    broker_subscribes_total: int = 0
    broker_unsubscribes_total: int = 0
    messages_in_total: int = 0
    messages_dropped_total: int = 0
    deliveries_total: int = 0
    delivery_failures_total: int = 0
    publishes_total: int = 0
    publish_failures_total: int = 0

    # event timing
    event_count: Dict[str, int] = field(default_factory=lambda: {})
    event_time_sum_ms: Dict[str, float] = field(default_factory=lambda: {})
    event_time_max_ms: Dict[str, float] = field(default_factory=lambda: {})

    def observe_event(self, name: str, ms: float):
        self.event_count[name] = self.event_count.get(name, 0) + 1
        self.event_time_sum_ms[name] = self.event_time_sum_ms.get(name, 0.0) + ms
        self.event_time_max_ms[name] = max(self.event_time_max_ms.get(name, 0.0), ms)

    def snapshot(self):
        up = time.time() - self.start_time
        avg_ms = {}
        for k, c in self.event_count.items():
            avg_ms[k] = (self.event_time_sum_ms.get(k, 0.0) / c) if c else 0.0

        return {
            "uptime_sec": round(up, 2),
            "connects_total": self.connects_total,
            "disconnects_total": self.disconnects_total,
            "subscribes_total": self.subscribes_total,
            "invalid_requests_total": self.invalid_requests_total,
            "broker_subscribes_total": self.broker_subscribes_total,
            "broker_unsubscribes_total": self.broker_unsubscribes_total,
            "messages_in_total": self.messages_in_total,
            "messages_dropped_total": self.messages_dropped_total,
            "deliveries_total": self.deliveries_total,
            "delivery_failures_total": self.delivery_failures_total,
            "publishes_total": self.publishes_total,
            "publish_failures_total": self.publish_failures_total,
            "event_count": self.event_count,
            "event_avg_ms": {k: round(v, 3) for k, v in avg_ms.items()},
            "event_max_ms": {k: round(v, 3) for k, v in self.event_time_max_ms.items()},
        }


COUNTERS = (
    "connects_total",
    "disconnects_total",
    "subscribes_total",
    "invalid_requests_total",
    "broker_subscribes_total",
    "broker_unsubscribes_total",
    "messages_in_total",
    "messages_dropped_total",
    "deliveries_total",
    "delivery_failures_total",
    "publishes_total",
    "publish_failures_total",
)


def render_prometheus(snap: dict) -> str:
    lines = [f"relay_uptime_sec {snap['uptime_sec']}"]
    for name in COUNTERS:
        lines.append(f"relay_{name} {snap[name]}")
    for k, v in snap["event_count"].items():
        lines.append(f'relay_event_count{{type="{k}"}} {v}')
    for k, v in snap["event_avg_ms"].items():
        lines.append(f'relay_event_avg_ms{{type="{k}"}} {v}')
    for k, v in snap["event_max_ms"].items():
        lines.append(f'relay_event_max_ms{{type="{k}"}} {v}')
    return "\n".join(lines) + "\n"
