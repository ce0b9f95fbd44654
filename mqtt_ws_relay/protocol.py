import json
from dataclasses import dataclass
from typing import Optional, Union

from .errors import ProtocolError

SUBSCRIBE = "subscribe"

INVALID_JSON = "Invalid JSON"

_SEPARATORS = (",", ":")


@dataclass(frozen=True)
class ClientRequest:
    action: Optional[str]
    topic: Optional[str]

    @property
    def is_subscribe(self) -> bool:
        return self.action == SUBSCRIBE and isinstance(self.topic, str) and bool(self.topic)


def decode_request(data: Union[str, bytes]) -> ClientRequest:
    """Parse one inbound client frame; raises ProtocolError if it is not a JSON object."""
    if isinstance(data, (bytes, bytearray)):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(INVALID_JSON) from e
    try:
        obj = json.loads(data)
    except (ValueError, RecursionError) as e:
        raise ProtocolError(INVALID_JSON) from e
    if not isinstance(obj, dict):
        raise ProtocolError(INVALID_JSON)

    action = obj.get("action")
    topic = obj.get("topic")
    return ClientRequest(
        action=action if isinstance(action, str) else None,
        topic=topic if isinstance(topic, str) else None,
    )


def encode_message(topic: str, payload: bytes) -> str:
    return json.dumps(
        {"topic": topic, "message": payload.decode("utf-8", errors="replace")},
        separators=_SEPARATORS,
        ensure_ascii=False,
    )


def encode_error(message: str = INVALID_JSON) -> str:
    return json.dumps({"error": message}, separators=_SEPARATORS, ensure_ascii=False)
