import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

MQTT_HOST = os.getenv("MQTT_HOST") or os.getenv("AWS_IOT_HOST", "localhost")
MQTT_PORT = int(os.getenv("MQTT_PORT", "8883"))
MQTT_CLIENT_ID = os.getenv("MQTT_CLIENT_ID", "mqtt-ws-relay")
MQTT_KEEPALIVE = int(os.getenv("MQTT_KEEPALIVE", "30"))
MQTT_QOS = int(os.getenv("MQTT_QOS", "0"))
MQTT_PUBLISH_TIMEOUT_SEC = float(os.getenv("MQTT_PUBLISH_TIMEOUT_SEC", "10"))

HTTP_HOST = os.getenv("HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(os.getenv("PORT", "3000"))

WS_SEND_TIMEOUT_SEC = float(os.getenv("WS_SEND_TIMEOUT_SEC", "5"))
INBOUND_QUEUE_SIZE = int(os.getenv("INBOUND_QUEUE_SIZE", "1000"))
UNSUBSCRIBE_IDLE_TOPICS = os.getenv("UNSUBSCRIBE_IDLE_TOPICS", "1") == "1"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_EVENT_TIMES = os.getenv("LOG_EVENT_TIMES", "0") == "1"

TLS_DIR = Path(os.getenv("TLS_DIR", "tmp"))


@dataclass(frozen=True)
class TLSFiles:
    ca_path: str
    cert_path: str
    key_path: str


def _pem_from_env(name: str) -> Optional[str]:
    # PEM blocks stored in a single env line carry literal "\n" sequences
    value = os.getenv(name)
    if not value:
        return None
    return value.replace("\\n", "\n")


def materialize_tls(tls_dir: Path = TLS_DIR) -> Optional[TLSFiles]:
    """
    Resolve the CA, client certificate and private key for the broker.

    Explicit paths (MQTT_CA_PATH, MQTT_CERT_PATH, MQTT_KEY_PATH) win. Otherwise
    PEM contents from rootCAEnv, certificateEnv and privateKeyEnv are written
    into tls_dir. Returns None when no TLS material is configured.
    """
    ca = os.getenv("MQTT_CA_PATH")
    cert = os.getenv("MQTT_CERT_PATH")
    key = os.getenv("MQTT_KEY_PATH")
    if ca and cert and key:
        return TLSFiles(ca_path=ca, cert_path=cert, key_path=key)

    pems = {
        "AmazonRootCA1.pem": _pem_from_env("rootCAEnv"),
        "certificate.pem.crt": _pem_from_env("certificateEnv"),
        "private.pem.key": _pem_from_env("privateKeyEnv"),
    }
    if not all(pems.values()):
        return None

    tls_dir.mkdir(parents=True, exist_ok=True)
    for filename, content in pems.items():
        (tls_dir / filename).write_text(content, encoding="utf-8")
    (tls_dir / "private.pem.key").chmod(0o600)

    return TLSFiles(
        ca_path=str(tls_dir / "AmazonRootCA1.pem"),
        cert_path=str(tls_dir / "certificate.pem.crt"),
        key_path=str(tls_dir / "private.pem.key"),
    )
