# smarthome/mqtt_handler.py
import json, time, logging, threading
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from .errors import BusUnavailable, PublishFailure, PublishTimeout

log = logging.getLogger("mqtt")

def _rc_int(rc) -> int:
    # Handles paho v2.x ReasonCode objects or plain ints
    try:
        return int(getattr(rc, "value", rc))
    except Exception:
        return -1

def _rc_str(rc) -> str:
    name = getattr(rc, "getName", None)
    if callable(name):
        try:
            return f"{_rc_int(rc)}:{name()}"
        except Exception:
            pass
    return str(_rc_int(rc))


class BusClient:
    """The process's single MQTT connection.

    Subscribes to ``subscriptions`` on every (re)connect and reports ready
    once the broker acknowledged all of them. Inbound messages are decoded
    as JSON and handed to ``sink(topic, body)``; the sink must return
    quickly since it runs on paho's network thread.
    """

    def __init__(
        self,
        host: str,
        port: int,
        subscriptions: list[str],
        sink: Callable[[str, Any], Any],
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_id: str = "smarthome-api",
        client_factory: Callable[..., mqtt.Client] = mqtt.Client,
    ):
        self.host = host
        self.port = port
        self.subscriptions = list(subscriptions)
        self.sink = sink
        self.ready = threading.Event()
        self.stats = {"rx_total": 0, "rx_malformed": 0, "tx_total": 0, "tx_failed": 0, "reconnects": 0}

        self._pending_sub_mid: Optional[int] = None
        self._connected_once = False
        self.client = client_factory(
            client_id=f"{client_id}-{int(time.time())}",
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,  # paho 2.x
        )
        self.client.enable_logger(log)
        if username and password:
            self.client.username_pw_set(username, password)
        self.client.reconnect_delay_set(min_delay=1, max_delay=30)

        self.client.on_connect = self._on_connect
        self.client.on_subscribe = self._on_subscribe
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

    # ---------------- lifecycle ----------------
    def start(self) -> None:
        log.info("[MQTT] Bootstrapping host=%s port=%s topics=%s", self.host, self.port, self.subscriptions)
        # connect_async lets the loop thread keep retrying if the broker is down at boot
        self.client.connect_async(self.host, self.port, keepalive=30)
        self.client.loop_start()

    def stop(self) -> None:
        self.ready.clear()
        try:
            self.client.disconnect()
        finally:
            self.client.loop_stop()
        log.info("[MQTT] Closed")

    @property
    def connected(self) -> bool:
        return self.client.is_connected()

    # ---------------- callbacks ----------------
    def _on_connect(self, client, userdata, flags, reason_code, properties):
        rc = _rc_int(reason_code)
        if rc != mqtt.CONNACK_ACCEPTED:
            log.error("[MQTT] Connect failed rc=%s. Retrying…", _rc_str(reason_code))
            return
        if self._connected_once:
            self.stats["reconnects"] += 1
        self._connected_once = True
        res, mid = client.subscribe([(topic, 0) for topic in self.subscriptions])
        self._pending_sub_mid = mid
        log.info("[MQTT] Connected. SUB %s res=%s mid=%s", self.subscriptions, res, mid)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties):
        if mid != self._pending_sub_mid:
            return
        rejected = [t for t, rc in zip(self.subscriptions, reason_code_list) if _rc_int(rc) >= 0x80]
        if rejected:
            log.error("[MQTT] subscription rejected by broker for %s", rejected)
            return
        self.ready.set()
        log.info("[MQTT] Ready, SUBACK mid=%s", mid)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        self.ready.clear()
        log.warning("[MQTT] Disconnected rc=%s. Reconnecting…", _rc_str(reason_code))

    def _on_message(self, client, userdata, msg):
        self.stats["rx_total"] += 1
        try:
            body = json.loads(msg.payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            self.stats["rx_malformed"] += 1
            log.warning("[MQTT] dropped malformed payload on %s: %s", msg.topic, e)
            return
        try:
            self.sink(msg.topic, body)
        except Exception:
            log.exception("[MQTT] sink failed for %s", msg.topic)

    # ---------------- outbound ----------------
    def publish(self, topic: str, payload: dict) -> mqtt.MQTTMessageInfo:
        """Fire-and-forget send. Raises if paho refused to queue the message."""
        info = self.client.publish(topic, json.dumps(payload), qos=0, retain=False)
        if info.rc == mqtt.MQTT_ERR_NO_CONN:
            self.stats["tx_failed"] += 1
            log.error("[MQTT] publish to %s failed: not connected", topic)
            raise BusUnavailable(f"not connected to {self.host}:{self.port}")
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self.stats["tx_failed"] += 1
            log.error("[MQTT] publish to %s failed rc=%s", topic, info.rc)
            raise PublishFailure(f"publish rc={info.rc}")
        self.stats["tx_total"] += 1
        return info

    def publish_and_wait(self, topic: str, payload: dict, timeout: float) -> None:
        info = self.publish(topic, payload)
        try:
            info.wait_for_publish(timeout=timeout)
        except (RuntimeError, ValueError) as e:
            self.stats["tx_failed"] += 1
            log.error("[MQTT] publish to %s failed: %s", topic, e)
            raise PublishFailure(str(e)) from e
        if not info.is_published():
            self.stats["tx_failed"] += 1
            log.error("[MQTT] publish to %s not confirmed within %.1fs", topic, timeout)
            raise PublishTimeout(f"publish to {topic} timed out after {timeout}s")

    def health(self) -> dict:
        return {"connected": self.connected, "ready": self.ready.is_set(), **self.stats}
