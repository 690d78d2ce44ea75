"""Tests for the MQTT bus client, with paho's Client replaced by a mock."""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest

from smarthome.errors import BusUnavailable, PublishFailure, PublishTimeout
from smarthome.mqtt_handler import BusClient


@pytest.fixture
def paho_client():
    client = MagicMock()
    client.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 7)
    return client


@pytest.fixture
def sink():
    return MagicMock()


@pytest.fixture
def bus(paho_client, sink):
    return BusClient(
        "broker.local", 1883,
        subscriptions=["home/sensors", "home/alert"],
        sink=sink,
        username="hub", password="secret",
        client_factory=lambda **kwargs: paho_client,
    )


def _msg(topic, payload: bytes):
    return SimpleNamespace(topic=topic, payload=payload)


class TestConnection:

    def test_credentials_and_reconnect_policy(self, bus, paho_client):
        paho_client.username_pw_set.assert_called_once_with("hub", "secret")
        paho_client.reconnect_delay_set.assert_called_once_with(min_delay=1, max_delay=30)

    def test_start_connects_in_background(self, bus, paho_client):
        bus.start()
        paho_client.connect_async.assert_called_once_with("broker.local", 1883, keepalive=30)
        paho_client.loop_start.assert_called_once()

    def test_subscribes_both_topics_on_connect(self, bus, paho_client):
        bus._on_connect(paho_client, None, {}, 0, None)
        paho_client.subscribe.assert_called_once_with([("home/sensors", 0), ("home/alert", 0)])
        assert not bus.ready.is_set()

    def test_ready_after_suback(self, bus, paho_client):
        bus._on_connect(paho_client, None, {}, 0, None)
        bus._on_subscribe(paho_client, None, 7, [0, 0], None)
        assert bus.ready.is_set()

    def test_not_ready_when_broker_rejects_a_topic(self, bus, paho_client):
        bus._on_connect(paho_client, None, {}, 0, None)
        bus._on_subscribe(paho_client, None, 7, [0, 0x80], None)
        assert not bus.ready.is_set()

    def test_refused_connack_does_not_subscribe(self, bus, paho_client):
        bus._on_connect(paho_client, None, {}, 5, None)
        paho_client.subscribe.assert_not_called()

    def test_resubscribes_after_reconnect(self, bus, paho_client):
        bus._on_connect(paho_client, None, {}, 0, None)
        bus._on_subscribe(paho_client, None, 7, [0, 0], None)
        bus._on_disconnect(paho_client, None, {}, 7, None)
        assert not bus.ready.is_set()

        bus._on_connect(paho_client, None, {}, 0, None)
        assert paho_client.subscribe.call_count == 2
        assert bus.stats["reconnects"] == 1


class TestInbound:

    def test_json_handed_to_sink(self, bus, sink):
        body = {"device_id": "esp-1", "temperature": 21}
        bus._on_message(None, None, _msg("home/sensors", json.dumps(body).encode()))
        sink.assert_called_once_with("home/sensors", body)

    def test_malformed_payload_dropped(self, bus, sink):
        bus._on_message(None, None, _msg("home/sensors", b"{not json"))
        bus._on_message(None, None, _msg("home/sensors", b"\xff\xfe"))
        sink.assert_not_called()
        assert bus.stats["rx_malformed"] == 2

    def test_sink_error_contained(self, bus, sink):
        sink.side_effect = RuntimeError("boom")
        bus._on_message(None, None, _msg("home/alert", b"{}"))
        assert bus.stats["rx_total"] == 1


class TestOutbound:

    def _info(self, rc=mqtt.MQTT_ERR_SUCCESS, published=True):
        info = MagicMock()
        info.rc = rc
        info.is_published.return_value = published
        return info

    def test_publish_serializes_json(self, bus, paho_client):
        paho_client.publish.return_value = self._info()
        bus.publish("home/control", {"device_id": "esp-1", "relay1": True})
        topic, payload = paho_client.publish.call_args.args
        assert topic == "home/control"
        assert json.loads(payload) == {"device_id": "esp-1", "relay1": True}

    def test_publish_without_connection(self, bus, paho_client):
        paho_client.publish.return_value = self._info(rc=mqtt.MQTT_ERR_NO_CONN)
        with pytest.raises(BusUnavailable):
            bus.publish("home/control", {})

    def test_publish_rejected(self, bus, paho_client):
        paho_client.publish.return_value = self._info(rc=mqtt.MQTT_ERR_QUEUE_SIZE)
        with pytest.raises(PublishFailure):
            bus.publish("home/control", {})
        assert bus.stats["tx_failed"] == 1

    def test_publish_and_wait_times_out(self, bus, paho_client):
        info = self._info(published=False)
        paho_client.publish.return_value = info
        with pytest.raises(PublishTimeout):
            bus.publish_and_wait("home/control", {}, timeout=0.5)
        info.wait_for_publish.assert_called_once_with(timeout=0.5)

    def test_publish_and_wait_confirmed(self, bus, paho_client):
        paho_client.publish.return_value = self._info()
        bus.publish_and_wait("home/control", {"device_id": "esp-1"}, timeout=1)
        assert bus.stats["tx_total"] == 1
