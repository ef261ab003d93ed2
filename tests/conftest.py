"""
Pytest configuration and shared fixtures
"""
import threading
import time

import pytest

from app.core.config import Settings
from app.services.mqtt_bridge import MqttConnector, RetryPolicy

ENV_VARS = (
    "MQTT_URL", "MQTT_PORT", "MQTT_PROTOCOL", "MQTT_PROTOCOL_VERSION",
    "MQTT_CLIENT_ID", "MQTT_USERNAME", "MQTT_PASSWORD", "MQTT_KEEPALIVE",
    "MQTT_CONNECT_TIMEOUT", "MQTT_PUBLISH_TIMEOUT",
    "MQTT_RECONNECT_DELAY", "MQTT_RECONNECT_MAX_DELAY", "MQTT_RECONNECT_BACKOFF",
    "MQTT_RECONNECT_MAX_ATTEMPTS", "MQTT_REPORT_PUBLISH_ERRORS",
    "APP_HOST", "APP_PORT", "LOG_LEVEL",
)

FAST_RETRY = RetryPolicy(delay_s=0.01, max_delay_s=0.01)


class FakeMessageInfo:
    def __init__(self, mid, rc=0, published=True):
        self.mid = mid
        self.rc = rc
        self._published = published

    def wait_for_publish(self, timeout=None):
        pass

    def is_published(self):
        return self._published


class FakeClient:
    """Stands in for paho.mqtt.client.Client, driven by a FakeBroker."""

    def __init__(self, broker):
        self.broker = broker
        self.on_connect = None
        self.on_disconnect = None
        self.connected = False
        self.loop_running = False
        self.disconnected = False
        self._accepted = False

    def connect(self, host, port, keepalive=60):
        broker = self.broker
        if broker.connect_delay:
            time.sleep(broker.connect_delay)
        with broker.lock:
            broker.connect_calls += 1
            broker.targets.append((host, port, keepalive))
            fail = broker.fail_connects > 0
            if fail:
                broker.fail_connects -= 1
        if fail:
            raise ConnectionRefusedError(111, "Connection refused")
        self._accepted = True

    def loop_start(self):
        self.loop_running = True
        if self._accepted and self.broker.send_connack:
            rc = self.broker.connack_rc
            self.connected = rc == 0
            self.on_connect(self, None, {}, rc, None)

    def loop_stop(self):
        self.loop_running = False

    def disconnect(self):
        self.connected = False
        self.disconnected = True

    def publish(self, topic, payload, qos=0, retain=False):
        if not topic or "#" in topic or "+" in topic:
            raise ValueError("Invalid topic.")
        broker = self.broker
        with broker.lock:
            mid = len(broker.published) + 1
            if broker.publish_rc == 0:
                broker.published.append((topic, payload, qos, retain))
        return FakeMessageInfo(mid, rc=broker.publish_rc, published=broker.publish_completes)

    def drop(self, rc=7):
        """Simulate the broker closing the connection."""
        self.connected = False
        self.on_disconnect(self, None, {}, rc, None)


class FakeBroker:
    """Shared state of a simulated broker across every client handle."""

    def __init__(self):
        self.lock = threading.Lock()
        self.clients = []
        self.targets = []
        self.published = []
        self.connect_calls = 0
        self.fail_connects = 0
        self.connect_delay = 0.0
        self.send_connack = True
        self.connack_rc = 0
        self.publish_rc = 0
        self.publish_completes = True

    def factory(self, settings):
        client = FakeClient(self)
        with self.lock:
            self.clients.append(client)
        return client


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every variable the service reads"""
    for key in ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture
def make_settings(clean_env):
    def _make(**env):
        for key, value in env.items():
            clean_env.setenv(key, str(value))
        return Settings(_env_file=None)
    return _make


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def make_connector(make_settings, broker):
    created = []

    def _make(policy=FAST_RETRY, **env):
        connector = MqttConnector(make_settings(**env), client_factory=broker.factory, retry_policy=policy)
        created.append(connector)
        return connector

    yield _make

    for connector in created:
        connector.close()
