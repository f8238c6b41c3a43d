"""
Shared configuration - scripted stand-in for paho's Client plus recorders
for the operator log and status callbacks
"""

import threading

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.reasoncodes import ReasonCode
from typing import List, Optional, Tuple

from device_upgrade.config import BrokerConfig
from device_upgrade.events import UpgradeStatus
from device_upgrade.session import MqttSession

BROKER_CONFIG = BrokerConfig(
    broker="tcp://broker.local:1883",
    client_id="upgrade-tool-test",
    username="operator",
    password="secret",
    response_topic="/hiot/upgrade/response",
)

DEVICE_MAC = "aa:bb:cc:dd:ee:ff"
OTHER_MAC = "11:22:33:44:55:66"


def connack(identifier: int = 0) -> ReasonCode:
    return ReasonCode(PacketTypes.CONNACK, identifier=identifier)


class FakeMessage:
    def __init__(self, topic: str, payload: bytes, qos: int = 1):
        self.topic = topic
        self.payload = payload
        self.qos = qos


class FakeMessageInfo:
    """Mimics MQTTMessageInfo for a publish whose PUBACK has (or has not) arrived"""

    def __init__(self, mid: int, rc: int = mqtt.MQTT_ERR_SUCCESS, published: bool = True,
                 gate: Optional[threading.Event] = None):
        self.mid = mid
        self.rc = rc
        self._published = published
        self._gate = gate

    def wait_for_publish(self, timeout: Optional[float] = None):
        if self._gate is not None:
            self._gate.wait(timeout)
        if self.rc == mqtt.MQTT_ERR_QUEUE_SIZE:
            raise ValueError("Message is not queued due to ERR_QUEUE_SIZE")
        if self.rc != mqtt.MQTT_ERR_SUCCESS:
            raise RuntimeError(mqtt.error_string(self.rc))

    def is_published(self) -> bool:
        return self._published


class FakeMqttClient:
    """
    Replaces paho's Client in unit tests
    Callbacks fire synchronously; drop_connection()/reconnect()/deliver()
    play the part of the network loop
    """

    def __init__(self, client_id: str = "", transport: str = "tcp", **kwargs):
        self.client_id = client_id
        self.transport = transport

        self.on_connect = None
        self.on_connect_fail = None
        self.on_disconnect = None
        self.on_subscribe = None
        self.on_message = None

        self.connect_timeout = None
        self.credentials = None
        self.tls_enabled = False
        self.ws_path = None
        self.reconnect_delay = None
        self.connect_args = None
        self.loop_running = False
        self.disconnect_calls = 0

        # Scripted broker behaviour
        self.connect_error: Optional[Exception] = None
        self.connack_code: Optional[int] = 0
        self.ack_subscribe = True
        self.suback_code = 1
        self.subscribe_rc = mqtt.MQTT_ERR_SUCCESS
        self.ack_publish = True
        self.publish_rc = mqtt.MQTT_ERR_SUCCESS
        # set to hold every PUBACK until the event is set
        self.publish_gate: Optional[threading.Event] = None
        self.publish_started = threading.Event()

        self.subscribe_calls: List[Tuple[str, int]] = []
        self.published: List[Tuple[str, bytes, int, bool]] = []
        self._mid = 0

    def _next_mid(self) -> int:
        self._mid += 1
        return self._mid

    def username_pw_set(self, username, password=None):
        self.credentials = (username, password)

    def tls_set(self, *args, **kwargs):
        self.tls_enabled = True

    def ws_set_options(self, path="/mqtt", headers=None):
        self.ws_path = path

    def reconnect_delay_set(self, min_delay=1, max_delay=120):
        self.reconnect_delay = (min_delay, max_delay)

    def connect(self, host, port=1883, keepalive=60):
        if self.connect_error is not None:
            raise self.connect_error
        self.connect_args = (host, port, keepalive)
        return mqtt.MQTT_ERR_SUCCESS

    def loop_start(self):
        self.loop_running = True
        if self.connack_code is not None:
            self.on_connect(self, None, None, connack(self.connack_code), None)
        return mqtt.MQTT_ERR_SUCCESS

    def loop_stop(self):
        self.loop_running = False
        return mqtt.MQTT_ERR_SUCCESS

    def disconnect(self):
        self.disconnect_calls += 1
        if self.connect_args is not None and self.on_disconnect is not None:
            self.on_disconnect(self, None, None, ReasonCode(PacketTypes.DISCONNECT, identifier=0), None)
        return mqtt.MQTT_ERR_SUCCESS

    def subscribe(self, topic, qos=0):
        mid = self._next_mid()
        self.subscribe_calls.append((topic, qos))
        if self.subscribe_rc != mqtt.MQTT_ERR_SUCCESS:
            return self.subscribe_rc, None
        if self.ack_subscribe:
            self.on_subscribe(self, None, mid, [ReasonCode(PacketTypes.SUBACK, identifier=self.suback_code)], None)
        return mqtt.MQTT_ERR_SUCCESS, mid

    def publish(self, topic, payload=None, qos=0, retain=False):
        mid = self._next_mid()
        self.published.append((topic, payload, qos, retain))
        self.publish_started.set()
        return FakeMessageInfo(mid, rc=self.publish_rc, published=self.ack_publish, gate=self.publish_gate)

    # Network events

    def drop_connection(self):
        self.on_disconnect(self, None, None, ReasonCode(PacketTypes.DISCONNECT, identifier=128), None)

    def fail_reconnect(self):
        self.on_connect_fail(self, None)

    def reconnect(self):
        self.on_connect(self, None, None, connack(0), None)

    def deliver(self, topic: str, payload):
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        self.on_message(self, None, FakeMessage(topic, payload))


class Recorder:
    """Logger and StatusReporter that keeps everything it is told"""

    def __init__(self):
        self.lines: List[str] = []
        self.connection: List[bool] = []
        self.upgrades: List[UpgradeStatus] = []

    def log(self, line: str) -> None:
        self.lines.append(line)

    def connection_status(self, connected: bool) -> None:
        self.connection.append(connected)

    def upgrade_status(self, status: UpgradeStatus) -> None:
        self.upgrades.append(status)

    def index_of(self, text: str) -> int:
        """Position of the first log line containing text, -1 if absent"""
        for i, line in enumerate(self.lines):
            if text in line:
                return i
        return -1


def make_session(config: BrokerConfig = BROKER_CONFIG, on_message=None):
    """Build a session wired to a fresh FakeMqttClient (not yet connected)"""
    client = FakeMqttClient()
    recorder = Recorder()

    def factory(client_id, transport="tcp"):
        client.client_id = client_id
        client.transport = transport
        return client

    session = MqttSession(config, recorder, reporter=recorder, on_message=on_message, client_factory=factory)
    return session, client, recorder
