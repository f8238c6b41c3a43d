"""
MQTT session - broker connection, subscriptions, publish and reconnect handling

paho-mqtt runs its network loop in a background thread (loop_start). Every
callback below executes on that thread, never on the caller's.
"""

import logging
import threading
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple

import paho.mqtt.client as mqtt

from device_upgrade.config import BrokerConfig
from device_upgrade.errors import ConnectError, NotConnectedError, PublishError, SubscribeError
from device_upgrade.events import Logger, StatusReporter

logger = logging.getLogger(__name__)

KEEPALIVE = 60
CONNECT_TIMEOUT = 10.0
MIN_RECONNECT_DELAY = 1
MAX_RECONNECT_DELAY = 10
SUBSCRIBE_TIMEOUT = 10.0
PUBLISH_TIMEOUT = 10.0
DISCONNECT_QUIESCE = 0.25
QOS_AT_LEAST_ONCE = 1

MessageHandler = Callable[[str, bytes], None]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def default_client_factory(client_id: str, transport: str = "tcp") -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        clean_session=True,
        transport=transport,
    )


class MqttSession:
    """
    Long-lived connection to one broker

    Subscriptions made through subscribe() are remembered and re-issued
    after every automatic reconnect, so callers subscribe once.
    """

    def __init__(self, config: BrokerConfig, log: Logger,
                 reporter: Optional[StatusReporter] = None,
                 on_message: Optional[MessageHandler] = None,
                 client_factory: Callable[..., mqtt.Client] = default_client_factory):
        self.config = config
        self._log = log
        self._reporter = reporter
        self._on_message_cb = on_message
        self._client_factory = client_factory

        self._lock = threading.Lock()
        self._client: Optional[mqtt.Client] = None
        self._state = ConnectionState.DISCONNECTED
        self._subscriptions: Dict[str, Optional[MessageHandler]] = {}
        self._connected_once = False
        self._closing = False

        self._connack = threading.Event()
        self._connack_error: Optional[str] = None

        # SUBACK bookkeeping and in-flight publish count share one condition
        self._acks = threading.Condition()
        self._subacks: Dict[int, List] = {}
        self._restoring: Dict[int, str] = {}
        self._abandoned: Set[int] = set()
        self._inflight = 0

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def subscriptions(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._subscriptions)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> "MqttSession":
        """
        Open the connection and block until the broker answers the CONNECT
        Raises ConnectError if the broker is unreachable, rejects the
        credentials, or does not answer within CONNECT_TIMEOUT
        """
        endpoint = self.config.endpoint()

        with self._lock:
            if self._client is not None:
                raise ConnectError("session is already connected or connecting")
            client = self._client_factory(client_id=self.config.client_id, transport=endpoint.transport)
            self._client = client
            self._state = ConnectionState.CONNECTING
            self._closing = False

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password or None)
        if endpoint.use_tls:
            client.tls_set()
        if endpoint.transport == "websockets":
            client.ws_set_options(path=endpoint.path)
        client.connect_timeout = CONNECT_TIMEOUT
        client.reconnect_delay_set(min_delay=MIN_RECONNECT_DELAY, max_delay=MAX_RECONNECT_DELAY)

        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message

        self._connack.clear()
        self._connack_error = None
        self._log.log(f"Connecting to MQTT broker: {self.config.broker} with client ID: {self.config.client_id}")

        try:
            client.connect(endpoint.host, endpoint.port, keepalive=KEEPALIVE)
        except (OSError, ValueError) as e:
            self._abort()
            raise ConnectError(f"failed to connect to MQTT broker: {e}") from e

        client.loop_start()

        if not self._connack.wait(CONNECT_TIMEOUT):
            self._abort()
            raise ConnectError(f"failed to connect to MQTT broker: no CONNACK within {CONNECT_TIMEOUT:.0f}s")
        if self._connack_error is not None:
            self._abort()
            raise ConnectError(f"failed to connect to MQTT broker: {self._connack_error}")

        return self

    def disconnect(self) -> None:
        """Close the connection, giving in-flight publishes a moment to finish"""
        with self._lock:
            client = self._client
            if client is None or self._closing:
                return
            self._closing = True

        self._log.log("Disconnecting from MQTT broker")

        with self._acks:
            self._acks.wait_for(lambda: self._inflight == 0, timeout=DISCONNECT_QUIESCE)

        client.disconnect()
        client.loop_stop()

        with self._lock:
            self._client = None
            self._state = ConnectionState.DISCONNECTED

    def _abort(self) -> None:
        with self._lock:
            client = self._client
            self._client = None
            self._closing = True
            self._state = ConnectionState.DISCONNECTED
        if client is not None:
            client.disconnect()
            client.loop_stop()

    def _require_connected(self) -> mqtt.Client:
        with self._lock:
            if self._client is None or self._state is not ConnectionState.CONNECTED:
                raise NotConnectedError("not connected to MQTT broker")
            return self._client

    # ------------------------------------------------------------------
    # Subscribe / publish
    # ------------------------------------------------------------------

    def subscribe(self, topic: str, handler: Optional[MessageHandler] = None) -> None:
        """Subscribe to an exact topic at QoS 1 and wait for the SUBACK"""
        if not topic:
            raise SubscribeError("cannot subscribe to an empty topic")

        client = self._require_connected()
        self._log.log(f"Subscribing to topic: {topic}")

        with self._lock:
            had_previous = topic in self._subscriptions
            previous = self._subscriptions.get(topic)
            self._subscriptions[topic] = handler

        try:
            result, mid = client.subscribe(topic, qos=QOS_AT_LEAST_ONCE)
            if result == mqtt.MQTT_ERR_NO_CONN:
                raise NotConnectedError("not connected to MQTT broker")
            if result != mqtt.MQTT_ERR_SUCCESS:
                raise SubscribeError(f"failed to subscribe to topic {topic}: {mqtt.error_string(result)}")

            granted = self._wait_for_suback(mid)
            if granted is None:
                raise SubscribeError(
                    f"failed to subscribe to topic {topic}: no SUBACK within {SUBSCRIBE_TIMEOUT:.0f}s")
            refused = [rc for rc in granted if rc.is_failure]
            if refused:
                raise SubscribeError(f"failed to subscribe to topic {topic}: {refused[0]}")
        except (NotConnectedError, SubscribeError):
            with self._lock:
                if had_previous:
                    self._subscriptions[topic] = previous
                else:
                    self._subscriptions.pop(topic, None)
            raise

        self._log.log(f"Successfully subscribed to topic: {topic}")

    def _wait_for_suback(self, mid: int) -> Optional[List]:
        with self._acks:
            if not self._acks.wait_for(lambda: mid in self._subacks, timeout=SUBSCRIBE_TIMEOUT):
                # a SUBACK arriving after this is dropped
                self._abandoned.add(mid)
                return None
            return self._subacks.pop(mid)

    def publish(self, topic: str, payload: bytes) -> None:
        """Publish at QoS 1, not retained, and wait for the PUBACK"""
        client = self._require_connected()

        with self._acks:
            self._inflight += 1
        try:
            info = client.publish(topic, payload, qos=QOS_AT_LEAST_ONCE, retain=False)
            if info.rc == mqtt.MQTT_ERR_NO_CONN:
                raise NotConnectedError("not connected to MQTT broker")
            try:
                info.wait_for_publish(timeout=PUBLISH_TIMEOUT)
            except (ValueError, RuntimeError) as e:
                raise PublishError(f"failed to publish to topic {topic}: {e}") from e
            if not info.is_published():
                raise PublishError(
                    f"failed to publish to topic {topic}: no PUBACK within {PUBLISH_TIMEOUT:.0f}s")
        finally:
            with self._acks:
                self._inflight -= 1
                self._acks.notify_all()

    # ------------------------------------------------------------------
    # paho callbacks (network loop thread)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            self._log.log(f"Connection refused by MQTT broker: {reason_code}")
            if not self._connack.is_set():
                self._connack_error = str(reason_code)
                self._connack.set()
            return

        with self._lock:
            self._state = ConnectionState.CONNECTED
            reconnect = self._connected_once
            self._connected_once = True
            topics = list(self._subscriptions) if reconnect else []

        self._log.log("Connected to MQTT broker")

        # SUBACKs for the previous connection will never arrive
        with self._acks:
            self._abandoned.clear()

        # clean_session=True means the broker forgot our subscriptions
        for topic in topics:
            self._log.log(f"Restoring subscription to topic: {topic}")
            result, mid = client.subscribe(topic, qos=QOS_AT_LEAST_ONCE)
            if result != mqtt.MQTT_ERR_SUCCESS:
                self._log.log(f"Failed to restore subscription to topic {topic}: {mqtt.error_string(result)}")
                continue
            # The SUBACK may already have been handled as an ordinary one
            with self._acks:
                early = self._subacks.pop(mid, None)
                if early is None:
                    self._restoring[mid] = topic
            if early is not None:
                self._report_restored(topic, early)

        if self._reporter is not None:
            self._reporter.connection_status(True)
        self._connack.set()

    def _on_connect_fail(self, client, userdata):
        self._log.log("Reconnect attempt failed")
        self._log.log("Attempting to reconnect to MQTT broker...")

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        with self._lock:
            self._state = ConnectionState.DISCONNECTED
            lost = self._connected_once and not self._closing

        if not lost:
            return

        self._log.log(f"Connection lost: {reason_code}")
        if self._reporter is not None:
            self._reporter.connection_status(False)
        self._log.log("Attempting to reconnect to MQTT broker...")

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties):
        with self._acks:
            if mid in self._abandoned:
                self._abandoned.discard(mid)
                return
            topic = self._restoring.pop(mid, None)
            if topic is None:
                self._subacks[mid] = list(reason_code_list)
                self._acks.notify_all()
                return

        self._report_restored(topic, reason_code_list)

    def _report_restored(self, topic, reason_code_list):
        if any(rc.is_failure for rc in reason_code_list):
            self._log.log(f"Broker refused restored subscription to topic: {topic}")
        else:
            self._log.log(f"Successfully subscribed to topic: {topic}")

    def _on_message(self, client, userdata, message):
        topic = message.topic
        payload = message.payload
        self._log.log(f"Received message on topic {topic}: {payload.decode('utf-8', errors='replace')}")

        with self._lock:
            handler = self._subscriptions.get(topic)

        for callback in (handler, self._on_message_cb):
            if callback is None:
                continue
            try:
                callback(topic, payload)
            except Exception as e:
                # keep the network loop alive
                logger.exception("Message handler failed for topic %s", topic)
                self._log.log(f"Error handling message on topic {topic}: {e}")
