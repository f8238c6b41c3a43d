"""
Upgrade command orchestration - sends upgrade_app commands and matches
device confirmations against the device currently being upgraded
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from device_upgrade.errors import UpgradeToolError, ValidationError
from device_upgrade.events import Logger, StatusReporter, UpgradeStatus
from device_upgrade.messages import UpgradeRequest, UpgradeResponse
from device_upgrade.session import MqttSession

logger = logging.getLogger(__name__)


class UpgradeOrchestrator:
    """
    Tracks one in-flight target device at a time

    A second send before the first device answers moves tracking to the
    new device; confirmations from the old one are then logged and ignored.
    Correlation is by MAC address only, message_uuid is not checked.
    """

    def __init__(self, session: MqttSession, response_topic: str, log: Logger,
                 reporter: StatusReporter, clock: Callable[[], datetime] = datetime.now):
        self.session = session
        self.response_topic = response_topic
        self._log = log
        self._reporter = reporter
        self._clock = clock
        self._lock = threading.Lock()
        self._current_device: Optional[str] = None

    @property
    def current_device(self) -> Optional[str]:
        with self._lock:
            return self._current_device

    def start(self) -> None:
        """Subscribe to the confirmation topic"""
        if not self.response_topic:
            raise ValidationError("response topic is not configured")
        self.session.subscribe(self.response_topic, self.handle_message)
        self._reporter.upgrade_status(UpgradeStatus.ready())

    def send_upgrade(self, device_id: str, version: str, url: str, package_name: str) -> None:
        """Publish an upgrade_app command to one device"""
        if not (device_id and version and url and package_name):
            self._log.log("Error: MAC address, URL, version and package name cannot be empty")
            raise ValidationError("MAC address, URL, version and package name cannot be empty")

        with self._lock:
            self._current_device = device_id
        self._reporter.upgrade_status(UpgradeStatus.sending())

        self._log.log(f"Preparing upgrade command for device: {device_id}")
        request = UpgradeRequest.build(device_id, version, url, package_name,
                                       confirmation_topic=self.response_topic, now=self._clock())
        self._log.log(f"Using confirmation topic: {request.confirmation_topic}")

        payload = request.to_payload()
        self._log.log(f"Publishing upgrade command to topic: {request.topic}")
        self._log.log(f"Command payload: {payload.decode('utf-8')}")

        try:
            self.session.publish(request.topic, payload)
        except UpgradeToolError as e:
            self._log.log(f"Failed to publish command: {e}")
            self._reporter.upgrade_status(UpgradeStatus.failed(str(e)))
            raise

        self._log.log("Command published successfully")
        self._log.log("Waiting for device response...")
        self._log.log(f"Sent upgrade command to device: {device_id}")

    def handle_message(self, topic: str, payload: bytes) -> None:
        """Classify one message from the confirmation topic"""
        try:
            response = UpgradeResponse.from_payload(payload)
        except ValueError as e:
            logger.debug("Ignoring non-confirmation payload on %s: %s", topic, e)
            return

        if not response.is_confirmation:
            return
        self._log.log(f"Received upgrade response: code={response.code}, status={response.status}")

        target = self.current_device
        if response.mac_address != target:
            self._log.log(
                f"Ignoring confirmation from device {response.mac_address} "
                f"(code={response.code}, status={response.status}): current target is {target or 'none'}")
            return

        if response.succeeded:
            self._reporter.upgrade_status(UpgradeStatus.success())
            self._log.log(f"Device {target} confirmed upgrade command")
        else:
            self._reporter.upgrade_status(UpgradeStatus.failed(response.message_info))
            self._log.log(
                f"Device {target} reported error: {response.message_info} "
                f"(code={response.code}, status={response.status})")
