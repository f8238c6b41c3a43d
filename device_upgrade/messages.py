"""
Upgrade command and device acknowledgement payloads

Outbound commands go to /hiot/<mac>/request_setting, the device answers on
the configured confirmation topic.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

REQUEST_TOPIC_TEMPLATE = "/hiot/{device_id}/request_setting"

REQUEST_TYPE_DEVICE_CMD = "device_cmd"
CMD_TYPE_UPGRADE_APP = "upgrade_app"
DEVICE_TYPE = 2
CREATED_AT_FORMAT = "%Y-%m-%d %H:%M:%S"

RESPONSE_TYPE_CONFIRMATION = "message_confirmation"
SUCCESS_CODE = 200
SUCCESS_STATUS = "ok"


def request_topic(device_id: str) -> str:
    return REQUEST_TOPIC_TEMPLATE.format(device_id=device_id)


@dataclass
class UpgradeRequest:
    """upgrade_app command for one device"""

    device_id: str
    app_version: str
    download_url: str
    package_name: str
    confirmation_topic: str
    message_uuid: str
    created_at: str
    # Device firmware has only ever been sent 0 here
    message_id: int = 0
    request_type: str = REQUEST_TYPE_DEVICE_CMD
    cmd_type: str = CMD_TYPE_UPGRADE_APP
    device_type: int = DEVICE_TYPE
    enabled: bool = True

    @classmethod
    def build(cls, device_id: str, version: str, url: str, package_name: str,
              confirmation_topic: str, now: Optional[datetime] = None) -> "UpgradeRequest":
        now = now or datetime.now()
        return cls(
            device_id=device_id,
            app_version=version,
            download_url=url,
            package_name=package_name,
            confirmation_topic=confirmation_topic,
            message_uuid=str(int(now.timestamp())),
            created_at=now.strftime(CREATED_AT_FORMAT),
        )

    @property
    def topic(self) -> str:
        return request_topic(self.device_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confirmation_topic": self.confirmation_topic,
            "message_id": self.message_id,
            "message_uuid": self.message_uuid,
            "request_type": self.request_type,
            "data": {
                "cmd_type": self.cmd_type,
                "data": {
                    "app_version": self.app_version,
                    "download_url": self.download_url,
                    "created_at": self.created_at,
                    "device_type": self.device_type,
                    "enabled": self.enabled,
                    "package_name": self.package_name,
                },
            },
        }

    def to_payload(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


# JSON key -> (attribute, expected type)
_RESPONSE_FIELDS = {
    "code": ("code", int),
    "data": ("data", str),
    "mac_address": ("mac_address", str),
    "message_id": ("message_id", int),
    "message_info": ("message_info", str),
    "message_uuid": ("message_uuid", str),
    "product_key": ("product_key", str),
    "response_type": ("response_type", str),
    "status": ("status", str),
    "time": ("time", int),
}


@dataclass
class UpgradeResponse:
    """Acknowledgement published by a device on the confirmation topic"""

    response_type: str = ""
    code: int = 0
    status: str = ""
    message_info: str = ""
    mac_address: str = ""
    data: str = ""
    message_id: int = 0
    message_uuid: str = ""
    product_key: str = ""
    time: int = 0
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, payload: bytes) -> "UpgradeResponse":
        """
        Parse a raw MQTT payload
        Raises ValueError when the payload is not a JSON object of the expected shape
        """
        try:
            document = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"payload is not JSON: {e}") from e

        if not isinstance(document, dict):
            raise ValueError("payload is not a JSON object")

        values: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in document.items():
            if key not in _RESPONSE_FIELDS:
                extra[key] = value
                continue
            attr, expected = _RESPONSE_FIELDS[key]
            if value is None:
                continue
            # bool is an int subclass but never a valid code
            if isinstance(value, bool) or not isinstance(value, expected):
                raise ValueError(f"field {key} has type {type(value).__name__}")
            values[attr] = value

        return cls(extra=extra, **values)

    @property
    def is_confirmation(self) -> bool:
        return self.response_type == RESPONSE_TYPE_CONFIRMATION

    @property
    def succeeded(self) -> bool:
        return self.is_confirmation and self.code == SUCCESS_CODE and self.status == SUCCESS_STATUS
