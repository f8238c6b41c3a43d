"""
Error types raised by the device upgrade tool
"""


class UpgradeToolError(Exception):
    """Base class for all errors raised by this package"""


class ConfigError(UpgradeToolError):
    """Configuration file missing, unreadable or incomplete"""


class ConnectError(UpgradeToolError):
    """Initial broker handshake failed or timed out"""


class NotConnectedError(UpgradeToolError):
    """Operation attempted while the session is disconnected"""


class SubscribeError(UpgradeToolError):
    """Broker refused or did not acknowledge a SUBSCRIBE"""


class PublishError(UpgradeToolError):
    """Broker did not acknowledge a PUBLISH"""


class ValidationError(UpgradeToolError):
    """A required operator input was empty"""
