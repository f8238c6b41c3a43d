"""
Device Upgrade Tool - pushes upgrade_app commands to IoT devices over MQTT
"""

__version__ = "1.0.0"
