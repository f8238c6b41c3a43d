"""
UT6: Entry point
Requirement: Bad config stops startup, an unreachable broker does not
"""

import paho.mqtt.client as mqtt

from device_upgrade import cli
from device_upgrade.dashboard import Dashboard
from device_upgrade.session import MqttSession

from test_config import FakeMqttClient

CONFIG_YAML = """
mqtt:
  broker: tcp://broker.local:1883
  clientId: device-upgrade-tool
  topics:
    upgrade: /hiot/upgrade/response
"""


def test_missing_config_exits_with_error(tmp_path, capsys):
    assert cli.main(["--config", str(tmp_path / "missing.yaml")]) == 1
    assert "Failed to load config" in capsys.readouterr().out


def test_unreachable_broker_keeps_dashboard_running(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(CONFIG_YAML, encoding="utf-8")

    client = FakeMqttClient()
    client.connect_error = OSError("Network is unreachable")
    monkeypatch.setattr(cli, "MqttSession",
                        lambda config, log, reporter=None: MqttSession(
                            config, log, reporter=reporter, client_factory=lambda **kwargs: client))

    started = []
    monkeypatch.setattr(Dashboard, "run", lambda self, host, port: started.append((self, host, port)))

    assert cli.main(["--config", str(config_path), "--port", "5050"]) == 0

    dashboard, host, port = started[0]
    assert (host, port) == ("0.0.0.0", 5050)
    dashboard.flush()
    assert any("Failed to create MQTT client" in line for line in dashboard.history)
    assert not dashboard.mqtt_connected


def test_connection_drop_before_subscribe_keeps_dashboard_running(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(CONFIG_YAML, encoding="utf-8")

    client = FakeMqttClient()
    client.subscribe_rc = mqtt.MQTT_ERR_NO_CONN
    monkeypatch.setattr(cli, "MqttSession",
                        lambda config, log, reporter=None: MqttSession(
                            config, log, reporter=reporter, client_factory=lambda **kwargs: client))

    started = []
    monkeypatch.setattr(Dashboard, "run", lambda self, host, port: started.append(self))

    assert cli.main(["--config", str(config_path)]) == 0

    dashboard = started[0]
    dashboard.flush()
    assert any("Failed to subscribe to response topic: not connected" in line for line in dashboard.history)
