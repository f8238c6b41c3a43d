"""
Upgrade Dashboard - WebSocket front end for the upgrade tool
Serves the operator form and streams log lines / status changes to the browser
"""

import logging
import threading
from collections import deque
from typing import Deque, Dict, List

from flask import Flask, render_template
from flask_socketio import SocketIO, emit

from device_upgrade.errors import UpgradeToolError
from device_upgrade.events import ConnectionEvent, Event, EventChannel, LogEvent, UpgradeEvent, UpgradeStatus
from device_upgrade.orchestrator import UpgradeOrchestrator

logger = logging.getLogger(__name__)

LOG_HISTORY = 500
PUMP_POLL_INTERVAL = 0.5


def status_payload(status: UpgradeStatus) -> Dict[str, str]:
    return {'state': status.state.value, 'label': status.label, 'reason': status.reason}


class Dashboard:
    """
    Flask-SocketIO app bound to one orchestrator

    MQTT callbacks only ever write to the EventChannel. The pump task is the
    single consumer; it updates the history and emits to every browser.
    """

    def __init__(self, orchestrator: UpgradeOrchestrator, channel: EventChannel,
                 async_handlers: bool = True):
        self.orchestrator = orchestrator
        self.channel = channel

        self.app = Flask(__name__)
        self.app.config['SECRET_KEY'] = 'device-upgrade-dashboard'
        self.socketio = SocketIO(self.app, async_mode='threading', cors_allowed_origins="*",
                                 async_handlers=async_handlers)

        self._state_lock = threading.Lock()
        self._history: Deque[str] = deque(maxlen=LOG_HISTORY)
        self._mqtt_connected = False
        self._upgrade_status = UpgradeStatus.ready()
        self._stop = threading.Event()

        self._register_handlers()

    def _register_handlers(self):
        socketio = self.socketio

        @self.app.route('/')
        def index():
            """Serve the dashboard page"""
            return render_template('dashboard.html')

        @socketio.on('connect')
        def handle_connect(auth=None):
            """Browser connected - replay current state"""
            logger.info("Web client connected")
            with self._state_lock:
                history = list(self._history)
                connected = self._mqtt_connected
                upgrade_status = self._upgrade_status
            emit('log_history', {'lines': history})
            emit('mqtt_status', {'connected': connected})
            emit('upgrade_status', status_payload(upgrade_status))

        @socketio.on('disconnect')
        def handle_disconnect(*args):
            logger.info("Web client disconnected")

        @socketio.on('send_upgrade')
        def handle_send_upgrade(data):
            self.send_upgrade(data or {})

        @socketio.on('clear_log')
        def handle_clear_log():
            with self._state_lock:
                self._history.clear()
            socketio.emit('log_cleared', {})

    def send_upgrade(self, form: dict) -> bool:
        """Run one send from the form fields; errors are already on the operator log"""
        fields = {key: str(form.get(key) or '').strip() for key in ('mac', 'url', 'version', 'package')}
        try:
            self.orchestrator.send_upgrade(fields['mac'], fields['version'], fields['url'], fields['package'])
        except UpgradeToolError as e:
            logger.warning("Upgrade command not sent: %s", e)
            return False
        return True

    def dispatch(self, event: Event) -> None:
        """Apply one channel event to the dashboard state and broadcast it"""
        if isinstance(event, LogEvent):
            with self._state_lock:
                self._history.append(event.line)
            self.socketio.emit('log_line', {'line': event.line})
        elif isinstance(event, ConnectionEvent):
            with self._state_lock:
                self._mqtt_connected = event.connected
            self.socketio.emit('mqtt_status', {'connected': event.connected})
        elif isinstance(event, UpgradeEvent):
            with self._state_lock:
                self._upgrade_status = event.status
            self.socketio.emit('upgrade_status', status_payload(event.status))

    def flush(self) -> None:
        """Dispatch everything queued so far"""
        for event in self.channel.drain():
            self.dispatch(event)

    @property
    def history(self) -> List[str]:
        with self._state_lock:
            return list(self._history)

    @property
    def mqtt_connected(self) -> bool:
        with self._state_lock:
            return self._mqtt_connected

    @property
    def upgrade_status(self) -> UpgradeStatus:
        with self._state_lock:
            return self._upgrade_status

    def _pump(self):
        while not self._stop.is_set():
            event = self.channel.get(timeout=PUMP_POLL_INTERVAL)
            if event is not None:
                self.dispatch(event)

    def run(self, host: str = '0.0.0.0', port: int = 5000, debug: bool = False):
        """Start the pump task and serve until interrupted"""
        self.socketio.start_background_task(self._pump)
        try:
            self.socketio.run(self.app, host=host, port=port, debug=debug,
                              use_reloader=False, allow_unsafe_werkzeug=True)
        finally:
            self._stop.set()
