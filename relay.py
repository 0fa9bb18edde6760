"""Socket.IO relay: one snapshot per new viewer, then every pipeline message."""

import threading

from flask import request


class Relay:
    """Fan pipeline messages out to connected viewers.

    Each message is emitted under its own `type` as the Socket.IO event name,
    with the full message (type included) as payload.
    """

    def __init__(self, socketio, pipeline, namespace='/'):
        self.socketio = socketio
        self.pipeline = pipeline
        self.namespace = namespace
        self._viewers = set()
        self._viewers_lock = threading.Lock()
        socketio.on_event('connect', self.handle_connect, namespace=namespace)
        socketio.on_event('disconnect', self.handle_disconnect, namespace=namespace)
        pipeline.add_listener(self.broadcast)

    @property
    def viewer_count(self):
        with self._viewers_lock:
            return len(self._viewers)

    def handle_connect(self, auth=None):
        """Send the snapshot and start forwarding to the new viewer."""
        sid = request.sid
        # No pipeline message may land between the snapshot and registration.
        with self.pipeline.lock:
            snapshot = self.pipeline.snapshot()
            with self._viewers_lock:
                self._viewers.add(sid)
            self._send(sid, snapshot)
        print(f'[RELAY] Viewer connected ({sid}), {len(snapshot["loops"])} loop(s) in snapshot')

    def handle_disconnect(self, reason=None):
        sid = request.sid
        with self._viewers_lock:
            self._viewers.discard(sid)
        print(f'[RELAY] Viewer disconnected ({sid})')

    def broadcast(self, message):
        """Forward one pipeline message to every open viewer, best-effort."""
        with self._viewers_lock:
            viewers = list(self._viewers)
        for sid in viewers:
            self._send(sid, message)

    def _send(self, sid, message):
        try:
            self.socketio.emit(message['type'], message, to=sid, namespace=self.namespace)
        except Exception as e:
            print(f'[RELAY] Send to {sid} failed: {e}')
