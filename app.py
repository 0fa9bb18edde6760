"""Agent loop observatory backend.

Tails the JSONL logs of autonomous coding-agent loops on local and remote
hosts, rebuilds a semantic event stream per loop, and pushes a live snapshot
plus incremental updates to Socket.IO viewers. A small REST surface serves
on-demand reads and operator deletes.
"""

import sys

from flask import Flask, request
from flask_socketio import SocketIO

from config import ConfigError, load_config
from pipeline import SNAPSHOT_EVENT_COUNT, Pipeline
from relay import Relay

app = Flask(__name__)
socketio = SocketIO(app, cors_allowed_origins="*", async_mode='threading')

# Set by init_pipeline(); routes answer 503 until then.
pipeline = None
relay = None
MAX_EVENT_COUNT = 500


def init_pipeline(config_or_pipeline):
    """Attach a pipeline (or build one from a config) and wire the relay to it."""
    global pipeline, relay
    if isinstance(config_or_pipeline, Pipeline):
        pipeline = config_or_pipeline
    else:
        pipeline = Pipeline(config_or_pipeline)
    relay = Relay(socketio, pipeline)
    return pipeline


def not_ready():
    return {'ok': False, 'error': 'pipeline not started'}, 503


@app.route('/ready')
def ready():
    """Return lightweight readiness status for frontend bootstrap retries."""
    return {'ready': pipeline is not None}


@app.route('/api/status')
def status():
    """Return every tracked loop in its sanitized wire shape."""
    if pipeline is None:
        return not_ready()
    return {'ok': True, 'loops': pipeline.get_loop_states()}


@app.route('/api/loops/<loop_id>/events')
def loop_events(loop_id):
    """Return buffered events for one loop (used for non-running loops)."""
    if pipeline is None:
        return not_ready()
    state = pipeline.get_loop_state(loop_id)
    if state is None:
        return {'ok': False, 'error': f'loop {loop_id} not found'}, 404
    try:
        count = int(request.args.get('count', SNAPSHOT_EVENT_COUNT))
    except ValueError:
        return {'ok': False, 'error': 'count must be an integer'}, 400
    count = max(0, min(count, MAX_EVENT_COUNT))
    return {
        'ok': True,
        'loopId': loop_id,
        'state': state,
        'events': pipeline.get_recent_events(loop_id, count),
    }


@app.route('/api/loops/<loop_id>', methods=['DELETE'])
def delete_loop(loop_id):
    """Forget a loop and delete its log file on the owning host."""
    if pipeline is None:
        return not_ready()
    if not pipeline.remove_loop(loop_id):
        return {'ok': False, 'error': f'loop {loop_id} not found'}, 404
    return {'ok': True, 'loopId': loop_id}


def main(config_path=None):  # pragma: no cover
    """Load config, start tailing every host and serve viewers."""
    try:
        config = load_config(config_path)
    except ConfigError as e:
        print(f'[BOOT] {e}', file=sys.stderr)
        sys.exit(1)

    init_pipeline(config).start()
    print(f'[BOOT] loop-observatory listening on http://0.0.0.0:{config.port}')
    try:
        socketio.run(app, host='0.0.0.0', port=config.port, allow_unsafe_werkzeug=True)
    finally:
        pipeline.stop()


if __name__ == '__main__':  # pragma: no cover
    main(sys.argv[1] if len(sys.argv) > 1 else None)
