#!/usr/bin/env python3
"""
Standalone reader for loop-observatory.
Starts the tailing pipeline without the web server and prints every message
it would broadcast as one JSON line. Useful when debugging a host's transport.
"""
import json
import os
import sys
import time

from config import ConfigError, load_config
from pipeline import Pipeline


def print_message(message):
    print(json.dumps(message, ensure_ascii=False), flush=True)


def run(config_path=None):
    config = load_config(config_path)
    pipeline = Pipeline(config)
    pipeline.add_listener(print_message)
    pipeline.start()
    try:
        while True:
            time.sleep(1.0)
    finally:
        pipeline.stop()


if __name__ == '__main__':
    print(f'[READER] Starting standalone reader (pid={os.getpid()})', file=sys.stderr)
    try:
        run(sys.argv[1] if len(sys.argv) > 1 else None)
    except ConfigError as e:
        print(f'[READER] {e}', file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print('[READER] Interrupted, exiting', file=sys.stderr)
