"""Line-to-event parsing, narrative summaries and tool call/result pairing.

Every agent log line goes through `parse_line`, which turns it into zero or
more monitor events. Events are plain dicts already shaped for the wire
(camelCase keys) so they can be buffered and broadcast without conversion.
`EventPairer` then fuses a tool call with its later result.
"""

import itertools
import json
import re
import time
from urllib.parse import urlparse

# Iteration boundary printed by the loop driver between agent runs.
LOOP_MARKER = re.compile(r'=+\s*LOOP\s+(\d+)\s*=+')
SUMMARY_MAX_LEN = 120
PAIR_TIMEOUT_MS = 60_000
NOT_JSON = object()

_event_counter = itertools.count()


def now_ms():
    """Return current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def next_event_id():
    """Return a process-unique, time-ordered event id."""
    return f'evt_{now_ms()}_{next(_event_counter)}'


def _base_event(event_type, loop_id, summary):
    return {
        'id': next_event_id(),
        'type': event_type,
        'timestamp': now_ms(),
        'loopId': loop_id,
        'summary': summary,
    }


def decode_line(line):
    """Decode one log line as JSON, returning NOT_JSON when it does not parse."""
    try:
        return json.loads(line.strip())
    except (ValueError, RecursionError):
        return NOT_JSON


def parse_line(line, loop_id, decoded=None):
    """Map one raw log line to a list of monitor events.

    `decoded` may carry the result of `decode_line` so callers that also
    inspect the JSON for metadata do not decode the line twice.
    """
    trimmed = (line or '').strip()
    if not trimmed:
        return []

    marker = LOOP_MARKER.search(trimmed)
    if marker:
        number = int(marker.group(1))
        event = _base_event('iteration', loop_id, f'Iteration {number}')
        event['iterationNumber'] = number
        return [event]

    msg = decode_line(trimmed) if decoded is None else decoded
    if msg is NOT_JSON:
        event = _base_event('raw', loop_id, trimmed[:SUMMARY_MAX_LEN])
        event['line'] = trimmed
        return [event]

    if not isinstance(msg, dict) or not msg.get('type'):
        return []
    message = msg.get('message')
    if not isinstance(message, dict):
        return []
    content = message.get('content')
    if not isinstance(content, list) or not content or not isinstance(content[0], dict):
        return []

    event = _parse_content(content[0], msg, loop_id)
    return [event] if event else []


def _parse_content(content, msg, loop_id):
    """Build the event for the first content block of a structured message."""
    kind = content.get('type')
    message = msg['message']

    if kind == 'tool_use':
        name = content.get('name') or ''
        tool_input = content.get('input')
        if not isinstance(tool_input, dict):
            tool_input = {}
        event = _base_event('tool_call', loop_id, summarize_tool_call(name, tool_input))
        event.update({
            'toolName': name,
            'toolUseId': content.get('id') or '',
            'input': tool_input,
            'model': message.get('model') or 'unknown',
            'sessionId': msg.get('session_id') or '',
        })
        return event

    if kind == 'tool_result':
        result = msg.get('tool_use_result')
        if not isinstance(result, dict):
            result = {}
        duration = result.get('durationMs')
        raw_content = content.get('content')
        event = _base_event('tool_result', loop_id, summarize_tool_result(
            num_files=result.get('numFiles'),
            exit_code=result.get('exitCode'),
            duration_ms=duration,
        ))
        event.update({
            'toolUseId': content.get('tool_use_id') or '',
            'durationMs': duration if _is_number(duration) else None,
            'content': raw_content if isinstance(raw_content, str) else json.dumps(raw_content),
        })
        return event

    if kind == 'text':
        text = content.get('text')
        if not isinstance(text, str) or not text.strip():
            return None
        excerpt = text[:SUMMARY_MAX_LEN]
        event = _base_event('thinking', loop_id, excerpt)
        event.update({'excerpt': excerpt, 'fullText': text})
        return event

    return None


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _basename(path):
    return str(path).rstrip('/').split('/')[-1]


def _truncate(text, max_len):
    return text[:max_len] + '...' if len(text) > max_len else text


def _hostname(url):
    try:
        host = urlparse(url).hostname
    except ValueError:
        host = None
    return host or url[:40]


def summarize_tool_call(tool_name, tool_input):
    """Return a one-line human summary of a tool invocation."""
    tool_input = tool_input if isinstance(tool_input, dict) else {}
    get = tool_input.get
    if tool_name == 'Glob':
        return f"Searching `{get('pattern')}`"
    if tool_name == 'Read':
        return f"Reading `{_basename(get('file_path') or '')}`"
    if tool_name == 'Edit':
        return f"Editing `{_basename(get('file_path') or '')}`"
    if tool_name == 'Write':
        return f"Creating `{_basename(get('file_path') or '')}`"
    if tool_name == 'Grep':
        return f"Searching for `{get('pattern')}`"
    if tool_name == 'Bash':
        return f"Running: `{_truncate(str(get('command') or ''), 60)}`"
    if tool_name == 'Task':
        description = _truncate(str(get('description') or ''), 50)
        return f"Spawning {get('model') or 'sonnet'} subagent: {description}"
    if tool_name == 'WebFetch':
        return f"Fetching {_hostname(str(get('url') or ''))}"
    if tool_name == 'WebSearch':
        return f"Searching web: `{_truncate(str(get('query') or ''), 50)}`"
    try:
        encoded = json.dumps(tool_input)
    except (TypeError, ValueError):
        encoded = str(tool_input)
    return f'{tool_name}({_truncate(encoded, 60)})'


def summarize_tool_result(num_files=None, exit_code=None, duration_ms=None):
    """Return a one-line human summary of a tool outcome."""
    duration = f'{duration_ms}ms' if _is_number(duration_ms) else None
    suffix = f' ({duration})' if duration else ''
    if _is_number(num_files):
        return f'{num_files} files found{suffix}'
    if _is_number(exit_code):
        return f'exit {exit_code}{suffix}'
    if duration:
        return f'completed ({duration})'
    return 'completed'


class EventPairer:
    """Correlate tool_call events with their later tool_result for one loop."""

    def __init__(self, timeout_ms=PAIR_TIMEOUT_MS):
        self.timeout_ms = timeout_ms
        self._pending = {}

    def process(self, event):
        """Record calls, fuse matching results, pass everything else through."""
        event_type = event.get('type')
        if event_type == 'tool_call':
            self._pending[event['toolUseId']] = event
            return event

        if event_type == 'tool_result':
            call = self._pending.pop(event.get('toolUseId'), None)
            if call is None:
                # Orphan result: its call predates monitoring or was pruned.
                return event
            return {
                'id': call['id'],
                'type': 'tool_paired',
                'timestamp': call['timestamp'],
                'loopId': call['loopId'],
                'summary': call['summary'],
                'toolName': call['toolName'],
                'toolUseId': call['toolUseId'],
                'input': call['input'],
                'model': call['model'],
                'sessionId': call['sessionId'],
                'durationMs': event.get('durationMs'),
                'resultContent': event.get('content', ''),
                'resultSummary': event.get('summary', ''),
            }

        return event

    def get_pending(self):
        """Return pending calls younger than the timeout."""
        now = now_ms()
        return [e for e in self._pending.values() if now - e['timestamp'] < self.timeout_ms]

    def prune_stale(self):
        """Forget pending calls older than the timeout."""
        now = now_ms()
        for tool_use_id, event in list(self._pending.items()):
            if now - event['timestamp'] > self.timeout_ms:
                del self._pending[tool_use_id]
