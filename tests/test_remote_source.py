import os
import select
import shutil
import subprocess
import sys
import threading
import time

import paramiko
import pytest

import remote_source
from config import HostConfig
from remote_source import (
    HEARTBEAT_MARKER,
    IDLE_MARKER,
    MAX_RECONNECT_DELAY_SEC,
    NEW_FILE_MARKER,
    RemoteSource,
    build_multiplex_command,
)

HOST = HostConfig(name="test-vm", host="127.0.0.1", user="testuser", password="testpass", watch_dir="/tmp/test-ralph")


class Recorder:
    def __init__(self):
        self.lock = threading.Lock()
        self.lines = []
        self.statuses = []
        self.connections = []
        self.errors = []

    def on_line(self, host, path, text):
        with self.lock:
            self.lines.append((host, path, text))

    def on_status(self, host, path, status):
        with self.lock:
            self.statuses.append((host, path, status))

    def on_connection(self, host, status):
        with self.lock:
            self.connections.append((host, status))

    def on_error(self, host, err):
        with self.lock:
            self.errors.append((host, err))


class FakeTimer:
    created = []

    def __init__(self, delay, fn):
        self.delay = delay
        self.fn = fn
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True


class FakeChannel:
    def __init__(self, lines):
        self.lines = lines
        self.command = None

    def exec_command(self, command):
        self.command = command

    def makefile(self, mode):
        assert mode == "rb"
        return iter(self.lines)


class FakeTransport:
    def __init__(self, channel):
        self.channel = channel

    def is_active(self):
        return True

    def open_session(self):
        return self.channel


class FakeStdout:
    class channel:
        @staticmethod
        def recv_exit_status():
            return 0


class FakeClient:
    def __init__(self, lines=()):
        self.channel = FakeChannel(list(lines))
        self.transport = FakeTransport(self.channel)
        self.closed = False
        self.commands = []

    def get_transport(self):
        return self.transport

    def exec_command(self, command, timeout=None):
        self.commands.append(command)
        return None, FakeStdout(), None

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def fake_timer(monkeypatch):
    FakeTimer.created = []
    monkeypatch.setattr(remote_source.threading, "Timer", FakeTimer)
    return FakeTimer


def armed_source(recorder, host=HOST):
    source = RemoteSource(host, recorder)
    # Let _connect run synchronously without start() spawning threads.
    source._stop.clear()
    return source


def test_host_name_comes_from_config():
    assert RemoteSource(HOST, Recorder()).host_name == "test-vm"


def test_stop_is_safe_before_start_and_twice():
    source = RemoteSource(HOST, Recorder())
    source.stop()
    source.stop()
    assert not source.connected


def test_multiplex_command_is_a_single_quoted_shell_invocation():
    command = build_multiplex_command("/tmp/my loops", interval=10)
    assert command.startswith("sh -c ")
    assert "/tmp/my loops" in command
    assert NEW_FILE_MARKER in command
    assert IDLE_MARKER in command
    assert "tail -n 0 -F" in command
    assert "sleep 10" in command
    assert "*.jsonl" in command


def test_stream_demultiplexing():
    recorder = Recorder()
    source = armed_source(recorder)

    source.handle_stream_line(f"{NEW_FILE_MARKER}\t/tmp/test-ralph/a.jsonl\n".encode())
    source.handle_stream_line(f"{NEW_FILE_MARKER}\t/tmp/test-ralph/a.jsonl\n".encode())
    source.handle_stream_line(b'/tmp/test-ralph/a.jsonl\t{"type": "x", "text": "tab\\there"}\r\n')
    source.handle_stream_line("/tmp/test-ralph/a.jsonl\tcol1\tcol2\n")
    source.handle_stream_line("/tmp/test-ralph/a.jsonl\t   \n")
    source.handle_stream_line("stray output without separator\n")
    source.handle_stream_line("\n")
    source.handle_stream_line(IDLE_MARKER + "\n")

    assert recorder.statuses == [("test-vm", "/tmp/test-ralph/a.jsonl", "new")]
    assert recorder.lines == [
        ("test-vm", "/tmp/test-ralph/a.jsonl", '{"type": "x", "text": "tab\\there"}'),
        ("test-vm", "/tmp/test-ralph/a.jsonl", "col1\tcol2"),
    ]
    assert recorder.connections == [("test-vm", "idle")]
    assert source.tracked_files() == ["/tmp/test-ralph/a.jsonl"]


def test_invalid_utf8_is_replaced_not_fatal():
    recorder = Recorder()
    source = armed_source(recorder)
    source.handle_stream_line(b"/tmp/test-ralph/a.jsonl\tbad \xff byte\n")
    assert recorder.lines[0][2] == "bad � byte"


def test_session_streams_then_reports_disconnect_and_schedules_reconnect(fake_timer):
    recorder = Recorder()
    source = armed_source(recorder)
    client = FakeClient([
        f"{NEW_FILE_MARKER}\t/tmp/test-ralph/s.jsonl\n".encode(),
        b"/tmp/test-ralph/s.jsonl\thello\n",
    ])
    source.open_client = lambda: client
    source._reconnect_delay = 8.0

    source._connect()

    assert recorder.connections == [("test-vm", "connected"), ("test-vm", "disconnected")]
    assert recorder.statuses == [("test-vm", "/tmp/test-ralph/s.jsonl", "new")]
    assert recorder.lines == [("test-vm", "/tmp/test-ralph/s.jsonl", "hello")]
    assert "/tmp/test-ralph" in client.channel.command
    assert client.closed
    assert source.tracked_files() == []
    assert not source.connected
    # A successful connect resets the backoff before the next attempt is scheduled.
    assert [t.delay for t in fake_timer.created] == [1.0]
    assert fake_timer.created[0].started
    assert source.reconnect_delay == 2.0


def test_failed_connects_back_off_exponentially_up_to_cap(fake_timer):
    recorder = Recorder()
    source = armed_source(recorder)

    def refuse():
        raise OSError("connection refused")

    source.open_client = refuse
    for _ in range(7):
        source._connect()

    delays = [t.delay for t in fake_timer.created]
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
    assert source.reconnect_delay == MAX_RECONNECT_DELAY_SEC
    assert len(recorder.errors) == 7
    assert recorder.connections == []


def test_only_one_reconnect_pending_at_a_time(fake_timer):
    source = armed_source(Recorder())
    source._schedule_reconnect()
    source._schedule_reconnect()
    assert len(fake_timer.created) == 1


def test_connect_is_skipped_while_another_attempt_is_in_flight():
    source = armed_source(Recorder())
    attempts = []
    source.open_client = lambda: attempts.append(1)
    source._connecting = True
    source._connect()
    assert attempts == []


def test_stop_cancels_pending_reconnect(fake_timer):
    source = armed_source(Recorder())
    source._schedule_reconnect()
    source.stop()
    assert fake_timer.created[0].cancelled
    source._schedule_reconnect()
    assert len(fake_timer.created) == 1


def test_delete_file_issues_single_remote_rm_and_always_succeeds():
    source = armed_source(Recorder())
    assert source.delete_file("/tmp/test-ralph/gone.jsonl") is True

    client = FakeClient()
    source._client = client
    source._tracked["/tmp/test-ralph/a b.jsonl"] = 0.0
    assert source.delete_file("/tmp/test-ralph/a b.jsonl") is True
    assert client.commands == ["rm -f '/tmp/test-ralph/a b.jsonl'"]
    assert source.tracked_files() == []

    def broken(command, timeout=None):
        raise paramiko.SSHException("channel closed")

    client.exec_command = broken
    assert source.delete_file("/tmp/test-ralph/x.jsonl") is True


def test_open_client_uses_key_or_password(monkeypatch):
    captured = []

    class FakeSSHClient:
        def set_missing_host_key_policy(self, policy):
            pass

        def connect(self, **kwargs):
            captured.append(kwargs)

        def get_transport(self):
            return None

        def close(self):
            pass

    monkeypatch.setattr(remote_source.paramiko, "SSHClient", FakeSSHClient)

    RemoteSource(HOST, Recorder()).open_client()
    key_host = HostConfig(name="key-vm", host="10.0.0.2", user="u", key="~/.ssh/id_rsa", port=2222)
    RemoteSource(key_host, Recorder()).open_client()

    password_kwargs, key_kwargs = captured
    assert password_kwargs["password"] == "testpass"
    assert password_kwargs["look_for_keys"] is False
    assert key_kwargs["key_filename"] == os.path.expanduser("~/.ssh/id_rsa")
    assert key_kwargs["port"] == 2222
    assert "password" not in key_kwargs


def test_heartbeat_lines_are_ignored():
    recorder = Recorder()
    source = armed_source(recorder)
    source.handle_stream_line(f"{HEARTBEAT_MARKER}\n".encode())
    assert recorder.lines == recorder.statuses == recorder.connections == []


def test_failing_listener_does_not_end_the_stream():
    class Picky(Recorder):
        def on_line(self, host, path, text):
            if text == "boom":
                raise RecursionError("maximum recursion depth exceeded")
            super().on_line(host, path, text)

    recorder = Picky()
    source = armed_source(recorder)
    source.consume([b"/tmp/test-ralph/a.jsonl\tboom\n", b"/tmp/test-ralph/a.jsonl\tafter\n"])
    assert recorder.lines == [("test-vm", "/tmp/test-ralph/a.jsonl", "after")]


def test_start_twice_keeps_one_checker_and_one_connect(fake_timer):
    attempts = []

    def refuse():
        attempts.append(1)
        raise OSError("connection refused")

    source = RemoteSource(HOST, Recorder())
    source.open_client = refuse
    source.start()
    checker = source._stale_checker
    source.start()
    try:
        deadline = time.time() + 2
        while not attempts and time.time() < deadline:
            time.sleep(0.01)
        time.sleep(0.1)
        assert source._stale_checker is checker
        assert attempts == [1]
    finally:
        source.stop()


def group_members(pgid):
    """Live (non-zombie) processes in a process group, read from /proc."""
    members = []
    for entry in os.listdir("/proc"):
        if not entry.isdigit():
            continue
        try:
            with open(f"/proc/{entry}/stat", encoding="utf-8", errors="replace") as f:
                stat = f.read()
        except OSError:
            continue
        fields = stat.rsplit(")", 1)[1].split()
        if int(fields[2]) == pgid and fields[0] != "Z":
            members.append(int(entry))
    return members


class StreamPump:
    """Feed a child's stdout into a RemoteSource line by line without threads."""

    def __init__(self, stream, source):
        self.fd = stream.fileno()
        self.source = source
        self.buffer = b""

    def until(self, predicate, timeout=5.0):
        deadline = time.time() + timeout
        while not predicate() and time.time() < deadline:
            ready, _, _ = select.select([self.fd], [], [], 0.05)
            if not ready:
                continue
            chunk = os.read(self.fd, 65536)
            if not chunk:
                break
            *lines, self.buffer = (self.buffer + chunk).split(b"\n")
            for line in lines:
                self.source.handle_stream_line(line + b"\n")
        return predicate()


@pytest.mark.skipif(
    not sys.platform.startswith("linux") or not (shutil.which("sh") and shutil.which("tail") and shutil.which("find")),
    reason="needs a POSIX shell, tail, find and /proc",
)
def test_multiplex_script_streams_new_lines_and_exits_when_reader_closes(tmp_path):
    log = tmp_path / "nested" / "a.jsonl"
    log.parent.mkdir()
    log.write_text('{"old": true}\n', encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignored\n", encoding="utf-8")

    recorder = Recorder()
    source = armed_source(recorder)
    proc = subprocess.Popen(
        build_multiplex_command(str(tmp_path), interval=0.2),
        shell=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    pgid = proc.pid
    try:
        pump = StreamPump(proc.stdout, source)
        assert pump.until(lambda: recorder.statuses)
        assert recorder.statuses == [("test-vm", str(log), "new")]

        # tail starts in the background; keep appending until it is attached.
        for i in range(25):
            with open(log, "a", encoding="utf-8") as f:
                f.write(f'{{"n": {i}}}\n')
            if pump.until(lambda: recorder.lines, timeout=0.2):
                break
        assert recorder.lines
        assert all(path == str(log) for _host, path, _text in recorder.lines)
        assert all(text.startswith('{"n": ') for _host, _path, text in recorder.lines)
        assert recorder.connections == []

        proc.stdout.close()
        proc.wait(timeout=5)
        deadline = time.time() + 5
        while group_members(pgid) and time.time() < deadline:
            time.sleep(0.05)
        assert group_members(pgid) == []
    finally:
        if group_members(pgid):
            os.killpg(pgid, 9)
        if proc.poll() is None:
            proc.wait(timeout=5)


@pytest.mark.skipif(not (shutil.which("sh") and shutil.which("find")), reason="needs a POSIX shell and find")
def test_multiplex_script_reports_idle_for_empty_directory(tmp_path):
    recorder = Recorder()
    source = armed_source(recorder)
    proc = subprocess.Popen(
        build_multiplex_command(str(tmp_path), interval=0.2),
        shell=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    try:
        assert StreamPump(proc.stdout, source).until(lambda: recorder.connections)
        assert recorder.connections[0] == ("test-vm", "idle")
        assert recorder.lines == []
    finally:
        proc.stdout.close()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            os.killpg(proc.pid, 9)
            proc.wait(timeout=5)
