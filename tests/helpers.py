"""Test doubles and scripted stand-in servers shared by the test modules."""

import asyncio
import sys
from typing import Dict, List, Optional

from rlsp.config import LspSettings
from rlsp.servers.session import SessionState


class FakeSession:
    """Stands in for ClientSession; start can be gated or made to fail."""

    def __init__(self, key: str, cwd: str, gate: Optional[asyncio.Event] = None,
                 failure: Optional[Exception] = None, stop_delay: float = 0.0):
        self.key = key
        self.cwd = cwd
        self.gate = gate
        self.failure = failure
        self.stop_delay = stop_delay
        self.state = SessionState.UNINITIALIZED
        self.on_terminated = None
        self.start_calls = 0
        self.stop_calls = 0
        self.documents = []
        self.file_events = []

    async def start(self):
        self.start_calls += 1
        self.state = SessionState.STARTING
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.failure is not None:
            self.state = SessionState.STOPPED
            raise self.failure
        self.state = SessionState.RUNNING
        return self

    async def stop(self):
        if self.state is not SessionState.RUNNING:
            return
        self.stop_calls += 1
        self.state = SessionState.STOPPING
        await asyncio.sleep(self.stop_delay)
        self.state = SessionState.STOPPED

    def open_document(self, document):
        if self.state is SessionState.RUNNING:
            self.documents.append(document)

    def notify_watched_files(self, changes):
        self.file_events.extend(changes)

    def terminate(self):
        """Simulate the server process dying on its own."""
        self.state = SessionState.STOPPED
        if self.on_terminated is not None:
            self.on_terminated(self)


class RecordingFactory:
    """Session factory that records every session it builds."""

    def __init__(self):
        self.created: List[FakeSession] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.failures: Dict[str, Exception] = {}
        self.stop_delays: Dict[str, float] = {}

    def __call__(self, key: str, cwd: str) -> FakeSession:
        session = FakeSession(
            key,
            cwd,
            gate=self.gates.get(key),
            failure=self.failures.get(key),
            stop_delay=self.stop_delays.get(key, 0.0),
        )
        self.created.append(session)
        return session

    def for_key(self, key: str) -> List[FakeSession]:
        return [session for session in self.created if session.key == key]


class FakeClient:
    """Protocol client that only records what the session asks of it.

    ``shutdown`` closes the write side of the channel, which makes the test
    servers below exit cleanly.
    """

    def __init__(self, sink, settings):
        self.sink = sink
        self.settings = settings
        self.reader = None
        self.writer = None
        self.initialized = False
        self.shutdown_calls = 0
        self.stopped = False
        self.opened = []

    def attach(self, reader, writer):
        self.reader = reader
        self.writer = writer

    async def initialize(self, root_path, folder_uri=None):
        self.initialized = True

    def did_open(self, document):
        self.opened.append(document)
        return True

    def did_change_watched_files(self, changes):
        pass

    async def shutdown(self):
        self.shutdown_calls += 1
        if not self.writer.is_closing():
            self.writer.close()

    async def stop(self):
        self.stopped = True


class HangingClient(FakeClient):
    """Protocol client whose shutdown request is never answered."""

    async def shutdown(self):
        self.shutdown_calls += 1
        await asyncio.Event().wait()


# Python scripts run as the "R binary" (rpath=sys.executable, args=["-c", SCRIPT]).
# R's own flags and the startup expression end up in sys.argv.

STDIN_UNTIL_EOF = "import sys; sys.stdin.buffer.read()"

SOCKET_SERVER = r"""
import re, socket, sys
port = int(re.search(r"port=(\d+)", sys.argv[-1]).group(1))
sock = socket.create_connection(("127.0.0.1", port))
while sock.recv(1024):
    pass
"""

IGNORE_EVERYTHING = "import time; time.sleep(60)"


async def wait_until(predicate, timeout: float = 5.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def python_settings(script: str, **overrides) -> LspSettings:
    values = {"rpath": sys.executable, "args": ["-c", script], "stop_timeout": 2.0, "connect_timeout": 5.0}
    values.update(overrides)
    return LspSettings(**values)


# Speaks just enough LSP over stdio for the handshake. Each didOpen is answered
# with one diagnostic and a log line; watched-file changes are logged too.
FAKE_LSP_SERVER = r"""
import json, sys

def read_message():
    length = None
    while True:
        line = sys.stdin.buffer.readline()
        if not line:
            return None
        line = line.strip()
        if not line:
            break
        name, _, value = line.partition(b":")
        if name.strip().lower() == b"content-length":
            length = int(value)
    return json.loads(sys.stdin.buffer.read(length))

def send(payload):
    body = json.dumps(payload).encode("utf-8")
    sys.stdout.buffer.write(b"Content-Length: %d\r\n\r\n" % len(body) + body)
    sys.stdout.buffer.flush()

while True:
    message = read_message()
    if message is None:
        sys.exit(1)
    method = message.get("method")
    if method == "initialize":
        send({"jsonrpc": "2.0", "id": message["id"], "result": {"capabilities": {}}})
        send({"jsonrpc": "2.0", "method": "window/logMessage",
              "params": {"type": 3, "message": "hello from R"}})
    elif method == "textDocument/didOpen":
        document = message["params"]["textDocument"]
        send({"jsonrpc": "2.0", "method": "window/logMessage",
              "params": {"type": 3, "message": "opened %s %s %d" % (
                  document["uri"], document["languageId"], len(document["text"]))}})
        diagnostic = {"range": {"start": {"line": 0, "character": 0},
                                "end": {"line": 0, "character": 1}},
                      "severity": 2, "source": "lintr", "message": "style warning"}
        send({"jsonrpc": "2.0", "method": "textDocument/publishDiagnostics",
              "params": {"uri": document["uri"], "diagnostics": [diagnostic]}})
    elif method == "workspace/didChangeWatchedFiles":
        for change in message["params"]["changes"]:
            send({"jsonrpc": "2.0", "method": "window/logMessage",
                  "params": {"type": 3, "message": "watched %s %d" % (change["uri"], change["type"])}})
    elif method == "shutdown":
        send({"jsonrpc": "2.0", "id": message["id"], "result": None})
    elif method == "exit":
        sys.exit(0)
"""
