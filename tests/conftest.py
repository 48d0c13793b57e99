"""Shared fixtures: fake SSH/WebSocket endpoints and an in-process SSH echo server."""

import asyncio
import queue
import socket
import threading
import time

import paramiko
import pytest
from starlette.websockets import WebSocketState


class FakeChannel:
    """Stands in for a paramiko.Channel with a remote shell behind it."""

    def __init__(self, echo: bool = False, fail_pty: bool = False):
        self.echo = echo
        self.fail_pty = fail_pty
        self.stdout: queue.Queue = queue.Queue()
        self.stderr: queue.Queue = queue.Queue()
        self.sent = bytearray()
        self.sizes: list[tuple[int, int]] = []
        self.pty = None
        self.shell_invoked = False
        self.closed = False

    def get_pty(self, term="vt100", width=80, height=24):
        if self.fail_pty:
            raise paramiko.SSHException("pty request denied")
        self.pty = (term, width, height)

    def invoke_shell(self):
        self.shell_invoked = True

    def recv(self, nbytes):
        return self.stdout.get()

    def recv_stderr(self, nbytes):
        return self.stderr.get()

    def sendall(self, data):
        if self.closed:
            raise OSError("Socket is closed")
        self.sent.extend(data)
        if self.echo:
            self.stdout.put(bytes(data))

    def resize_pty(self, width=80, height=24):
        if self.closed:
            raise OSError("Socket is closed")
        self.sizes.append((width, height))

    def feed(self, data: bytes, stderr: bool = False):
        (self.stderr if stderr else self.stdout).put(data)

    def close(self):
        if not self.closed:
            self.closed = True
            self.stdout.put(b"")
            self.stderr.put(b"")


class FakeSSHClient:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class FakeServerSocket:
    """Server-side WebSocket double with the attributes the relay touches."""

    def __init__(self, fail_send: bool = False, block_send: bool = False):
        self.application_state = WebSocketState.CONNECTED
        self.client_state = WebSocketState.CONNECTED
        self.fail_send = fail_send
        self.block_send = block_send
        self.sent: list[bytes] = []
        self.close_codes: list[int] = []

    async def send_bytes(self, data: bytes):
        if self.fail_send:
            raise RuntimeError("Unexpected ASGI message 'websocket.send'")
        if self.block_send:
            await asyncio.Event().wait()
        self.sent.append(data)

    async def close(self, code: int = 1000):
        self.close_codes.append(code)
        self.application_state = WebSocketState.DISCONNECTED

    @property
    def closed(self) -> bool:
        return self.application_state == WebSocketState.DISCONNECTED


async def wait_for_condition(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll until predicate() is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Blocking variant of wait_for_condition for TestClient-driven tests."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def fake_client():
    return FakeSSHClient()


# =============================================================================
# In-process SSH server
# =============================================================================

SSH_USER = "alice"
SSH_PASSWORD = "secret"


class EchoServer(paramiko.ServerInterface):
    """Accepts one password, grants a PTY shell, and echoes input back."""

    def __init__(self):
        self.shell_requested = threading.Event()

    def check_channel_request(self, kind, chanid):
        if kind == "session":
            return paramiko.OPEN_SUCCEEDED
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def get_allowed_auths(self, username):
        return "password"

    def check_auth_password(self, username, password):
        if username == SSH_USER and password == SSH_PASSWORD:
            return paramiko.AUTH_SUCCESSFUL
        return paramiko.AUTH_FAILED

    def check_channel_pty_request(
        self, channel, term, width, height, pixelwidth, pixelheight, modes
    ):
        return True

    def check_channel_shell_request(self, channel):
        self.shell_requested.set()
        return True

    def check_channel_window_change_request(
        self, channel, width, height, pixelwidth, pixelheight
    ):
        return True


@pytest.fixture(scope="session")
def host_key():
    return paramiko.RSAKey.generate(2048)


@pytest.fixture
def ssh_server(host_key):
    """Run an echo SSH server on a free localhost port and yield the port."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    listener.bind(("127.0.0.1", 0))
    listener.listen(8)
    listener.settimeout(0.2)
    port = listener.getsockname()[1]

    stop = threading.Event()
    transports: list[paramiko.Transport] = []

    def serve(conn):
        transport = paramiko.Transport(conn)
        transport.add_server_key(host_key)
        transports.append(transport)
        server = EchoServer()
        try:
            transport.start_server(server=server)
        except (paramiko.SSHException, EOFError, OSError):
            return

        channel = transport.accept(10)
        if channel is None or not server.shell_requested.wait(10):
            return

        try:
            channel.sendall(b"$ ")
            while True:
                data = channel.recv(1024)
                if not data:
                    break
                channel.sendall(data)
        except (OSError, EOFError, paramiko.SSHException):
            pass
        finally:
            channel.close()

    def accept_loop():
        while not stop.is_set():
            try:
                conn, _ = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            threading.Thread(target=serve, args=(conn,), daemon=True).start()

    thread = threading.Thread(target=accept_loop, name="ssh-echo-server", daemon=True)
    thread.start()

    yield port

    stop.set()
    thread.join(timeout=2)
    listener.close()
    for transport in transports:
        transport.close()


@pytest.fixture
def closed_port():
    """A localhost port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port
