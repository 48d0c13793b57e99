#!/usr/bin/env python3
"""
termrelay - Interactive terminal client

Opens a remote shell through a termrelay server and attaches the local TTY.
"""

import argparse
import asyncio
import codecs
import getpass
import os
import shutil
import signal
import sys
import termios
import tty
from pathlib import Path
from typing import Optional

from client.config import DEFAULT_CONFIG_FILE, Config
from client.terminal_bridge import (
    EVENT_DISCONNECTED,
    EVENT_ERROR,
    EVENT_OUTPUT,
    EVENT_STATUS,
    TerminalBridge,
)
from shared.logging_config import get_default_log_file, setup_logging
from shared.protocol import TunnelError

READ_CHUNK = 1024


class InteractiveTerminal:
    """Wires the local terminal to a TerminalBridge."""

    def __init__(self, bridge_factory, stdin_fd: int, stdout_fd: int):
        self.bridge: TerminalBridge = bridge_factory(self.on_event)
        self.stdin_fd = stdin_fd
        self.stdout_fd = stdout_fd
        self.finished = asyncio.Event()
        self.error: Optional[str] = None
        self._input: asyncio.Queue = asyncio.Queue()
        # Keystrokes can split multibyte characters across reads
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="surrogateescape")
        self._original_termios = None
        self._resize_tasks: set = set()

    def on_event(self, event: str, payload) -> None:
        if event == EVENT_OUTPUT:
            self._write(payload.encode("utf-8", errors="surrogateescape"))
        elif event == EVENT_STATUS:
            self._write(f"\r\n[{payload.get('message', '')}]\r\n".encode())
        elif event == EVENT_ERROR:
            self.error = payload.get("error")
        elif event == EVENT_DISCONNECTED:
            self.finished.set()

    async def run(self, hostname: str, port: int, username: str, password: str) -> int:
        loop = asyncio.get_running_loop()
        await self.bridge.connect(hostname, port, username, password)

        self.setup_terminal()
        loop.add_reader(self.stdin_fd, self._on_stdin)
        loop.add_signal_handler(signal.SIGWINCH, self._on_winch)
        forwarder = asyncio.create_task(self._forward_input())
        try:
            await self._send_winsize()
            await self.finished.wait()
        finally:
            loop.remove_reader(self.stdin_fd)
            loop.remove_signal_handler(signal.SIGWINCH)
            pending = [forwarder, *self._resize_tasks]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            await self.bridge.disconnect()
            self.restore_terminal()

        if self.error:
            print(f"Connection error: {self.error}", file=sys.stderr)
            return 1
        print("Connection closed.", file=sys.stderr)
        return 0

    def setup_terminal(self) -> None:
        """Put the local terminal in raw mode."""
        if os.isatty(self.stdin_fd):
            self._original_termios = termios.tcgetattr(self.stdin_fd)
            tty.setraw(self.stdin_fd)

    def restore_terminal(self) -> None:
        if self._original_termios is not None:
            termios.tcsetattr(self.stdin_fd, termios.TCSADRAIN, self._original_termios)
            self._original_termios = None

    def _on_stdin(self) -> None:
        try:
            data = os.read(self.stdin_fd, READ_CHUNK)
        except OSError:
            data = b""
        if not data:
            # EOF on stdin; the remote side decides when the session ends
            asyncio.get_running_loop().remove_reader(self.stdin_fd)
            return
        text = self._decoder.decode(data)
        if text:
            self._input.put_nowait(text)

    async def _forward_input(self) -> None:
        while True:
            text = await self._input.get()
            try:
                await self.bridge.send_input(text)
            except TunnelError as e:
                self.error = e.message
                self.finished.set()
                return

    def _on_winch(self) -> None:
        task = asyncio.get_running_loop().create_task(self._send_winsize())
        self._resize_tasks.add(task)
        task.add_done_callback(self._resize_tasks.discard)

    async def _send_winsize(self) -> None:
        size = shutil.get_terminal_size(fallback=(80, 24))
        try:
            await self.bridge.resize(size.columns, size.lines)
        except TunnelError as e:
            self.error = e.message
            self.finished.set()

    def _write(self, data: bytes) -> None:
        try:
            os.write(self.stdout_fd, data)
        except OSError:
            sys.stdout.buffer.write(data)
            sys.stdout.flush()


def main(argv=None):
    """Entry point for termrelay."""
    parser = argparse.ArgumentParser(description="Open a remote shell through a termrelay server")
    parser.add_argument("host", nargs="?", help="SSH host to connect to")
    parser.add_argument("-p", "--port", type=int, default=22, help="SSH port (default: 22)")
    parser.add_argument("-u", "--user", default=None, help="SSH username (default: local user)")
    parser.add_argument("-s", "--server", default=None, help="Relay URL (overrides config)")
    parser.add_argument("-c", "--config", type=Path, help="Path to config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--init", action="store_true", help="Write the relay URL to the config file and exit"
    )

    args = parser.parse_args(argv)

    if args.init:
        config_path = args.config or DEFAULT_CONFIG_FILE
        config = Config.load(config_path, apply_env=False)
        if args.server:
            config.server_url = args.server
        config.save(config_path)
        print(f"Config file: {config_path}")
        print(f"  Relay: {config.server_url}")
        return 0

    if not args.host:
        parser.error("the host argument is required")

    config = Config.load(args.config)
    if args.server:
        config.server_url = args.server

    setup_logging(
        level="DEBUG" if args.verbose else config.log_level,
        log_file=get_default_log_file("client"),
        stream=sys.stderr,
    )

    username = args.user or getpass.getuser()
    password = getpass.getpass(f"{username}@{args.host}'s password: ")

    def make_bridge(on_event):
        return TerminalBridge(
            server_url=config.server_url,
            on_event=on_event,
            token_provider=lambda: config.api_token,
            request_timeout=config.request_timeout,
        )

    session = InteractiveTerminal(make_bridge, sys.stdin.fileno(), sys.stdout.fileno())
    try:
        return asyncio.run(session.run(args.host, args.port, username, password))
    except TunnelError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        if e.recovery_hint:
            print(f"Hint: {e.recovery_hint}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
