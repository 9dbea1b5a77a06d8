"""
Secret handle for commands that read a secret on stdin.

The secret is written into a FIFO inside a private temporary directory by a
background thread, exactly once per reader, for as long as the relay is open.
Commands consume it through a shell redirection, so the value never shows up
in an argument vector, in a command string or in the command history kept by
archinstall.
"""

from __future__ import annotations

import os
import shlex
import shutil
import tempfile
import threading
from pathlib import Path
from types import TracebackType

from archinstall import debug
from pydantic import SecretStr

CLOSE_ATTEMPTS = 10
CLOSE_JOIN_TIMEOUT = 0.1


class SecretRelay:
    def __init__(self, secret: SecretStr, prefix: str = "") -> None:
        """
        Args:
            secret: The value to relay; a newline is appended for line-based readers
            prefix: Non-secret text written before the secret (e.g. "root:" for chpasswd)
        """
        self._secret = secret
        self._prefix = prefix
        self._closed = False
        self._stop = threading.Event()

        # mkdtemp creates the directory with mode 0700
        self._directory = Path(tempfile.mkdtemp(prefix="zfs-installer-"))
        self.fifo_path = self._directory / "relay"
        os.mkfifo(self.fifo_path, 0o600)

        self._writer = threading.Thread(target=self._serve, name="secret-relay", daemon=True)
        self._writer.start()
        debug(f"Secret relay listening on {self.fifo_path}")

    def _serve(self) -> None:
        while not self._stop.is_set():
            try:
                # Blocks until a consumer opens the read end
                with open(self.fifo_path, "wb") as fifo:
                    if self._stop.is_set():
                        break
                    # Later consumers open a fresh FIFO, so this one reaches EOF once written
                    self._replace_fifo()
                    fifo.write(f"{self._prefix}{self._secret.get_secret_value()}\n".encode())
            except BrokenPipeError:
                # The consumer closed its end before reading everything
                continue
            except FileNotFoundError:
                break

    def _replace_fifo(self) -> None:
        staging = self._directory / "relay.next"
        os.mkfifo(staging, 0o600)
        os.replace(staging, self.fifo_path)

    def redirect(self, command: str) -> str:
        """Wrap a command so that its stdin is fed from the relay"""
        if self._closed:
            raise RuntimeError("The secret relay has been closed")
        return f"bash -c {shlex.quote(f'{command} < {shlex.quote(str(self.fifo_path))}')}"

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop.set()

        # Opening the read end releases a writer blocked in open()
        for _ in range(CLOSE_ATTEMPTS):
            if not self._writer.is_alive():
                break
            try:
                fd = os.open(self.fifo_path, os.O_RDONLY | os.O_NONBLOCK)
                os.close(fd)
            except FileNotFoundError:
                break
            self._writer.join(CLOSE_JOIN_TIMEOUT)

        shutil.rmtree(self._directory, ignore_errors=True)
        debug("Secret relay closed")

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> SecretRelay:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: TracebackType | None) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"SecretRelay(fifo_path={self.fifo_path!s}, secret={self._secret!r})"
