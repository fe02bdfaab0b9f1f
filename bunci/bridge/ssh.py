"""SSH bridge — password-authenticated remote shell into a guest VM.

All in-VM work goes through ``RemoteShell``: command execution, file
transfer (a tar stream piped into ``tar -x`` over the same channel) and
shutdown. ``ParamikoShell`` is the production implementation.
"""

from __future__ import annotations

import codecs
import io
import logging
import shlex
import socket
import tarfile
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable

import paramiko
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 32768
_POLL_INTERVAL = 0.05

# Receives ("stdout" | "stderr", text) as guest output arrives.
OutputCallback = Callable[[str, str], None]


class ExecResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteShellError(RuntimeError):
    """Raised when the shell channel itself fails (not the remote command)."""


@runtime_checkable
class RemoteShell(Protocol):
    """Protocol for guest shell access."""

    def exec(
        self,
        command: str,
        *,
        stdin: bytes | None = None,
        timeout: float | None = None,
        on_data: OutputCallback | None = None,
    ) -> ExecResult: ...

    def put_archive(self, files: Mapping[str, Path], remote_dir: str) -> None:
        """Copy host files into *remote_dir*; keys are names inside the archive."""
        ...

    def close(self) -> None: ...


ShellFactory = Callable[[str], RemoteShell]


def _decoder() -> codecs.IncrementalDecoder:
    return codecs.getincrementaldecoder("utf-8")(errors="replace")


def build_tar_stream(files: Mapping[str, Path]) -> bytes:
    """Pack *files* into an in-memory tar archive, preserving modes."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for arcname, path in sorted(files.items()):
            archive.add(str(path), arcname=arcname)
    return buffer.getvalue()


class ParamikoShell:
    """``RemoteShell`` over a paramiko SSH connection.

    Parameters
    ----------
    host:
        Guest address.
    username / password:
        Fixed guest account; the images use ``admin``/``admin``.
    connect_timeout:
        TCP and authentication timeout for the initial connection.
    port:
        SSH port on the guest.
    """

    def __init__(
        self,
        host: str,
        username: str = "admin",
        password: str = "admin",
        *,
        connect_timeout: float = 10.0,
        port: int = 22,
    ) -> None:
        self.host = host
        self._client = paramiko.SSHClient()
        # Guests are recreated constantly; their host keys are never stable.
        self._client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            self._client.connect(
                host,
                port=port,
                username=username,
                password=password,
                timeout=connect_timeout,
                auth_timeout=connect_timeout,
                banner_timeout=connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except (paramiko.SSHException, socket.error) as exc:
            self._client.close()
            raise RemoteShellError(f"SSH to {username}@{host} failed: {exc}") from exc
        transport = self._client.get_transport()
        if transport is not None:
            transport.set_keepalive(5)

    def exec(
        self,
        command: str,
        *,
        stdin: bytes | None = None,
        timeout: float | None = None,
        on_data: OutputCallback | None = None,
    ) -> ExecResult:
        """Run *command* and collect both output streams.

        stdout and stderr are drained together: a stream left unread fills
        the channel window and stalls the guest process. Each decoded chunk
        is passed to *on_data* as it arrives. *timeout* bounds the whole
        command, not individual reads.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            _chan_in, chan_out, _chan_err = self._client.exec_command(command)
            channel = chan_out.channel
            try:
                if stdin is not None:
                    channel.sendall(stdin)
                    channel.shutdown_write()
                stdout, stderr = self._drain(channel, deadline, on_data)
                code = channel.recv_exit_status()
            finally:
                channel.close()
        except (paramiko.SSHException, socket.error) as exc:
            raise RemoteShellError(f"Command failed on {self.host}: {exc}") from exc
        return ExecResult(exit_code=code, stdout=stdout, stderr=stderr)

    def _drain(
        self,
        channel: paramiko.Channel,
        deadline: float | None,
        on_data: OutputCallback | None,
    ) -> tuple[str, str]:
        streams = {
            "stdout": (channel.recv_ready, channel.recv, _decoder(), []),
            "stderr": (channel.recv_stderr_ready, channel.recv_stderr, _decoder(), []),
        }
        while True:
            idle = True
            for name, (ready, recv, decoder, parts) in streams.items():
                if not ready():
                    continue
                idle = False
                text = decoder.decode(recv(_CHUNK_SIZE))
                if text:
                    parts.append(text)
                    if on_data is not None:
                        on_data(name, text)
            if not idle:
                continue
            if (channel.eof_received or channel.closed) and channel.exit_status_ready():
                break
            if channel.closed:
                raise RemoteShellError(
                    f"Channel to {self.host} closed without an exit status"
                )
            if deadline is not None and time.monotonic() > deadline:
                raise RemoteShellError(f"Command timed out on {self.host}")
            time.sleep(_POLL_INTERVAL)
        return tuple(
            "".join(parts) + decoder.decode(b"", final=True)
            for _ready, _recv, decoder, parts in streams.values()
        )

    def put_archive(self, files: Mapping[str, Path], remote_dir: str) -> None:
        payload = build_tar_stream(files)
        target = shlex.quote(remote_dir)
        result = self.exec(f"mkdir -p {target} && tar -xf - -C {target}", stdin=payload)
        if not result.ok:
            raise RemoteShellError(
                f"Archive extraction into {remote_dir} failed: {result.stderr.strip()}"
            )
        logger.debug("Copied %d file(s) to %s:%s.", len(files), self.host, remote_dir)

    def close(self) -> None:
        self._client.close()


def paramiko_shell_factory(
    username: str,
    password: str,
    connect_timeout: float = 10.0,
) -> ShellFactory:
    """Return a factory that opens a ``ParamikoShell`` to a given address."""

    def _factory(host: str) -> RemoteShell:
        return ParamikoShell(
            host, username, password, connect_timeout=connect_timeout
        )

    return _factory
