"""Connection layer for provisor.

A Connection is one authenticated channel to a target host. It is owned by
a single execution engine for the length of a run and offers exactly three
remote operations:

- ``execute(command, become_user=None)`` -> CommandResult
- ``put_file(data, remote_path, owner, group, mode)``
- ``fetch_file(remote_path)`` -> bytes

Transport failures are raised as ``ConnectionError`` (transient, retried by
the engine) or ``AuthError`` (fatal). Two implementations exist:
``SSHConnection`` over asyncssh, which multiplexes command channels and a
reused SFTP session over one SSH connection, and ``LocalConnection`` for
``ansible_connection: local`` hosts.
"""

import asyncio
import base64
import logging
import os
import shlex
import tempfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, TypeVar

import asyncssh

from .exceptions import ApplyError, AuthError, ConnectionError, TransientError
from .logging import TRACE
from .retry import (
    RetryConfig,
    backoff,
    classify_error_message,
    classify_exception,
    is_transient_error,
)
from .types import BecomeSpec, CommandResult, HostConfig

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 300.0

T = TypeVar("T")


def become_command(command: str, user: str | None) -> str:
    """Wrap ``command`` so it runs as ``user`` through non-interactive sudo."""
    if not user:
        return command
    return f"sudo -n -H -u {shlex.quote(user)} -- sh -c {shlex.quote(command)}"


def install_command(
    source: str,
    dest: str,
    owner: str | None = None,
    group: str | None = None,
    mode: str | int | None = None,
) -> str:
    """Build the ``install`` call that moves an uploaded file into place.

    ``install`` sets owner, group and mode on the destination in one step,
    so the final file never exists with looser permissions than requested.
    """
    parts = ["install"]
    if mode is not None:
        parts += ["-m", format_mode(mode)]
    if owner:
        parts += ["-o", owner]
    if group:
        parts += ["-g", group]
    parts += [source, dest]
    return " ".join(shlex.quote(p) for p in parts) + f" && rm -f {shlex.quote(source)}"


def format_mode(mode: str | int) -> str:
    """Normalise a file mode to a four-digit octal string."""
    if isinstance(mode, int):
        return f"{mode:04o}"
    return f"{int(str(mode), 8):04o}"


class Connection(ABC):
    """Base class for host connections.

    Subclasses implement the transport primitives (``_run``, ``_upload``,
    ``_download``); the base class layers privilege escalation, atomic file
    placement and error mapping on top of them.
    """

    def __init__(self, name: str, command_timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
        self.name = name
        self.command_timeout = command_timeout
        self.default_become: str | None = None

    async def open(self) -> None:
        """Establish the transport. Idempotent."""

    async def close(self) -> None:
        """Release the transport. Idempotent."""

    async def __aenter__(self) -> "Connection":
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def with_become(self, become: BecomeSpec | None) -> "Connection":
        """Return a view of this connection that escalates to ``become.user``."""
        if become is None:
            return self
        return BecomeConnection(self, become)

    async def execute(
        self,
        command: str,
        become_user: str | None = None,
        timeout: float | None = None,
        stdin: str = "",
    ) -> CommandResult:
        """Run a shell command on the host.

        Args:
            command: Shell command line
            become_user: Run the command as this user via sudo
            timeout: Seconds before the command is abandoned
            stdin: Text fed to the command's standard input

        Raises:
            ConnectionError: On timeout or a dropped transport
            AuthError: When the transport rejects our credentials
        """
        user = become_user or self.default_become
        full_command = become_command(command, user)
        logger.log(TRACE, f"[{self.name}] $ {full_command}")
        try:
            stdout, stderr, exit_code = await asyncio.wait_for(
                self._guarded(self._run(full_command, stdin)),
                timeout=timeout or self.command_timeout,
            )
        except asyncio.TimeoutError:
            raise ConnectionError(
                f"Command timed out after {timeout or self.command_timeout:.0f}s: {command[:80]}",
                host=self.name,
            ) from None
        logger.log(TRACE, f"[{self.name}] rc={exit_code} stdout={len(stdout)}B stderr={len(stderr)}B")
        return CommandResult(command=command, stdout=stdout, stderr=stderr, exit_code=exit_code)

    async def put_file(
        self,
        data: bytes,
        remote_path: str,
        owner: str | None = None,
        mode: str | int | None = None,
        group: str | None = None,
        become_user: str | None = None,
    ) -> None:
        """Write ``data`` to ``remote_path`` with the given ownership and mode.

        The content is staged in a private temporary file (mode 0600) and then
        moved into place with ``install``, so readers never observe a partial
        file or one with default permissions.
        """
        staging = await self._guarded(self._upload(data))
        result = await self.execute(
            install_command(staging, remote_path, owner, group, mode),
            become_user=become_user,
        )
        if not result.ok:
            await self.execute(f"rm -f {shlex.quote(staging)}")
            raise command_failure(f"Failed to place {remote_path}", result)

    async def fetch_file(self, remote_path: str, become_user: str | None = None) -> bytes:
        """Read a file from the host.

        Raises:
            FileNotFoundError: If the file does not exist
        """
        user = become_user or self.default_become
        if not user:
            return await self._guarded(self._download(remote_path))

        quoted = shlex.quote(remote_path)
        result = await self.execute(
            f"test -e {quoted} || exit 44; base64 {quoted}", become_user=user
        )
        if result.exit_code == 44:
            raise FileNotFoundError(remote_path)
        if not result.ok:
            raise command_failure(f"Failed to read {remote_path}", result)
        return base64.b64decode(result.stdout)

    async def _guarded(self, operation: Awaitable[T]) -> T:
        """Await a transport primitive, raising its failures as provisor errors."""
        try:
            return await operation
        except (AuthError, ConnectionError, FileNotFoundError):
            raise
        except Exception as e:
            error = _map_transport_error(e, self.name)
            if error is e:
                raise
            raise error from e

    @abstractmethod
    async def _run(self, command: str, stdin: str) -> tuple[str, str, int]:
        """Run a fully prepared command line and return (stdout, stderr, rc)."""

    @abstractmethod
    async def _upload(self, data: bytes) -> str:
        """Stage ``data`` in a private temporary file and return its path."""

    @abstractmethod
    async def _download(self, remote_path: str) -> bytes:
        """Read a file as the connecting user."""


class BecomeConnection(Connection):
    """A view over another connection that runs everything as another user."""

    def __init__(self, inner: Connection, become: BecomeSpec) -> None:
        super().__init__(inner.name, inner.command_timeout)
        self.inner = inner
        self.become = become
        self.default_become = become.user

    async def execute(
        self,
        command: str,
        become_user: str | None = None,
        timeout: float | None = None,
        stdin: str = "",
    ) -> CommandResult:
        return await self.inner.execute(
            command, become_user=become_user or self.become.user, timeout=timeout, stdin=stdin
        )

    async def put_file(
        self,
        data: bytes,
        remote_path: str,
        owner: str | None = None,
        mode: str | int | None = None,
        group: str | None = None,
        become_user: str | None = None,
    ) -> None:
        await self.inner.put_file(
            data, remote_path, owner=owner, mode=mode, group=group,
            become_user=become_user or self.become.user,
        )

    async def fetch_file(self, remote_path: str, become_user: str | None = None) -> bytes:
        return await self.inner.fetch_file(remote_path, become_user=become_user or self.become.user)

    async def _run(self, command: str, stdin: str) -> tuple[str, str, int]:
        return await self.inner._run(command, stdin)

    async def _upload(self, data: bytes) -> str:
        return await self.inner._upload(data)

    async def _download(self, remote_path: str) -> bytes:
        return await self.inner._download(remote_path)


@dataclass
class SSHConfig:
    """SSH connection configuration.

    Attributes:
        hostname: Remote hostname or IP
        port: SSH port
        username: SSH username
        password: Password for authentication (optional)
        client_keys: Private key paths (optional)
        known_hosts: Known hosts file; None disables host key checking,
            the empty tuple uses asyncssh's default
        connect_timeout: Connection timeout in seconds
        keepalive_interval: Keepalive interval (0 to disable)
    """

    hostname: str
    port: int = 22
    username: str | None = None
    password: str | None = None
    client_keys: list[str] | None = None
    known_hosts: Any = ()
    connect_timeout: float = 30.0
    keepalive_interval: float = 30.0

    def to_asyncssh_options(self) -> dict[str, Any]:
        """Convert to asyncssh.connect() kwargs."""
        options: dict[str, Any] = {
            "host": self.hostname,
            "port": self.port,
            "connect_timeout": self.connect_timeout,
            "keepalive_interval": self.keepalive_interval,
        }
        if self.username:
            options["username"] = self.username
        if self.password:
            options["password"] = self.password
        if self.client_keys:
            options["client_keys"] = self.client_keys
        if self.known_hosts is None:
            options["known_hosts"] = None
        elif self.known_hosts != ():
            options["known_hosts"] = self.known_hosts
        return options


class SSHConnection(Connection):
    """Connection to a remote host over asyncssh.

    Example:
        conn = SSHConnection(SSHConfig("server.example.com", username="deploy"))
        async with conn:
            result = await conn.execute("uptime")
    """

    def __init__(
        self,
        config: SSHConfig,
        name: str | None = None,
        connect_retry: RetryConfig | None = None,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        super().__init__(name or config.hostname, command_timeout)
        self.config = config
        self.connect_retry = connect_retry or RetryConfig(max_retries=2, initial_delay=2.0)
        self._conn: asyncssh.SSHClientConnection | None = None
        self._sftp: asyncssh.SFTPClient | None = None
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        await self._connection()

    async def _connection(self) -> asyncssh.SSHClientConnection:
        """Return the live SSH connection, connecting with retries if needed."""
        async with self._lock:
            if self._conn is not None and not self._conn.is_closed():
                return self._conn

            attempts = self.connect_retry.max_retries + 1
            for attempt in range(1, attempts + 1):
                try:
                    logger.debug(f"Connecting to {self.config.hostname}:{self.config.port}")
                    self._conn = await asyncssh.connect(**self.config.to_asyncssh_options())
                    logger.info(f"Connected to {self.config.hostname}")
                    return self._conn
                except Exception as e:
                    error = _map_transport_error(e, self.name)
                    if error is e:
                        raise
                    if isinstance(error, AuthError) or attempt == attempts:
                        raise error from e
                    await backoff(self.connect_retry, attempt, f"connect {self.name}")
            raise ConnectionError(f"Unable to connect to {self.name}", host=self.name)

    async def close(self) -> None:
        async with self._lock:
            if self._sftp is not None:
                self._sftp.exit()
                self._sftp = None
            if self._conn is not None and not self._conn.is_closed():
                self._conn.close()
                await self._conn.wait_closed()
                logger.debug(f"Disconnected from {self.config.hostname}")
            self._conn = None

    async def _sftp_client(self) -> asyncssh.SFTPClient:
        if self._sftp is None:
            conn = await self._connection()
            self._sftp = await conn.start_sftp_client()
        return self._sftp

    async def _run(self, command: str, stdin: str) -> tuple[str, str, int]:
        conn = await self._connection()
        result = await conn.run(command, input=stdin or None, check=False)
        exit_status = result.exit_status if result.exit_status is not None else -1
        return str(result.stdout or ""), str(result.stderr or ""), exit_status

    async def _upload(self, data: bytes) -> str:
        staging = f"/tmp/.provisor-{uuid.uuid4().hex}"
        sftp = await self._sftp_client()
        async with sftp.open(staging, "wb", asyncssh.SFTPAttrs(permissions=0o600)) as f:
            await f.write(data)
        logger.log(TRACE, f"[{self.name}] staged {len(data)}B at {staging}")
        return staging

    async def _download(self, remote_path: str) -> bytes:
        sftp = await self._sftp_client()
        try:
            async with sftp.open(remote_path, "rb") as f:
                return await f.read()
        except asyncssh.SFTPNoSuchFile:
            raise FileNotFoundError(remote_path) from None


class LocalConnection(Connection):
    """Connection that executes on the machine running provisor."""

    def __init__(self, name: str = "localhost", command_timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
        super().__init__(name, command_timeout)

    async def _run(self, command: str, stdin: str) -> tuple[str, str, int]:
        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await process.communicate(stdin.encode() if stdin else None)
        except asyncio.CancelledError:
            process.kill()
            raise
        return stdout.decode(errors="replace"), stderr.decode(errors="replace"), process.returncode if process.returncode is not None else -1

    async def _upload(self, data: bytes) -> str:
        fd, staging = tempfile.mkstemp(prefix=".provisor-")
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        return staging

    async def _download(self, remote_path: str) -> bytes:
        return Path(remote_path).read_bytes()


def connection_for_host(
    host: HostConfig,
    connect_timeout: float = 30.0,
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    known_hosts: Any = (),
    connect_retry: RetryConfig | None = None,
) -> Connection:
    """Create the right Connection for a host's ``ansible_connection``."""
    if host.is_local:
        return LocalConnection(host.name, command_timeout=command_timeout)
    if host.ansible_connection != "ssh":
        raise ValueError(f"Unsupported connection type '{host.ansible_connection}' for {host.name}")

    key_file = host.get_var("ansible_ssh_private_key_file") or host.get_var("ssh_private_key_file")
    config = SSHConfig(
        hostname=host.ansible_host,
        port=int(host.ansible_port),
        username=host.ansible_user or None,
        password=host.get_var("ansible_password"),
        client_keys=[os.path.expanduser(key_file)] if key_file else None,
        known_hosts=known_hosts,
        connect_timeout=connect_timeout,
    )
    return SSHConnection(
        config, name=host.name, connect_retry=connect_retry, command_timeout=command_timeout
    )


def _map_transport_error(exc: BaseException, host: str) -> Exception:
    """Translate asyncssh/OS errors into AuthError or ConnectionError.

    Missing files and local permission errors are returned unchanged; SFTP
    status errors are permanent ApplyErrors.
    """
    if isinstance(exc, (AuthError, ConnectionError)):
        return exc
    if isinstance(exc, (FileNotFoundError, PermissionError)):
        return exc
    if isinstance(exc, (asyncssh.PermissionDenied, asyncssh.HostKeyNotVerifiable)):
        return AuthError(f"Authentication to {host} failed: {exc}", host=host)
    if isinstance(exc, asyncssh.SFTPError):
        return ApplyError(f"SFTP operation on {host} failed: {exc}", host=host)
    error_type = classify_exception(exc)
    if isinstance(exc, (OSError, asyncssh.Error, asyncio.TimeoutError)) or is_transient_error(error_type):
        return ConnectionError(f"Connection to {host} failed: {exc}", host=host)
    return exc


def command_failure(message: str, result: CommandResult) -> Exception:
    """Build the error for a failed helper command, keeping transient hints."""
    stderr = result.stderr.strip()
    full = f"{message}: {stderr or result.stdout.strip() or f'exit {result.exit_code}'}"
    if is_transient_error(classify_error_message(stderr)):
        return TransientError(full)
    return ApplyError(full, exit_code=result.exit_code)
