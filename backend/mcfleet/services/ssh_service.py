import io
import logging
import socket
import time
from typing import NamedTuple

import paramiko

from mcfleet.core.exceptions import CommandTimeout
from mcfleet.schemas.host import SSHCredentials

logger = logging.getLogger(__name__)

_READ_CHUNK = 32768
_POLL_INTERVAL = 0.05


class CommandResult(NamedTuple):
    stdout: str
    stderr: str
    exit_code: int


class SSHService:
    """Wrapper around paramiko.SSHClient for one authenticated session.

    Blocking by nature; the connection pool drives it from worker threads.
    Each ``execute`` call opens its own exec channel on the shared transport,
    so several commands can be in flight on one session.
    """

    def __init__(self, credentials: SSHCredentials, connect_timeout: float = 15.0):
        self.host = credentials.host
        self.port = credentials.port
        self.username = credentials.username
        self.private_key_pem = credentials.private_key
        self.password = credentials.password
        self.connect_timeout = connect_timeout
        self._client: paramiko.SSHClient | None = None

    def connect(self) -> None:
        """Establish the SSH connection; key auth is preferred over password."""
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        kwargs = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": self.connect_timeout,
            "banner_timeout": self.connect_timeout,
            "auth_timeout": self.connect_timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if self.private_key_pem:
            kwargs["pkey"] = self._parse_private_key(self.private_key_pem)
        else:
            kwargs["password"] = self.password

        try:
            client.connect(**kwargs)
        except Exception:
            client.close()
            raise
        transport = client.get_transport()
        if transport is not None:
            transport.set_keepalive(30)
        self._client = client
        logger.debug("SSH connection established to %s:%d", self.host, self.port)

    @staticmethod
    def _parse_private_key(pem: str) -> paramiko.PKey:
        """Parse a PEM-encoded private key, trying multiple key types."""
        key_file = io.StringIO(pem)
        key_classes = [
            paramiko.RSAKey,
            paramiko.Ed25519Key,
            paramiko.ECDSAKey,
        ]
        last_error = None
        for key_class in key_classes:
            try:
                key_file.seek(0)
                return key_class.from_private_key(key_file)
            except (paramiko.SSHException, ValueError) as e:
                last_error = e
                continue
        raise paramiko.SSHException(f"Unable to parse private key: {last_error}")

    @property
    def is_active(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def _transport(self) -> paramiko.Transport:
        if self._client is None:
            raise RuntimeError("SSH client is not connected. Call connect() first.")
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise paramiko.SSHException("SSH transport is no longer active")
        return transport

    def execute(self, command: str, timeout: float = 30, stdin: bytes | None = None) -> CommandResult:
        """Execute a command in a fresh exec channel, bounded by ``timeout``.

        ``stdin`` is written to the channel and then closed, which keeps large
        payloads out of the command line. On timeout only the channel is
        closed; the session stays usable.
        """
        channel = self._transport().open_session(timeout=timeout)
        deadline = time.monotonic() + timeout
        stdout: list[bytes] = []
        stderr: list[bytes] = []
        try:
            channel.settimeout(timeout)
            channel.exec_command(command)
            if stdin is not None:
                channel.sendall(stdin)
                channel.shutdown_write()
            # Drain both streams while waiting so a chatty command cannot
            # block on a full window before reporting its exit status.
            while True:
                if time.monotonic() >= deadline:
                    raise CommandTimeout(command, timeout)
                if channel.recv_ready():
                    stdout.append(channel.recv(_READ_CHUNK))
                    continue
                if channel.recv_stderr_ready():
                    stderr.append(channel.recv_stderr(_READ_CHUNK))
                    continue
                if channel.exit_status_ready() and channel.eof_received:
                    break
                time.sleep(_POLL_INTERVAL)
            exit_code = channel.recv_exit_status()
        except socket.timeout as e:
            raise CommandTimeout(command, timeout) from e
        finally:
            channel.close()

        return CommandResult(
            b"".join(stdout).decode("utf-8", errors="replace").strip(),
            b"".join(stderr).decode("utf-8", errors="replace").strip(),
            exit_code,
        )

    def download_file(self, remote_path: str, local_path: str) -> None:
        """Download a file from the remote server via SFTP."""
        sftp = paramiko.SFTPClient.from_transport(self._transport())
        try:
            logger.info("SFTP download: %s -> %s", remote_path, local_path)
            sftp.get(remote_path, local_path)
        finally:
            sftp.close()

    def upload_file(self, local_path: str, remote_path: str) -> None:
        """Upload a local file to the remote server via SFTP."""
        sftp = paramiko.SFTPClient.from_transport(self._transport())
        try:
            logger.info("SFTP upload: %s -> %s", local_path, remote_path)
            sftp.put(local_path, remote_path)
        finally:
            sftp.close()

    def close(self) -> None:
        """Close the SSH connection."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "SSHService":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def friendly_ssh_error(exc: Exception) -> str:
    """Convert raw SSH/network exceptions into user-readable messages."""
    msg = str(exc).lower()
    if isinstance(exc, paramiko.AuthenticationException):
        return (
            "SSH authentication failed. "
            "Make sure the public key is in ~/.ssh/authorized_keys or the password is correct."
        )
    if isinstance(exc, paramiko.BadHostKeyException) or "host key" in msg:
        return "Host key verification failed. The server's host key may have changed."
    if "connection refused" in msg:
        return (
            "Connection refused. "
            "Check that SSH is running on the server and the port number is correct."
        )
    if isinstance(exc, (socket.timeout, TimeoutError)) or "timed out" in msg or "timeout" in msg:
        return (
            "Connection timed out. "
            "The server may be unreachable or the port may be blocked by a firewall."
        )
    if (
        "name or service not known" in msg
        or "nodename nor servname" in msg
        or "no address associated" in msg
        or "getaddrinfo failed" in msg
    ):
        return "Hostname not found. Check the server hostname or IP address."
    if "no route to host" in msg or "network is unreachable" in msg:
        return (
            "Cannot reach the server. "
            "Check the IP address and ensure the firewall allows SSH traffic."
        )
    if "unable to parse private key" in msg or "invalid key" in msg or "not a valid" in msg:
        return (
            "Invalid SSH private key. "
            "Regenerate the key pair and re-add the public key to the server."
        )
    return str(exc) or exc.__class__.__name__
