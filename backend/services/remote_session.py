"""
Reachability probe, authenticated SSH session and OS check for a target host.

The session is built on ``paramiko.Transport`` directly so the negotiated
algorithm lists can be widened with legacy suites still found on cheap VPS
images.
"""

import io
import logging
import socket
from dataclasses import dataclass
from typing import Iterable, List, Sequence

import paramiko

from backend.persistence.models import AuthType
from backend.services.provisioning_errors import (
    AuthenticationFailedError,
    ConnectivityError,
    UnsupportedTargetError,
)
from backend.utils.verbosity_logger import sanitize_log

logger = logging.getLogger(__name__)

LEGACY_KEX = (
    "diffie-hellman-group14-sha1",
    "diffie-hellman-group-exchange-sha1",
    "diffie-hellman-group1-sha1",
)
LEGACY_CIPHERS = ("aes128-cbc", "aes192-cbc", "aes256-cbc", "3des-cbc")
LEGACY_DIGESTS = ("hmac-sha1", "hmac-sha1-96", "hmac-md5", "hmac-md5-96")
LEGACY_KEY_TYPES = ("ssh-rsa", "ssh-dss")

# Key classes tried in order when loading a user supplied private key
KEY_CLASSES = (paramiko.RSAKey, paramiko.ECDSAKey, paramiko.Ed25519Key)

OS_RELEASE_COMMAND = "grep -E '^(ID|VERSION_ID)=' /etc/os-release"


@dataclass
class CommandResult:
    """Exit status and output of one remote command."""

    exit_code: int
    stdout: str
    stderr: str


@dataclass
class OSInfo:
    name: str
    version: str

    def __str__(self):
        return f"{self.name} {self.version}".strip()


def _extend(current: Sequence[str], extra: Iterable[str], known) -> List[str]:
    merged = list(current)
    for name in extra:
        if name not in merged and name in known:
            merged.append(name)
    return merged


def widen_algorithms(transport) -> None:
    """Append legacy kex, cipher, MAC and host key algorithms this paramiko build knows."""
    # pylint: disable=protected-access
    options = transport.get_security_options()
    options.kex = _extend(options.kex, LEGACY_KEX, transport._kex_info)
    options.ciphers = _extend(options.ciphers, LEGACY_CIPHERS, transport._cipher_info)
    options.digests = _extend(options.digests, LEGACY_DIGESTS, transport._mac_info)
    options.key_types = _extend(
        options.key_types, LEGACY_KEY_TYPES, transport._key_info
    )


def load_private_key(key_text: str) -> paramiko.PKey:
    """Parse a PEM/OpenSSH private key, trying each supported key class."""
    last_error = None
    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(key_text.strip() + "\n"))
        except paramiko.PasswordRequiredException as e:
            raise AuthenticationFailedError(
                "Encrypted private keys are not supported; provide an unencrypted key"
            ) from e
        except (paramiko.SSHException, ValueError, IndexError) as e:
            last_error = e
    raise AuthenticationFailedError(
        f"Unable to load SSH private key: {last_error}"
    ) from last_error


def parse_os_release(output: str) -> OSInfo:
    """Extract ID and VERSION_ID from /etc/os-release content."""
    values = {}
    for line in output.splitlines():
        if "=" not in line:
            continue
        key, _, value = line.strip().partition("=")
        values[key] = value.strip().strip("\"'")
    return OSInfo(name=values.get("ID", "").lower(), version=values.get("VERSION_ID", ""))


def is_supported_os(os_info: OSInfo, supported: Iterable[dict]) -> bool:
    for entry in supported:
        name = str(entry.get("name", "")).lower()
        prefix = str(entry.get("version", ""))
        if os_info.name != name:
            continue
        if os_info.version == prefix or os_info.version.startswith(prefix + "."):
            return True
    return False


class RemoteSession:
    """An authenticated SSH transport; closed on every exit path by its owner."""

    def __init__(self, transport, ip: str, port: int):
        self.transport = transport
        self.ip = ip
        self.port = port

    def run(self, command: str, timeout: float) -> CommandResult:
        """
        Execute ``command`` and wait for it to exit.

        Raises socket.timeout if the command does not finish within ``timeout``
        seconds and paramiko.SSHException on channel errors.
        """
        channel = self.transport.open_session(timeout=timeout)
        try:
            channel.settimeout(timeout)
            channel.exec_command(command)
            stdout = channel.makefile("rb").read()
            stderr = channel.makefile_stderr("rb").read()
            exit_code = channel.recv_exit_status()
        finally:
            channel.close()
        return CommandResult(
            exit_code=exit_code,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    def close(self):
        try:
            self.transport.close()
        except (paramiko.SSHException, OSError) as e:
            logger.debug("Error closing SSH session to %s: %s", self.ip, e)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class RemoteSessionProber:
    """TCP probe, SSH authentication and OS allow-list check, in that order."""

    def __init__(
        self,
        install_config=None,
        transport_factory=paramiko.Transport,
        connect=socket.create_connection,
    ):
        install_config = install_config or {}
        self.tcp_timeout = install_config.get("tcp_probe_timeout", 7)
        self.ssh_timeout = install_config.get("ssh_timeout", 15)
        self.os_check_timeout = install_config.get("os_check_timeout", 10)
        self.username = install_config.get("ssh_username", "root")
        self.supported_os = install_config.get("supported_os", [])
        self.transport_factory = transport_factory
        self.connect_socket = connect

    def probe_tcp(self, ip: str, port: int) -> socket.socket:
        try:
            return self.connect_socket((ip, port), timeout=self.tcp_timeout)
        except socket.timeout as e:
            raise ConnectivityError(
                f"Connection to {ip}:{port} timed out. Check that the VPS is online "
                "and the SSH port is open."
            ) from e
        except ConnectionRefusedError as e:
            raise ConnectivityError(
                f"Connection to {ip}:{port} was refused. Check that the SSH service "
                "is running on that port."
            ) from e
        except OSError as e:
            raise ConnectivityError(f"Host {ip}:{port} is unreachable: {e}") from e

    def _authenticate(self, transport, auth_type: str, credential: str):
        if auth_type == AuthType.SSH_KEY:
            transport.auth_publickey(self.username, load_private_key(credential))
            return
        try:
            transport.auth_password(self.username, credential)
        except paramiko.BadAuthenticationType as e:
            if "keyboard-interactive" not in (e.allowed_types or []):
                raise
            transport.auth_interactive(
                self.username, lambda title, instructions, prompts: [credential] * len(prompts)
            )

    def open_session(
        self, ip: str, port: int, auth_type: str, credential: str, sock=None
    ) -> RemoteSession:
        if sock is None:
            sock = self.probe_tcp(ip, port)
        transport = None
        try:
            transport = self.transport_factory(sock)
            transport.banner_timeout = self.ssh_timeout
            transport.auth_timeout = self.ssh_timeout
            widen_algorithms(transport)
            transport.start_client(timeout=self.ssh_timeout)
        except (paramiko.SSHException, EOFError, OSError) as e:
            self._discard(transport, sock)
            raise ConnectivityError(
                f"SSH handshake with {ip}:{port} failed: {e}"
            ) from e
        except Exception:
            self._discard(transport, sock)
            raise

        try:
            self._authenticate(transport, auth_type, credential)
            if not transport.is_authenticated():
                raise AuthenticationFailedError(
                    "SSH authentication failed. Check your credentials."
                )
        except AuthenticationFailedError:
            self._discard(transport, sock)
            raise
        except paramiko.AuthenticationException as e:
            self._discard(transport, sock)
            raise AuthenticationFailedError(
                "SSH authentication failed. Check your credentials."
            ) from e
        except (paramiko.SSHException, EOFError, OSError) as e:
            # Transport dropped mid-authentication
            self._discard(transport, sock)
            raise ConnectivityError(
                f"SSH connection to {ip}:{port} was lost during authentication: {e}"
            ) from e
        except Exception:
            self._discard(transport, sock)
            raise

        host_key = transport.get_remote_server_key()
        logger.info(
            "SSH session established to %s:%s (host key %s)",
            sanitize_log(ip),
            port,
            host_key.get_name() if host_key is not None else "unknown",
        )
        return RemoteSession(transport, ip, port)

    @staticmethod
    def _discard(transport, sock):
        if transport is not None:
            try:
                transport.close()
            except (paramiko.SSHException, OSError):
                pass
        try:
            sock.close()
        except OSError:
            pass

    def check_os(self, session: RemoteSession) -> OSInfo:
        try:
            result = session.run(OS_RELEASE_COMMAND, timeout=self.os_check_timeout)
        except (paramiko.SSHException, socket.timeout, OSError) as e:
            raise UnsupportedTargetError(
                f"Could not determine the operating system of the VPS: {e}"
            ) from e

        os_info = parse_os_release(result.stdout)
        if not os_info.name:
            raise UnsupportedTargetError(
                "Could not determine the operating system of the VPS"
            )
        if not is_supported_os(os_info, self.supported_os):
            supported = ", ".join(
                f"{entry['name'].capitalize()} {entry['version']}"
                for entry in self.supported_os
            )
            raise UnsupportedTargetError(
                f"Unsupported operating system: {os_info}. Supported: {supported}"
            )
        return os_info

    def connect(
        self, ip: str, port: int, auth_type: str, credential: str
    ) -> RemoteSession:
        """
        Run all three checks; the returned session is authenticated on a
        supported OS. The session is closed before any failure propagates.
        """
        session = self.open_session(ip, port, auth_type, credential)
        try:
            os_info = self.check_os(session)
        except Exception:
            session.close()
            raise
        logger.info("Target %s runs %s", sanitize_log(ip), os_info)
        return session
