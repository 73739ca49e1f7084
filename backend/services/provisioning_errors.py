"""
Exceptions raised while provisioning a target host.

Every ``ProvisioningError`` carries a message that is safe to show to the
user; the orchestrator returns it verbatim in its failure result.
"""


class ProvisioningError(Exception):
    """Base class for expected failures of an installation attempt."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConnectivityError(ProvisioningError):
    """The target could not be reached over TCP."""


class AuthenticationFailedError(ProvisioningError):
    """The SSH handshake or authentication failed."""


class UnsupportedTargetError(ProvisioningError):
    """The target runs an operating system outside the allow-list."""


class DispatchError(ProvisioningError):
    """The payload could not be launched on the target."""


class QuotaExhaustedError(ProvisioningError):
    """The user has no install credits left."""


class DuplicateInstallError(ProvisioningError):
    """Another install for the same IP is still in flight."""
