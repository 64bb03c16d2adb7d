"""Error taxonomy for verskit.

Every error names the operation, the target identifier and the
underlying cause, so a failed run can be diagnosed without re-running it.
"""

from __future__ import annotations


class VersError(Exception):
    """Base class for all verskit errors."""

    def __init__(self, operation: str, target: str, cause: str) -> None:
        self.operation = operation
        self.target = target
        self.cause = cause
        super().__init__(f"{operation} failed for {target}: {cause}")


# =============================================================================
# Configuration
# =============================================================================


class ConfigurationError(VersError):
    """Invalid declaration or settings. Raised before any remote call."""


# =============================================================================
# Transport
# =============================================================================


class TransportError(VersError):
    """Remote execution channel failed."""


class CredentialWriteError(TransportError):
    """The ephemeral credential store could not be created."""


class CredentialEraseError(TransportError):
    """The ephemeral credential store could not be erased."""


class Unreachable(TransportError):
    """VM never answered the reachability probe within the bound."""


class CommandTimeout(TransportError):
    """Command exceeded its timeout; the channel was torn down."""

    def __init__(
        self, target: str, command: str, timeout: float, stdout: str = "", stderr: str = ""
    ) -> None:
        self.command = command
        self.timeout = timeout
        self.stdout = stdout
        self.stderr = stderr
        super().__init__("run", target, f"command timed out after {timeout:g}s")


class CommandFailed(TransportError):
    """Command exited non-zero."""

    def __init__(
        self, target: str, command: str, exit_status: int | None, stderr: str, stdout: str = ""
    ) -> None:
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr
        self.stdout = stdout
        detail = stderr.strip()
        cause = f"exit {exit_status}" + (f": {detail}" if detail else "")
        super().__init__("run", target, cause)


class WriteFailed(TransportError):
    """Creating the parent directory or writing the file failed."""


class LocalReadError(TransportError):
    """Local source file could not be read."""


# =============================================================================
# Lifecycle
# =============================================================================


class LifecycleError(VersError):
    """VM-lifecycle operation failed."""


class VersAPIError(LifecycleError):
    """Vers API returned an error or an unexpected payload."""

    def __init__(self, method: str, path: str, status: int, body: str) -> None:
        self.method = method
        self.path = path
        self.status = status
        self.body = body
        super().__init__(f"{method} {path}", path, f"HTTP {status}: {body}")


class BootTimeout(LifecycleError):
    """VM did not reach the running state within the bound."""


# =============================================================================
# Consistency
# =============================================================================


class ResourceGone(VersError):
    """VM no longer exists remotely; drop local records of it."""


# =============================================================================
# Provisioning
# =============================================================================


class ProvisioningError(VersError):
    """A step of a provisioning run failed. Earlier steps are not rolled back."""


class FileStepFailed(ProvisioningError):
    """Uploading or writing a declared file failed."""

    def __init__(self, vm_id: str, index: int, destination: str, cause: TransportError) -> None:
        self.index = index
        self.destination = destination
        super().__init__(
            "provision", vm_id, f"file {index} -> {destination}: {cause.cause}"
        )


class CommandStepFailed(ProvisioningError):
    """A declared command failed; later commands were not run."""

    def __init__(self, vm_id: str, position: int, command: str, output: str, cause: str) -> None:
        self.position = position
        self.command = command
        self.output = output
        super().__init__(
            "provision",
            vm_id,
            f"command {position} failed: {command}\nError: {cause}\nOutput: {output}",
        )


class LineageError(VersError):
    """Lineage graph would be violated (duplicate node)."""
