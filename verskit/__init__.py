"""verskit - provision and snapshot Vers VMs.

Example:

    from verskit import (
        LineageGraph, Provisioner, ProvisionSpec, SnapshotCoordinator,
        VersClient, VMConfig, file_spec,
    )

    async with VersClient() as client:
        vm_id = await client.create_vm(VMConfig(vcpu_count=2), wait_boot=True)

        await Provisioner(client).provision(ProvisionSpec(
            vm_id,
            files=(file_spec("/tmp/a.sh", content="echo hi"),),
            commands=("chmod +x /tmp/a.sh", "/tmp/a.sh"),
        ))

        lineage = SnapshotCoordinator(client, graph=LineageGraph())
        image = (await lineage.commit(vm_id, keep_paused=True)).value
        worker = (await lineage.restore(image.id)).value
"""

# Logging (disables itself until setup_logging is called)
from verskit.logging import LogConfig, setup_logging, teardown_logging

# Settings
from verskit.config import Vers, load_config, resolve_settings

# Errors
from verskit.exceptions import (
    BootTimeout,
    CommandFailed,
    CommandStepFailed,
    CommandTimeout,
    ConfigurationError,
    CredentialEraseError,
    CredentialWriteError,
    FileStepFailed,
    LifecycleError,
    LineageError,
    LocalReadError,
    ProvisioningError,
    ResourceGone,
    TransportError,
    Unreachable,
    VersAPIError,
    VersError,
    WriteFailed,
)

# Model
from verskit.model import (
    VM,
    Advisory,
    BranchedFrom,
    Fresh,
    Image,
    Outcome,
    RestoredFrom,
    SSHCredentials,
    VMConfig,
)

# Engine
from verskit.client import VersClient
from verskit.lineage import LineageGraph, SnapshotCoordinator
from verskit.provision import (
    InlineContent,
    LocalFile,
    Provisioner,
    ProvisionResult,
    ProvisionSpec,
    file_spec,
    fingerprint,
)
from verskit.wait import wait_for_running

__all__ = [
    # Logging
    "LogConfig",
    "setup_logging",
    "teardown_logging",
    # Settings
    "Vers",
    "load_config",
    "resolve_settings",
    # Errors
    "VersError",
    "ConfigurationError",
    "TransportError",
    "CredentialWriteError",
    "CredentialEraseError",
    "Unreachable",
    "CommandTimeout",
    "CommandFailed",
    "WriteFailed",
    "LocalReadError",
    "LifecycleError",
    "VersAPIError",
    "BootTimeout",
    "ResourceGone",
    "ProvisioningError",
    "FileStepFailed",
    "CommandStepFailed",
    "LineageError",
    # Model
    "VM",
    "Image",
    "Fresh",
    "RestoredFrom",
    "BranchedFrom",
    "VMConfig",
    "SSHCredentials",
    "Advisory",
    "Outcome",
    # Engine
    "VersClient",
    "Provisioner",
    "ProvisionSpec",
    "ProvisionResult",
    "LocalFile",
    "InlineContent",
    "file_spec",
    "fingerprint",
    "SnapshotCoordinator",
    "LineageGraph",
    "wait_for_running",
]
