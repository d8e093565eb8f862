"""VM lifecycle orchestration: first-time setup, post-reboot recreation and purge."""

from __future__ import annotations

import json
import shutil
from typing import Dict, Mapping, Optional

from vmhost.cloudinit import CloudInit
from vmhost.config import load_manifest_volumes
from vmhost.constants import UMOUNT_ABSENT_RE, USER_ABSENT_RE, USER_EXISTS_RE
from vmhost.exceptions import CommandFailed, ParameterError, VmSetupError
from vmhost.executor import CommandExecutor
from vmhost.models import KeyWrappingSecret, VmParams, validate_vm_name
from vmhost.network import NetworkConfigurator
from vmhost.paths import VmPath
from vmhost.storage import StorageVolumeManager, remove_path
from vmhost.systemd import render_dnsmasq_unit, render_vm_unit
from vmhost.utils import ensure_directory, log

Secrets = Mapping[str, KeyWrappingSecret]


class VmSetup:
    """Drives the networking, storage and bootstrap components for one VM."""

    def __init__(
        self,
        vm_name: str,
        executor: Optional[CommandExecutor] = None,
        vp: Optional[VmPath] = None,
        storage: Optional[StorageVolumeManager] = None,
        network: Optional[NetworkConfigurator] = None,
        cloudinit: Optional[CloudInit] = None,
    ) -> None:
        self.vm_name = validate_vm_name(vm_name)
        self.executor = executor or CommandExecutor()
        self.vp = vp or VmPath(vm_name)
        self.storage = storage or StorageVolumeManager(vm_name, self.executor, self.vp)
        self.network = network or NetworkConfigurator(vm_name, self.executor, self.vp)
        self.cloudinit = cloudinit or CloudInit(vm_name, self.executor, self.vp)

    def r(self, *cmd: str) -> str:
        return self.executor.run(list(cmd))

    def _check_params(self, params: VmParams) -> None:
        if params.vm_name != self.vm_name:
            raise ParameterError(f"Parameters describe VM '{params.vm_name}', not '{self.vm_name}'")

    # Lifecycle

    def setup(self, params: VmParams, secrets: Optional[Secrets] = None) -> None:
        """Prepare a brand-new VM. The first failure aborts; nothing is rolled back."""
        self._check_params(params)
        secrets = secrets or {}
        log("INFO", f"Setting up VM {self.vm_name}")
        self.create_user()
        self.write_manifest(params)
        self.network.setup_networking(False, params.network)
        self.cloudinit.generate(
            params.unix_user, params.ssh_public_key, params.network.gua, params.network.nics
        )
        for volume in sorted(params.storage_volumes, key=lambda v: v.disk_index):
            self.storage.setup_volume(volume, params.boot_image, secrets.get(volume.device_id))
        self.hugepages(params.mem_gib)
        self.install_systemd_units(params)
        log("SUCCESS", f"VM {self.vm_name} is ready to start")

    def recreate_unpersisted(self, params: VmParams, secrets: Optional[Secrets] = None) -> None:
        """Rebuild the state a host reboot wipes out: namespace, hugepages, SPDK bdevs and vhost."""
        self._check_params(params)
        secrets = secrets or {}
        log("INFO", f"Recreating unpersisted state of VM {self.vm_name}")
        self.network.setup_networking(True, params.network)
        self.hugepages(params.mem_gib)
        for volume in sorted(params.storage_volumes, key=lambda v: v.disk_index):
            self.storage.recreate_volume(volume, secrets.get(volume.device_id))
        log("SUCCESS", f"VM {self.vm_name} state recreated")

    def purge(self) -> None:
        """Remove every trace of the VM, tolerating resources that are already gone.

        Storage teardown failures are raised only after the remaining steps ran.
        """
        log("INFO", f"Purging VM {self.vm_name}")
        self.network.delete_namespace()
        self.remove_systemd_units()

        storage_error: Optional[VmSetupError] = None
        try:
            volumes = load_manifest_volumes(self.vp)
        except VmSetupError as exc:
            log("WARN", f"Unreadable manifest {self.vp.prep_json}: {exc}; removing the storage tree only")
            storage_error = exc
            volumes = []
        if volumes is None:
            log("WARN", f"No manifest at {self.vp.prep_json}; no storage volumes to tear down")
            volumes = []
        try:
            self.storage.purge_storage(volumes)
        except VmSetupError as exc:
            log("WARN", f"Storage teardown of {self.vm_name} failed: {exc}")
            storage_error = storage_error or exc

        self.unmount_hugepages()
        self.delete_user()
        remove_path(self.vp.home)

        if storage_error is not None:
            raise storage_error
        log("SUCCESS", f"VM {self.vm_name} purged")

    # Steps

    def create_user(self) -> None:
        try:
            self.r("adduser", "--disabled-password", "--gecos", "", "--home", str(self.vp.home), self.vm_name)
        except CommandFailed as exc:
            if not exc.stderr_matches(USER_EXISTS_RE):
                raise
            log("DEBUG", f"User {self.vm_name} already exists")

    def delete_user(self) -> None:
        try:
            self.r("deluser", "--remove-home", self.vm_name)
        except CommandFailed as exc:
            if not exc.stderr_matches(USER_ABSENT_RE):
                raise
            log("DEBUG", f"User {self.vm_name} already absent")

    def write_manifest(self, params: VmParams) -> None:
        self.vp.write_prep_json(json.dumps(params.to_dict(), indent=2) + "\n")

    def hugepages(self, mem_gib: int) -> None:
        path = self.vp.hugepages
        ensure_directory(path)
        shutil.chown(path, self.vm_name, self.vm_name)
        self.r("mount", "-t", "hugetlbfs", "-o", f"uid={self.vm_name},size={mem_gib}G", "nodev", str(path))

    def unmount_hugepages(self) -> None:
        try:
            self.r("umount", str(self.vp.hugepages))
        except CommandFailed as exc:
            if not exc.stderr_matches(UMOUNT_ABSENT_RE):
                raise
            log("DEBUG", f"{self.vp.hugepages} not mounted")

    def install_systemd_units(self, params: VmParams) -> None:
        self.vp.write_dnsmasq_service(render_dnsmasq_unit(self.vp))
        self.vp.write_systemd_service(render_vm_unit(self.vp, params))
        self.r("systemctl", "daemon-reload")

    def remove_systemd_units(self) -> None:
        self.vp.systemd_service.unlink(missing_ok=True)
        self.vp.dnsmasq_service.unlink(missing_ok=True)
        self.r("systemctl", "daemon-reload")


def secrets_for(params: VmParams, secrets: Dict[str, KeyWrappingSecret]) -> Dict[str, KeyWrappingSecret]:
    """Check that every encrypted volume has a wrapping secret before any work starts."""
    missing = [
        volume.device_id
        for volume in params.storage_volumes
        if volume.encrypted and volume.device_id not in secrets
    ]
    if missing:
        raise ParameterError(f"Missing key wrapping secret for encrypted volume(s): {', '.join(missing)}")
    return {
        volume.device_id: secrets[volume.device_id]
        for volume in params.storage_volumes
        if volume.device_id in secrets
    }
