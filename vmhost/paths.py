"""Filesystem layout of a single VM.

Every location the agent touches for a VM is derived here from the VM name
and a disk index, so ``setup``, ``recreate_unpersisted`` and ``purge`` always
agree on where things live.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from vmhost.constants import (
    IMAGE_CACHE_DIR,
    SPDK_VHOST_DIR,
    STORAGE_ROOT,
    SYSTEMD_DIR,
    VM_ROOT,
)


class VmPath:
    def __init__(
        self,
        vm_name: str,
        vm_root: Optional[Path] = None,
        storage_root: Optional[Path] = None,
        vhost_dir: Optional[Path] = None,
        systemd_dir: Optional[Path] = None,
        image_cache_dir: Optional[Path] = None,
    ) -> None:
        self.vm_name = vm_name
        self.vm_root = Path(vm_root or VM_ROOT)
        self.storage_root = Path(storage_root or STORAGE_ROOT)
        self.vhost_dir = Path(vhost_dir or SPDK_VHOST_DIR)
        self.systemd_dir = Path(systemd_dir or SYSTEMD_DIR)
        self.image_cache_dir = Path(image_cache_dir or IMAGE_CACHE_DIR)

    # VM home

    @property
    def home(self) -> Path:
        return self.vm_root / self.vm_name

    @property
    def prep_json(self) -> Path:
        return self.home / "prep.json"

    @property
    def hugepages(self) -> Path:
        return self.home / "hugepages"

    @property
    def guest_ephemeral(self) -> Path:
        return self.home / "guest_ephemeral"

    @property
    def clover_ephemeral(self) -> Path:
        return self.home / "clover_ephemeral"

    @property
    def nftables_conf(self) -> Path:
        return self.home / "nftables.conf"

    @property
    def dnsmasq_conf(self) -> Path:
        return self.home / "dnsmasq.conf"

    @property
    def user_data(self) -> Path:
        return self.home / "user-data"

    @property
    def meta_data(self) -> Path:
        return self.home / "meta-data"

    @property
    def network_config(self) -> Path:
        return self.home / "network-config"

    @property
    def cloudinit_img(self) -> Path:
        return self.home / "cloudinit.img"

    @property
    def serial_log(self) -> Path:
        return self.home / "serial.log"

    @property
    def ch_api_sock(self) -> Path:
        return self.home / "ch-api.sock"

    # Storage

    @property
    def storage_dir(self) -> Path:
        return self.storage_root / self.vm_name

    def disk_dir(self, disk_index: int) -> Path:
        return self.storage_dir / str(disk_index)

    def disk(self, disk_index: int) -> Path:
        return self.disk_dir(disk_index) / "disk.raw"

    def data_encryption_key(self, disk_index: int) -> Path:
        return self.disk_dir(disk_index) / "data_encryption_key.json"

    def vhost_sock(self, disk_index: int) -> Path:
        """Symlink to the SPDK socket inside the VM's private storage directory."""
        return self.disk_dir(disk_index) / "vhost.sock"

    def vhost_controller(self, disk_index: int) -> str:
        return f"{self.vm_name}_{disk_index}"

    def spdk_vhost_sock(self, disk_index: int) -> Path:
        return self.vhost_dir / self.vhost_controller(disk_index)

    # Host-wide

    def boot_image(self, image_name: str) -> Path:
        return self.image_cache_dir / f"{image_name}.raw"

    @property
    def systemd_service(self) -> Path:
        return self.systemd_dir / f"{self.vm_name}.service"

    @property
    def dnsmasq_service(self) -> Path:
        return self.systemd_dir / f"{self.vm_name}-dnsmasq.service"

    @property
    def netns(self) -> Path:
        return Path("/var/run/netns") / self.vm_name

    # Writers for small persisted text files

    def _write(self, path: Path, content: str, mode: int = 0o644) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(path, mode)
        return path

    def write_guest_ephemeral(self, content: str) -> Path:
        return self._write(self.guest_ephemeral, content)

    def write_clover_ephemeral(self, content: str) -> Path:
        return self._write(self.clover_ephemeral, content)

    def write_nftables_conf(self, content: str) -> Path:
        return self._write(self.nftables_conf, content)

    def write_dnsmasq_conf(self, content: str) -> Path:
        return self._write(self.dnsmasq_conf, content)

    def write_user_data(self, content: str) -> Path:
        return self._write(self.user_data, content)

    def write_meta_data(self, content: str) -> Path:
        return self._write(self.meta_data, content)

    def write_network_config(self, content: str) -> Path:
        return self._write(self.network_config, content)

    def write_prep_json(self, content: str) -> Path:
        return self._write(self.prep_json, content, mode=0o600)

    def write_systemd_service(self, content: str) -> Path:
        return self._write(self.systemd_service, content)

    def write_dnsmasq_service(self, content: str) -> Path:
        return self._write(self.dnsmasq_service, content)
