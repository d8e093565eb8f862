"""Storage volume management: disk files, boot images, encryption keys and SPDK wiring."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from vmhost.config import load_image_config
from vmhost.constants import GIB, SPDK_ABSENT_RE, SPDK_USER
from vmhost.crypto import StorageKeyEncryption, generate_data_encryption_key
from vmhost.exceptions import (
    CommandFailed,
    ImageConvertFailed,
    ImageDownloadFailed,
    ImageTooLarge,
    ParameterError,
    VmSetupError,
)
from vmhost.executor import CommandExecutor
from vmhost.models import (
    PLAIN,
    DataEncryptionKey,
    Encrypted,
    EncryptionMode,
    KeyWrappingSecret,
    StorageVolume,
)
from vmhost.paths import VmPath
from vmhost.spdk import SpdkRpc, aio_bdev_name, crypto_key_name, run_spdk_dd
from vmhost.utils import ensure_directory, log, sync_parent_dir


class StorageVolumeManager:
    """Prepares and tears down the block storage of one VM."""

    def __init__(
        self,
        vm_name: str,
        executor: CommandExecutor,
        vp: Optional[VmPath] = None,
        spdk: Optional[SpdkRpc] = None,
        spdk_user: str = SPDK_USER,
        image_config_path: Optional[Path] = None,
    ) -> None:
        self.vm_name = vm_name
        self.executor = executor
        self.vp = vp or VmPath(vm_name)
        self.spdk = spdk or SpdkRpc(executor)
        self.spdk_user = spdk_user
        self.image_config_path = image_config_path

    # Disk files

    def setup_disk_file(self, volume: StorageVolume) -> Path:
        """Create the sparse raw disk file for ``volume`` and grant SPDK access to it."""
        disk_file = self.vp.disk(volume.disk_index)
        ensure_directory(disk_file.parent)
        shutil.chown(disk_file.parent, self.vm_name, self.vm_name)
        disk_file.touch()
        shutil.chown(disk_file, self.vm_name, self.vm_name)
        os.chmod(disk_file, 0o640)
        self.executor.run(["setfacl", "-m", f"u:{self.spdk_user}:rw", str(disk_file)])
        self.executor.run(["truncate", "-s", f"{volume.size_gib}G", str(disk_file)])
        return disk_file

    # Boot images

    def download_boot_image(self, image_name: str) -> Path:
        """Return the cached raw image for ``image_name``, downloading and converting it if absent.

        The cache is keyed by image name only; a present file is trusted as-is.
        """
        image_path = self.vp.boot_image(image_name)
        if image_path.exists():
            log("INFO", f"Using cached image: {image_path}")
            return image_path

        info = load_image_config(image_name, self.image_config_path)
        image_format = info["format"]
        url = info["url"]
        ensure_directory(image_path.parent)
        download_path = image_path.with_name(f"{image_name}.{image_format}.tmp")
        converted_path = image_path.with_name(f"{image_name}.raw.tmp")

        # Exclusive creation keeps two agents from downloading into the same file.
        try:
            fd = os.open(download_path, os.O_RDWR | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            raise ImageDownloadFailed(
                f"Download of '{image_name}' already in progress or interrupted; remove {download_path} to retry"
            )
        os.close(fd)

        try:
            log("INFO", f"Downloading boot image {image_name}: {url}")
            try:
                self.executor.run(["curl", "-f", "-L10", "-o", str(download_path), url])
            except CommandFailed as exc:
                raise ImageDownloadFailed(f"Failed to download '{image_name}' from {url}: {exc}") from exc

            log("INFO", f"Converting {image_name} ({image_format}) to raw")
            try:
                self.executor.run(
                    [
                        "qemu-img",
                        "convert",
                        "-p",
                        "-f",
                        image_format,
                        "-O",
                        "raw",
                        str(download_path),
                        str(converted_path),
                    ]
                )
            except CommandFailed as exc:
                converted_path.unlink(missing_ok=True)
                raise ImageConvertFailed(f"Failed to convert '{image_name}' to raw: {exc}") from exc

            os.replace(converted_path, image_path)
        finally:
            download_path.unlink(missing_ok=True)

        log("SUCCESS", f"Boot image cached at {image_path}")
        return image_path

    def copy_image(self, disk_file: Path, image_name: str, size_gib: int, mode: EncryptionMode) -> None:
        """Write the boot image onto ``disk_file`` through the plaintext or encrypted sink."""
        image_path = self.download_boot_image(image_name)
        image_size = os.path.getsize(image_path)
        disk_size = size_gib * GIB
        if image_size > disk_size:
            raise ImageTooLarge(image_size, disk_size)
        target = "encrypted" if isinstance(mode, Encrypted) else "plain"
        log("INFO", f"Copying {image_name} onto {disk_file} ({target})")
        run_spdk_dd(self.executor, image_path, disk_file, mode)

    # Data encryption keys

    def setup_data_encryption_key(self, disk_index: int, secret: KeyWrappingSecret) -> DataEncryptionKey:
        """Generate a fresh data encryption key and persist it wrapped.

        The key file and its directory entry are fsynced before returning.
        """
        key_file = self.vp.data_encryption_key(disk_index)
        ensure_directory(key_file.parent)
        dek = generate_data_encryption_key()
        StorageKeyEncryption(secret).write_encrypted_dek(key_file, dek)
        shutil.chown(key_file, self.vm_name, self.vm_name)
        os.chmod(key_file, 0o600)
        sync_parent_dir(key_file)
        return dek

    def read_data_encryption_key(self, disk_index: int, secret: KeyWrappingSecret) -> DataEncryptionKey:
        return StorageKeyEncryption(secret).read_encrypted_dek(self.vp.data_encryption_key(disk_index))

    # SPDK

    def setup_spdk_bdev(self, device_id: str, disk_file: Path, mode: EncryptionMode) -> None:
        """Register ``disk_file`` with SPDK as bdev ``device_id``.

        Encrypted volumes get a crypto key, a ``<id>_aio`` base bdev and a
        ``<id>`` crypto bdev on top; plain volumes get ``<id>`` directly.
        """
        if isinstance(mode, Encrypted):
            key_name = crypto_key_name(device_id)
            base_bdev = aio_bdev_name(device_id)
            self.spdk.accel_crypto_key_create(key_name, mode.key)
            self.spdk.bdev_aio_create(disk_file, base_bdev)
            self.spdk.bdev_crypto_create(base_bdev, device_id, key_name)
        else:
            self.spdk.bdev_aio_create(disk_file, device_id)

    def setup_spdk_vhost(self, disk_index: int, device_id: str) -> None:
        controller = self.vp.vhost_controller(disk_index)
        spdk_vhost_sock = self.vp.spdk_vhost_sock(disk_index)
        vm_vhost_sock = self.vp.vhost_sock(disk_index)

        self.spdk.vhost_create_blk_controller(controller, device_id)
        os.chmod(spdk_vhost_sock, 0o640)
        ensure_directory(vm_vhost_sock.parent)
        # The link survives reboots while the socket does not.
        if vm_vhost_sock.is_symlink():
            vm_vhost_sock.unlink()
        os.symlink(spdk_vhost_sock, vm_vhost_sock)
        shutil.chown(vm_vhost_sock, self.vm_name, self.vm_name)
        self.executor.run(["setfacl", "-m", f"u:{self.vm_name}:rw", str(spdk_vhost_sock)])

    # Composite operations

    def setup_volume(
        self,
        volume: StorageVolume,
        boot_image: str,
        secret: Optional[KeyWrappingSecret] = None,
    ) -> None:
        log("INFO", f"Setting up volume {volume.device_id} (disk {volume.disk_index}, {volume.size_gib}G)")
        mode: EncryptionMode = PLAIN
        if volume.encrypted:
            if secret is None:
                raise ParameterError(f"No key wrapping secret supplied for encrypted volume '{volume.device_id}'")
            mode = Encrypted(self.setup_data_encryption_key(volume.disk_index, secret))
        disk_file = self.setup_disk_file(volume)
        if volume.boot:
            self.copy_image(disk_file, boot_image, volume.size_gib, mode)
        self.setup_spdk_bdev(volume.device_id, disk_file, mode)
        self.setup_spdk_vhost(volume.disk_index, volume.device_id)

    def recreate_volume(self, volume: StorageVolume, secret: Optional[KeyWrappingSecret] = None) -> None:
        """Re-expose an existing volume from its disk file and stored key after a reboot."""
        mode: EncryptionMode = PLAIN
        if volume.encrypted:
            if secret is None:
                raise ParameterError(f"No key wrapping secret supplied for encrypted volume '{volume.device_id}'")
            mode = Encrypted(self.read_data_encryption_key(volume.disk_index, secret))
        self.setup_spdk_bdev(volume.device_id, self.vp.disk(volume.disk_index), mode)
        self.setup_spdk_vhost(volume.disk_index, volume.device_id)

    # Teardown

    def _ignore_absent(self, action: Callable[..., str], *args: str) -> None:
        try:
            action(*args)
        except CommandFailed as exc:
            if not exc.stderr_matches(SPDK_ABSENT_RE):
                raise
            log("DEBUG", f"{action.__name__} {' '.join(args)}: already absent")

    def purge_volume(self, volume: StorageVolume) -> None:
        """Delete the vhost controller and bdevs of ``volume``; missing resources are fine."""
        device_id = volume.device_id
        self._ignore_absent(self.spdk.vhost_delete_controller, self.vp.vhost_controller(volume.disk_index))
        if volume.encrypted:
            self._ignore_absent(self.spdk.bdev_crypto_delete, device_id)
            self._ignore_absent(self.spdk.bdev_aio_delete, aio_bdev_name(device_id))
            self._ignore_absent(self.spdk.accel_crypto_key_destroy, crypto_key_name(device_id))
        else:
            self._ignore_absent(self.spdk.bdev_aio_delete, device_id)
        remove_path(self.vp.spdk_vhost_sock(volume.disk_index))

    def purge_storage(self, volumes: Sequence[StorageVolume]) -> None:
        """Tear down every volume in disk order, then remove the VM's storage tree once."""
        failures: List[str] = []
        try:
            for volume in sorted(volumes, key=lambda v: v.disk_index):
                try:
                    self.purge_volume(volume)
                except (VmSetupError, OSError) as exc:
                    log("WARN", f"Teardown of volume {volume.device_id} failed: {exc}")
                    failures.append(f"{volume.device_id}: {exc}")
        finally:
            remove_path(self.vp.storage_dir)
        if failures:
            raise VmSetupError("Storage teardown incomplete:\n  " + "\n  ".join(failures))


def remove_path(path: Path) -> None:
    """Remove a file, socket, symlink or directory tree; absent paths are ignored."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)
