"""SPDK control-plane commands (rpc.py and spdk_dd)."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from vmhost.constants import (
    BDEV_BLOCK_SIZE,
    SPDK_DD,
    SPDK_DD_BLOCK_SIZE,
    SPDK_RPC,
    SPDK_SOCKET,
)
from vmhost.executor import CommandExecutor
from vmhost.models import DataEncryptionKey, Encrypted, EncryptionMode


def crypto_key_name(device_id: str) -> str:
    return f"{device_id}_key"


def aio_bdev_name(device_id: str) -> str:
    return f"{device_id}_aio"


class SpdkRpc:
    """Thin wrapper over ``rpc.py``; every mutating call names its resource."""

    def __init__(
        self,
        executor: CommandExecutor,
        rpc_py: str = SPDK_RPC,
        socket: str = SPDK_SOCKET,
    ) -> None:
        self.executor = executor
        self.rpc_py = rpc_py
        self.socket = socket

    def call(self, method: str, *args: Any) -> str:
        cmd = [self.rpc_py, "-s", self.socket, method] + [str(arg) for arg in args]
        return self.executor.run(cmd)

    def bdev_aio_create(self, filename: Path, name: str, block_size: int = BDEV_BLOCK_SIZE) -> str:
        return self.call("bdev_aio_create", filename, name, block_size)

    def bdev_aio_delete(self, name: str) -> str:
        return self.call("bdev_aio_delete", name)

    def accel_crypto_key_create(self, name: str, dek: DataEncryptionKey) -> str:
        return self.call("accel_crypto_key_create", "-c", dek.cipher, "-k", dek.key, "-e", dek.key2, "-n", name)

    def accel_crypto_key_destroy(self, name: str) -> str:
        return self.call("accel_crypto_key_destroy", "-n", name)

    def bdev_crypto_create(self, base_bdev: str, name: str, key_name: str) -> str:
        return self.call("bdev_crypto_create", "-n", key_name, base_bdev, name)

    def bdev_crypto_delete(self, name: str) -> str:
        return self.call("bdev_crypto_delete", name)

    def vhost_create_blk_controller(self, controller: str, bdev: str) -> str:
        return self.call("vhost_create_blk_controller", controller, bdev)

    def vhost_delete_controller(self, controller: str) -> str:
        return self.call("vhost_delete_controller", controller)


def spdk_dd_config(disk_file: Path, mode: EncryptionMode) -> Dict[str, Any]:
    """Build the standalone SPDK config ``spdk_dd`` reads to reach the disk file.

    The disk is always ``aio0``; in encrypted mode ``crypt0`` is layered on top.
    """
    bdev_config: List[Dict[str, Any]] = [
        {
            "method": "bdev_aio_create",
            "params": {
                "name": "aio0",
                "block_size": BDEV_BLOCK_SIZE,
                "filename": str(disk_file),
                "readonly": False,
            },
        }
    ]
    subsystems: List[Dict[str, Any]] = []
    if isinstance(mode, Encrypted):
        subsystems.append(
            {
                "subsystem": "accel",
                "config": [
                    {
                        "method": "accel_crypto_key_create",
                        "params": {
                            "name": "dd_key",
                            "cipher": mode.key.cipher,
                            "key": mode.key.key,
                            "key2": mode.key.key2,
                        },
                    }
                ],
            }
        )
        bdev_config.append(
            {
                "method": "bdev_crypto_create",
                "params": {"base_bdev_name": "aio0", "name": "crypt0", "key_name": "dd_key"},
            }
        )
    subsystems.append({"subsystem": "bdev", "config": bdev_config})
    return {"subsystems": subsystems}


def spdk_dd_target(mode: EncryptionMode) -> str:
    return "crypt0" if isinstance(mode, Encrypted) else "aio0"


def run_spdk_dd(
    executor: CommandExecutor,
    image_path: Path,
    disk_file: Path,
    mode: EncryptionMode,
    spdk_dd: Optional[str] = None,
) -> str:
    """Stream ``image_path`` into ``disk_file`` through the plaintext or encrypted sink."""
    cmd = [
        spdk_dd or SPDK_DD,
        "--config",
        "/dev/stdin",
        "--disable-cpumask-locks",
        "--if",
        str(image_path),
        "--ob",
        spdk_dd_target(mode),
        f"--bs={SPDK_DD_BLOCK_SIZE}",
    ]
    return executor.run(cmd, stdin=json.dumps(spdk_dd_config(disk_file, mode)))
