"""Shared test fixtures."""

from __future__ import annotations

import base64
import json
import os
from typing import Optional, Sequence
from unittest.mock import MagicMock

import pytest

from vmhost.executor import CommandExecutor
from vmhost.models import KeyWrappingSecret, Nic, StorageVolume, VmParams
from vmhost.paths import VmPath

VETH_MAC = "02:aa:bb:cc:dd:ee"


def fake_run(cmd: Sequence[str], stdin: Optional[str] = None) -> str:
    """Answer the few commands whose output the agent parses."""
    argv = [str(arg) for arg in cmd]
    if argv[-1].endswith("/address"):
        return VETH_MAC + "\n"
    if argv[:4] == ["ip", "-j", "route", "show"]:
        return json.dumps([{"dst": "default", "gateway": "192.0.2.1", "dev": "eth0"}])
    return ""


@pytest.fixture
def executor() -> MagicMock:
    mock = MagicMock(spec=CommandExecutor)
    mock.run.side_effect = fake_run
    return mock


@pytest.fixture
def vp(tmp_path) -> VmPath:
    return VmPath(
        "test",
        vm_root=tmp_path / "vm",
        storage_root=tmp_path / "storage",
        vhost_dir=tmp_path / "vhost",
        systemd_dir=tmp_path / "systemd",
        image_cache_dir=tmp_path / "opt",
    )


@pytest.fixture
def wrapping_secret() -> KeyWrappingSecret:
    return KeyWrappingSecret(
        algorithm="aes-256-gcm",
        key=base64.b64encode(os.urandom(32)).decode(),
        init_vector=base64.b64encode(os.urandom(12)).decode(),
        auth_data="test_0",
    )


@pytest.fixture
def nic() -> Nic:
    return Nic(net6="fd10:9b0b:6b4b:8fbb::/64", net4="10.132.0.5/32", tap="nctest", mac="02:11:22:33:44:55")


@pytest.fixture
def boot_volume() -> StorageVolume:
    return StorageVolume(disk_index=0, device_id="test_0", size_gib=20, boot=True, encrypted=True)


@pytest.fixture
def data_volume() -> StorageVolume:
    return StorageVolume(disk_index=1, device_id="test_1", size_gib=5, boot=False, encrypted=False)


@pytest.fixture
def params_dict(nic, boot_volume, data_volume) -> dict:
    return {
        "vm_name": "test",
        "public_ipv6": "2a01:4f8:10a:128b:7e40::/79",
        "public_ipv4": "192.0.2.10/32",
        "local_ipv4": "169.254.0.0/32",
        "unix_user": "ubi",
        "ssh_public_key": "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIJ test@example",
        "nics": [nic.to_list()],
        "boot_image": "ubuntu-jammy",
        "max_vcpus": 2,
        "cpu_topology": "1:2:1:1",
        "mem_gib": 4,
        "ndp_needed": False,
        "storage_volumes": [boot_volume.to_dict(), data_volume.to_dict()],
    }


@pytest.fixture
def vm_params(params_dict) -> VmParams:
    return VmParams.from_dict(params_dict)


@pytest.fixture
def image_catalog(tmp_path):
    config = tmp_path / "images.yaml"
    config.write_text(
        "\n".join(
            [
                "images:",
                "  ubuntu-jammy:",
                "    name: Ubuntu 22.04",
                "    url: https://example.com/jammy.qcow2",
                "    format: qcow2",
                "  broken:",
                "    name: Broken",
                "    url: https://example.com/broken.iso",
                "    format: iso",
                "  nourl:",
                "    name: No URL",
                "    format: qcow2",
            ]
        )
        + "\n"
    )
    return config
