"""Data models for vmhost."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from vmhost.constants import DEK_CIPHER, KEY_WRAP_ALGORITHM, MAC_RE, TAP_NAME_RE, VM_NAME_RE
from vmhost.exceptions import ParameterError


def _require(data: Dict[str, Any], key: str, context: str) -> Any:
    if key not in data:
        raise ParameterError(f"{context}: missing '{key}'")
    return data[key]


def _as_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ParameterError(f"{name} must be a boolean (got {value!r})")


def _as_int(value: Any, name: str, min_val: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ParameterError(f"{name} must be an integer (got {value!r})")
    if value < min_val:
        raise ParameterError(f"{name} must be >= {min_val} (got {value})")
    return value


def validate_vm_name(name: str) -> str:
    if not isinstance(name, str) or not VM_NAME_RE.match(name):
        raise ParameterError(
            f"Invalid VM name {name!r}: use 1-10 lowercase letters and digits, starting with a letter"
        )
    return name


@dataclass(frozen=True)
class StorageVolume:
    disk_index: int
    device_id: str
    size_gib: int
    boot: bool = False
    encrypted: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StorageVolume":
        context = "storage volume"
        device_id = _require(data, "device_id", context)
        if not isinstance(device_id, str) or not device_id:
            raise ParameterError(f"{context}: device_id must be a non-empty string")
        return cls(
            disk_index=_as_int(_require(data, "disk_index", context), "disk_index"),
            device_id=device_id,
            size_gib=_as_int(_require(data, "size_gib", context), "size_gib", min_val=1),
            boot=_as_bool(data.get("boot", False), "boot"),
            encrypted=_as_bool(data.get("encrypted", False), "encrypted"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "boot": self.boot,
            "size_gib": self.size_gib,
            "device_id": self.device_id,
            "disk_index": self.disk_index,
            "encrypted": self.encrypted,
        }


@dataclass(frozen=True)
class KeyWrappingSecret:
    algorithm: str
    key: str  # base64
    init_vector: str  # base64
    auth_data: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyWrappingSecret":
        context = "key wrapping secret"
        return cls(
            algorithm=str(data.get("algorithm", KEY_WRAP_ALGORITHM)),
            key=str(_require(data, "key", context)),
            init_vector=str(_require(data, "init_vector", context)),
            auth_data=str(_require(data, "auth_data", context)),
        )


@dataclass(frozen=True)
class DataEncryptionKey:
    key: str  # hex
    key2: str  # hex
    cipher: str = DEK_CIPHER

    def __repr__(self) -> str:
        return f"DataEncryptionKey(cipher={self.cipher!r}, key=<redacted>, key2=<redacted>)"


@dataclass(frozen=True)
class Plain:
    """No encryption: the disk file is exposed directly."""


@dataclass(frozen=True)
class Encrypted:
    key: DataEncryptionKey


EncryptionMode = Union[Plain, Encrypted]
PLAIN = Plain()


@dataclass(frozen=True)
class Nic:
    net6: str
    net4: str
    tap: str
    mac: str

    @classmethod
    def from_value(cls, value: Any) -> "Nic":
        if isinstance(value, (list, tuple)):
            if len(value) != 4:
                raise ParameterError(f"nic must have 4 elements [net6, net4, tap, mac] (got {value!r})")
            net6, net4, tap, mac = value
        elif isinstance(value, dict):
            net6, net4, tap, mac = (_require(value, key, "nic") for key in ("net6", "net4", "tap", "mac"))
        else:
            raise ParameterError(f"Unsupported nic description {value!r}")
        try:
            ipaddress.IPv6Network(net6, strict=False)
            ipaddress.IPv4Network(net4, strict=False)
        except ValueError as exc:
            raise ParameterError(f"nic {tap}: {exc}")
        if not TAP_NAME_RE.match(str(tap)):
            raise ParameterError(f"Invalid tap device name {tap!r}")
        if not isinstance(mac, str) or not MAC_RE.match(mac):
            raise ParameterError(f"nic {tap}: invalid MAC address {mac!r}")
        return cls(net6=str(net6), net4=str(net4), tap=str(tap), mac=str(mac).lower())

    def to_list(self) -> List[str]:
        return [self.net6, self.net4, self.tap, self.mac]


@dataclass
class NetworkParams:
    gua: str
    ip4: Optional[str]
    local_ip4: Optional[str]
    nics: List[Nic] = field(default_factory=list)
    ndp_needed: bool = False

    def __post_init__(self) -> None:
        # An empty string from the control plane means "IPv6 only".
        if not self.ip4:
            self.ip4 = None


@dataclass
class VmParams:
    vm_name: str
    unix_user: str
    ssh_public_key: str
    boot_image: str
    max_vcpus: int
    cpu_topology: str
    mem_gib: int
    network: NetworkParams
    storage_volumes: List[StorageVolume] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VmParams":
        context = "vm params"
        volumes = [StorageVolume.from_dict(item) for item in data.get("storage_volumes", [])]
        validate_storage_volumes(volumes)
        network = NetworkParams(
            gua=str(_require(data, "public_ipv6", context)),
            ip4=data.get("public_ipv4") or None,
            local_ip4=data.get("local_ipv4") or None,
            nics=[Nic.from_value(item) for item in data.get("nics", [])],
            ndp_needed=_as_bool(data.get("ndp_needed", False), "ndp_needed"),
        )
        max_vcpus = _as_int(_require(data, "max_vcpus", context), "max_vcpus", min_val=1)
        return cls(
            vm_name=validate_vm_name(_require(data, "vm_name", context)),
            unix_user=str(_require(data, "unix_user", context)),
            ssh_public_key=str(_require(data, "ssh_public_key", context)),
            boot_image=str(_require(data, "boot_image", context)),
            max_vcpus=max_vcpus,
            cpu_topology=str(data.get("cpu_topology") or f"1:{max_vcpus}:1:1"),
            mem_gib=_as_int(_require(data, "mem_gib", context), "mem_gib", min_val=1),
            network=network,
            storage_volumes=volumes,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vm_name": self.vm_name,
            "public_ipv6": self.network.gua,
            "public_ipv4": self.network.ip4 or "",
            "local_ipv4": self.network.local_ip4 or "",
            "unix_user": self.unix_user,
            "ssh_public_key": self.ssh_public_key,
            "nics": [nic.to_list() for nic in self.network.nics],
            "boot_image": self.boot_image,
            "max_vcpus": self.max_vcpus,
            "cpu_topology": self.cpu_topology,
            "mem_gib": self.mem_gib,
            "ndp_needed": self.network.ndp_needed,
            "storage_volumes": [volume.to_dict() for volume in self.storage_volumes],
        }


def validate_storage_volumes(volumes: List[StorageVolume]) -> None:
    """Enforce the caller preconditions: unique disk indexes and device ids, one boot disk."""
    seen_indexes = set()
    seen_ids = set()
    for volume in volumes:
        if volume.disk_index in seen_indexes:
            raise ParameterError(f"Duplicate disk_index {volume.disk_index}")
        if volume.device_id in seen_ids:
            raise ParameterError(f"Duplicate device_id '{volume.device_id}'")
        seen_indexes.add(volume.disk_index)
        seen_ids.add(volume.device_id)
    boot_count = sum(1 for volume in volumes if volume.boot)
    if boot_count > 1:
        raise ParameterError(f"At most one boot volume is allowed (got {boot_count})")
