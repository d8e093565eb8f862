"""Tests for vmhost.models module."""

from __future__ import annotations

import pytest

from vmhost.exceptions import ParameterError
from vmhost.models import Nic, StorageVolume, VmParams, validate_storage_volumes, validate_vm_name


class TestValidateVmName:
    @pytest.mark.parametrize("name", ["vm1", "a", "abcdefghij", "vmqd7r8"])
    def test_valid(self, name):
        assert validate_vm_name(name) == name

    @pytest.mark.parametrize("name", ["", "1vm", "VM", "vm-1", "abcdefghijk", "vm_1"])
    def test_invalid(self, name):
        with pytest.raises(ParameterError, match="Invalid VM name"):
            validate_vm_name(name)


class TestStorageVolume:
    def test_defaults(self):
        volume = StorageVolume.from_dict({"disk_index": 0, "device_id": "d0", "size_gib": 1})
        assert volume.boot is False
        assert volume.encrypted is False

    def test_rejects_zero_size(self):
        with pytest.raises(ParameterError, match="size_gib must be >= 1"):
            StorageVolume.from_dict({"disk_index": 0, "device_id": "d0", "size_gib": 0})

    def test_rejects_string_flag(self):
        with pytest.raises(ParameterError, match="encrypted must be a boolean"):
            StorageVolume.from_dict({"disk_index": 0, "device_id": "d0", "size_gib": 1, "encrypted": "yes"})

    def test_rejects_empty_device_id(self):
        with pytest.raises(ParameterError, match="device_id"):
            StorageVolume.from_dict({"disk_index": 0, "device_id": "", "size_gib": 1})


class TestValidateStorageVolumes:
    def test_duplicate_index(self):
        volumes = [StorageVolume(0, "a", 1), StorageVolume(0, "b", 1)]
        with pytest.raises(ParameterError, match="Duplicate disk_index 0"):
            validate_storage_volumes(volumes)

    def test_duplicate_device_id(self):
        volumes = [StorageVolume(0, "a", 1), StorageVolume(1, "a", 1)]
        with pytest.raises(ParameterError, match="Duplicate device_id"):
            validate_storage_volumes(volumes)

    def test_two_boot_volumes(self):
        volumes = [StorageVolume(0, "a", 1, boot=True), StorageVolume(1, "b", 1, boot=True)]
        with pytest.raises(ParameterError, match="At most one boot volume"):
            validate_storage_volumes(volumes)


class TestNic:
    def test_from_list(self):
        nic = Nic.from_value(["fd00::/64", "10.0.0.2/32", "nc0", "02:AA:BB:CC:DD:EE"])
        assert nic.mac == "02:aa:bb:cc:dd:ee"
        assert nic.to_list() == ["fd00::/64", "10.0.0.2/32", "nc0", "02:aa:bb:cc:dd:ee"]

    def test_from_dict(self):
        nic = Nic.from_value({"net6": "fd00::/64", "net4": "10.0.0.2/32", "tap": "nc0", "mac": "02:00:00:00:00:01"})
        assert nic.tap == "nc0"

    def test_wrong_length(self):
        with pytest.raises(ParameterError, match="4 elements"):
            Nic.from_value(["fd00::/64", "10.0.0.2/32", "nc0"])

    def test_bad_address(self):
        with pytest.raises(ParameterError, match="nic nc0"):
            Nic.from_value(["fd00::/64", "10.0.0.300/32", "nc0", "02:00:00:00:00:01"])

    def test_bad_tap_name(self):
        with pytest.raises(ParameterError, match="Invalid tap device name"):
            Nic.from_value(["fd00::/64", "10.0.0.2/32", "tap-name-way-too-long", "02:00:00:00:00:01"])

    @pytest.mark.parametrize("mac", ["zz:00:00:00:00:01", "02:00:00:00:01", "0200.0000.0001", None])
    def test_bad_mac(self, mac):
        with pytest.raises(ParameterError, match="invalid MAC address"):
            Nic.from_value(["fd00::/64", "10.0.0.2/32", "nc0", mac])


class TestVmParams:
    def test_round_trip(self, params_dict):
        assert VmParams.from_dict(params_dict).to_dict() == params_dict

    def test_ipv6_only(self, params_dict):
        params_dict["public_ipv4"] = ""
        params_dict["local_ipv4"] = ""
        params = VmParams.from_dict(params_dict)
        assert params.network.ip4 is None
        assert params.network.local_ip4 is None

    def test_default_topology(self, params_dict):
        del params_dict["cpu_topology"]
        assert VmParams.from_dict(params_dict).cpu_topology == "1:2:1:1"

    def test_missing_required(self, params_dict):
        del params_dict["public_ipv6"]
        with pytest.raises(ParameterError, match="missing 'public_ipv6'"):
            VmParams.from_dict(params_dict)

    def test_duplicate_disk_index(self, params_dict):
        params_dict["storage_volumes"][1]["disk_index"] = 0
        with pytest.raises(ParameterError, match="Duplicate disk_index"):
            VmParams.from_dict(params_dict)
