"""Global constants and path configuration for vmhost."""

from __future__ import annotations

import os
import re
from pathlib import Path

# Per-VM home directories (manifest, cloud-init, hugepages, nftables).
VM_ROOT = Path(os.environ.get("VM_ROOT", "/vm"))
# Per-VM disk files and wrapped data encryption keys.
STORAGE_ROOT = Path(os.environ.get("STORAGE_ROOT", "/var/storage"))
SPDK_VHOST_DIR = Path(os.environ.get("SPDK_VHOST_DIR", str(STORAGE_ROOT / "vhost")))
IMAGE_CACHE_DIR = Path(os.environ.get("IMAGE_CACHE_DIR", "/opt"))
SYSTEMD_DIR = Path(os.environ.get("SYSTEMD_DIR", "/etc/systemd/system"))

DEFAULT_CONFIG_PATH = Path(os.environ.get("IMAGES_CONFIG", str(Path(__file__).with_name("images.yaml"))))

SPDK_RPC = os.environ.get("SPDK_RPC", "/opt/spdk/scripts/rpc.py")
SPDK_SOCKET = os.environ.get("SPDK_SOCKET", "/home/spdk/spdk.sock")
SPDK_DD = os.environ.get("SPDK_DD", "/opt/spdk/bin/spdk_dd")
SPDK_USER = os.environ.get("SPDK_USER", "spdk")

CLOUD_HYPERVISOR_BIN = os.environ.get("CLOUD_HYPERVISOR_BIN", "/opt/cloud-hypervisor/v35.1/cloud-hypervisor")
CH_REMOTE_BIN = os.environ.get("CH_REMOTE_BIN", "/opt/cloud-hypervisor/v35.1/ch-remote")
CLOUD_HYPERVISOR_FIRMWARE = os.environ.get("CLOUD_HYPERVISOR_FIRMWARE", "/opt/fw/CLOUDHV.fd")
DNSMASQ_BIN = os.environ.get("DNSMASQ_BIN", "/usr/local/sbin/dnsmasq")

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

GIB = 2**30
# Logical block size of every aio bdev.
BDEV_BLOCK_SIZE = 512
# spdk_dd transfer size when writing boot images.
SPDK_DD_BLOCK_SIZE = 2**20

DEK_CIPHER = "AES_XTS"
KEY_WRAP_ALGORITHM = "aes-256-gcm"

# VM names double as user names and interface-name suffixes ("vetho" + name <= 15).
VM_NAME_RE = re.compile(r"^[a-z][a-z0-9]{0,9}$")
TAP_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]{1,15}$")
MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")

# Source formats qemu-img may convert to raw.
IMAGE_FORMATS = {"qcow2", "raw", "vmdk", "vhd", "vhdx", "vdi"}

# Errors that mean the resource is already gone.
NETNS_ABSENT_RE = re.compile(r'Cannot remove namespace file ".*": No such file or directory')
LINK_ABSENT_RE = re.compile(r'Cannot find device "[^"]*"')
SPDK_ABSENT_RE = re.compile(r"No such device|not found|does not exist|Code=-19|Code=-2\b", re.IGNORECASE)
UMOUNT_ABSENT_RE = re.compile(r"not mounted|no mount point specified|mountpoint not found", re.IGNORECASE)
USER_ABSENT_RE = re.compile(r"The user `.*' does not exist|does not exist")
USER_EXISTS_RE = re.compile(r"The user `.*' already exists|already exists")
