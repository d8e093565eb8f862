"""cloud-init seed data and dnsmasq configuration for a VM."""

from __future__ import annotations

import shutil
from ipaddress import IPv4Network, IPv6Network
from typing import Any, Dict, List, Optional, Sequence

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmhost.executor import CommandExecutor
from vmhost.models import Nic
from vmhost.network import parse_gua, subdivide_network
from vmhost.paths import VmPath
from vmhost.utils import log

DNS_SERVERS = ("9.9.9.9", "149.112.112.112", "2620:fe::fe", "2620:fe::9")


def render_user_data(unix_user: str, public_key: str) -> str:
    user_cfg: Dict[str, Any] = {
        "users": [
            {
                "name": unix_user,
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "shell": "/bin/bash",
                "ssh_authorized_keys": [public_key],
            }
        ],
        "ssh_pwauth": False,
        "runcmd": [["systemctl", "daemon-reload"]],
    }
    return "#cloud-config\n" + yaml.safe_dump(user_cfg, sort_keys=False, default_flow_style=False)


def render_meta_data(vm_name: str) -> str:
    return yaml.safe_dump({"instance-id": vm_name, "local-hostname": vm_name}, sort_keys=False)


def render_network_config(nics: Sequence[Nic]) -> str:
    ethernets: Dict[str, Any] = {}
    for nic in nics:
        ethernets[nic.tap] = {
            "match": {"macaddress": nic.mac},
            "dhcp4": True,
            "dhcp6": True,
        }
    return yaml.safe_dump({"version": 2, "ethernets": ethernets}, sort_keys=False, default_flow_style=False)


def render_dnsmasq_conf(gua: str, nics: Sequence[Nic]) -> str:
    """dnsmasq config: router advertisements plus one static DHCP lease per NIC.

    dnsmasq tags each request with its interface name, so the tap name scopes
    every range to its NIC.
    """
    guest_ephemeral, _ = subdivide_network(parse_gua(gua))
    guest6 = guest_ephemeral[2]
    lines: List[str] = [
        "pid-file=",
        "leasefile-ro",
        "enable-ra",
        "dhcp-authoritative",
        "domain-needed",
        "bogus-priv",
        "no-resolv",
        "bind-interfaces",
    ]
    lines += [f"server={server}" for server in DNS_SERVERS]
    lines.append(f"dhcp-range={guest6},{guest6},{guest_ephemeral.prefixlen}")
    for nic in nics:
        net4 = IPv4Network(nic.net4, strict=False)
        net6 = IPv6Network(nic.net6, strict=False)
        lines += [
            f"interface={nic.tap}",
            f"dhcp-range={nic.tap},{net4.network_address},{net4.network_address},6h",
            f"dhcp-range={nic.tap},{net6[2]},{net6[2]},{net6.prefixlen}",
        ]
    return "\n".join(lines) + "\n"


class CloudInit:
    """Writes the NoCloud seed for a VM and packs it into a FAT image."""

    def __init__(self, vm_name: str, executor: CommandExecutor, vp: Optional[VmPath] = None) -> None:
        self.vm_name = vm_name
        self.executor = executor
        self.vp = vp or VmPath(vm_name)

    def write_user_data(self, unix_user: str, public_key: str) -> None:
        self.vp.write_user_data(render_user_data(unix_user, public_key))

    def write_meta_data(self) -> None:
        self.vp.write_meta_data(render_meta_data(self.vm_name))

    def write_network_config(self, nics: Sequence[Nic]) -> None:
        self.vp.write_network_config(render_network_config(nics))

    def write_dnsmasq_conf(self, gua: str, nics: Sequence[Nic]) -> None:
        self.vp.write_dnsmasq_conf(render_dnsmasq_conf(gua, nics))

    def build_seed_image(self) -> None:
        img = self.vp.cloudinit_img
        img.unlink(missing_ok=True)
        self.executor.run(["mkdosfs", "-n", "CIDATA", "-C", str(img), "8192"])
        for source in (self.vp.user_data, self.vp.meta_data, self.vp.network_config):
            self.executor.run(["mcopy", "-oi", str(img), "-s", str(source), "::"])
        shutil.chown(img, self.vm_name, self.vm_name)

    def generate(self, unix_user: str, public_key: str, gua: str, nics: Sequence[Nic]) -> None:
        self.write_user_data(unix_user, public_key)
        self.write_meta_data()
        self.write_network_config(nics)
        self.write_dnsmasq_conf(gua, nics)
        self.build_seed_image()
        log("INFO", f"cloud-init seed written to {self.vp.cloudinit_img}")
