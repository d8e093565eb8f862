"""Network namespace, veth/tap, routing and NAT setup for a VM."""

from __future__ import annotations

import ipaddress
import json
import textwrap
from ipaddress import IPv4Network, IPv6Network
from typing import Optional, Sequence, Tuple

from vmhost.constants import LINK_ABSENT_RE, NETNS_ABSENT_RE
from vmhost.exceptions import CommandFailed, InvalidPrefix, VmSetupError
from vmhost.executor import CommandExecutor
from vmhost.models import NetworkParams, Nic
from vmhost.paths import VmPath
from vmhost.utils import log, mac_to_ipv6_link_local, random_mac


def parse_gua(gua: str) -> IPv6Network:
    """Parse the VM's IPv6 prefix; a bare address is taken as its /64."""
    text = gua if "/" in gua else f"{gua}/64"
    try:
        return IPv6Network(text, strict=False)
    except ValueError as exc:
        raise VmSetupError(f"Invalid IPv6 prefix '{gua}': {exc}")


def subdivide_network(net: IPv6Network) -> Tuple[IPv6Network, IPv6Network]:
    """Split ``net`` into its lower and upper halves.

    >>> subdivide_network(IPv6Network("2a01:4f9:2b:35b:7e40::/79"))
    (IPv6Network('2a01:4f9:2b:35b:7e40::/80'), IPv6Network('2a01:4f9:2b:35b:7e41::/80'))
    """
    if net.prefixlen >= net.max_prefixlen:
        raise InvalidPrefix(f"Cannot subdivide {net}: no host bit left to split")
    prefixlen = net.prefixlen + 1
    base = int(net.network_address)
    lower = IPv6Network((base, prefixlen))
    upper = IPv6Network((base + 2 ** (net.max_prefixlen - prefixlen), prefixlen))
    return lower, upper


def render_nat4_config(ip4: str, nics: Sequence[Nic]) -> str:
    """nftables rules mapping the public IPv4 address onto the primary NIC's private address."""
    public = str(ipaddress.ip_network(ip4, strict=False).network_address)
    rules_pre = ""
    rules_post = ""
    if nics:
        private_net = IPv4Network(nics[0].net4, strict=False)
        private = str(private_net.network_address)
        rules_pre = f"ip daddr {public} dnat to {private}"
        rules_post = (
            f"ip saddr {private} ip daddr != {private_net} snat to {public}\n"
            f"        ip saddr {private} ip daddr {private} snat to {public}"
        )
    # The leading declare/delete pair makes reloading the file idempotent.
    return textwrap.dedent(
        """\
        table ip nat
        delete table ip nat
        table ip nat {{
          chain prerouting {{
            type nat hook prerouting priority dstnat; policy accept;
            {pre}
          }}
          chain postrouting {{
            type nat hook postrouting priority srcnat; policy accept;
            {post}
          }}
        }}
        """
    ).format(pre=rules_pre, post=rules_post)


class NetworkConfigurator:
    """Builds the network namespace of one VM and wires it to the host."""

    def __init__(self, vm_name: str, executor: CommandExecutor, vp: Optional[VmPath] = None) -> None:
        self.vm_name = vm_name
        self.executor = executor
        self.vp = vp or VmPath(vm_name)
        self.vetho = f"vetho{vm_name}"
        self.vethi = f"vethi{vm_name}"

    def r(self, *cmd: str) -> str:
        return self.executor.run(list(cmd))

    def netns(self, *cmd: str) -> str:
        return self.r("ip", "netns", "exec", self.vm_name, *cmd)

    def partition_ephemeral_space(self, gua: str) -> Tuple[IPv6Network, IPv6Network]:
        """Return ``(guest_ephemeral, clover_ephemeral)`` halves of the VM's prefix."""
        return subdivide_network(parse_gua(gua))

    def delete_namespace(self) -> None:
        try:
            self.r("ip", "netns", "del", self.vm_name)
        except CommandFailed as exc:
            if not exc.stderr_matches(NETNS_ABSENT_RE):
                raise
            log("DEBUG", f"Network namespace {self.vm_name} already absent")

    def interfaces(self, nics: Sequence[Nic]) -> None:
        """Recreate the namespace from scratch, with its veth pair and one tap per NIC."""
        self.delete_namespace()
        # Namespace deletion does not always take the host end of the veth with it.
        try:
            self.r("ip", "link", "del", self.vetho)
        except CommandFailed as exc:
            if not exc.stderr_matches(LINK_ABSENT_RE):
                raise
        self.r("ip", "netns", "add", self.vm_name)
        # Explicit MACs: kernel-generated ones can collide across many veths.
        self.r(
            "ip", "link", "add", self.vetho, "addr", random_mac(),
            "type", "veth", "peer", "name", self.vethi, "addr", random_mac(), "netns", self.vm_name,
        )
        for nic in nics:
            self.r("ip", "-n", self.vm_name, "tuntap", "add", "dev", nic.tap, "mode", "tap",
                   "user", self.vm_name, "multi_queue")
            self.r("ip", "-n", self.vm_name, "link", "set", "dev", nic.tap, "up")

    def main_device(self) -> str:
        """Name of the host's uplink, taken from the default route."""
        routes = json.loads(self.r("ip", "-j", "route", "show", "default") or "[]")
        for route in routes:
            if route.get("dst") == "default" and route.get("dev"):
                return route["dev"]
        raise VmSetupError("No default route found; cannot determine the main network device")

    def setup_veths_6(
        self,
        guest_ephemeral: IPv6Network,
        clover_ephemeral: IPv6Network,
        gua: str,
        ndp_needed: bool,
    ) -> None:
        # Host -> namespace: the whole prefix goes to the namespace end of the veth.
        vethi_mac = self.netns("cat", f"/sys/class/net/{self.vethi}/address").strip()
        self.r("ip", "link", "set", "dev", self.vetho, "up")
        self.r("ip", "route", "replace", str(parse_gua(gua)), "via", mac_to_ipv6_link_local(vethi_mac),
               "dev", self.vetho)

        if ndp_needed:
            device = self.main_device()
            self.r("ip", "-6", "neigh", "add", "proxy", str(guest_ephemeral[2]), "dev", device)
            self.r("ip", "-6", "neigh", "add", "proxy", str(clover_ephemeral[0]), "dev", device)

        # Accept control traffic inside the namespace instead of forwarding it back out.
        self.r("ip", "-n", self.vm_name, "addr", "replace", str(clover_ephemeral), "dev", self.vethi)

        # Namespace -> host.
        vetho_mac = self.r("cat", f"/sys/class/net/{self.vetho}/address").strip()
        self.r("ip", "-n", self.vm_name, "link", "set", "dev", self.vethi, "up")
        self.r("ip", "-n", self.vm_name, "route", "replace", "2000::/3", "via",
               mac_to_ipv6_link_local(vetho_mac), "dev", self.vethi)

    def setup_taps_6(self, gua: str, nics: Sequence[Nic]) -> None:
        guest_ephemeral, _ = self.partition_ephemeral_space(gua)
        # ::1 of the guest half is the guest's gateway and DHCPv6 server.
        gateway = f"{guest_ephemeral[1]}/{guest_ephemeral.prefixlen}"
        for nic in nics:
            self.r("ip", "-n", self.vm_name, "addr", "replace", gateway, "dev", nic.tap)
            self.r("ip", "-n", self.vm_name, "route", "replace", nic.net6, "via",
                   mac_to_ipv6_link_local(nic.mac), "dev", nic.tap)

    def routes4(self, ip4: Optional[str], local_ip4: Optional[str], nics: Sequence[Nic]) -> None:
        """Route the public IPv4 address into the namespace; no-op for IPv6-only VMs."""
        if not ip4:
            log("DEBUG", f"No IPv4 address for {self.vm_name}; skipping IPv4 routes")
            return
        if not local_ip4:
            raise VmSetupError(f"local IPv4 network required to route {ip4} into {self.vm_name}")
        local_net = IPv4Network(local_ip4, strict=False)
        vetho_ip = local_net.network_address
        vethi_ip = vetho_ip + local_net.num_addresses
        public = IPv4Network(ip4, strict=False)

        self.r("ip", "addr", "replace", f"{vetho_ip}/32", "dev", self.vetho)
        self.r("ip", "route", "replace", str(public), "dev", self.vetho)
        self.r("ip", "-n", self.vm_name, "addr", "replace", f"{vethi_ip}/32", "dev", self.vethi)
        self.r("ip", "-n", self.vm_name, "route", "replace", str(vetho_ip), "dev", self.vethi)
        self.r("ip", "-n", self.vm_name, "route", "replace", "default", "via", str(vetho_ip), "dev", self.vethi)
        self.r("sysctl", "-w", f"net.ipv4.conf.{self.vetho}.proxy_arp=1")
        self.netns("sysctl", "-w", f"net.ipv4.conf.{self.vethi}.proxy_arp=1")
        for nic in nics:
            self.r("ip", "-n", self.vm_name, "route", "replace", nic.net4, "dev", nic.tap)
            self.netns("sysctl", "-w", f"net.ipv4.conf.{nic.tap}.proxy_arp=1")

    def write_nat4_config(self, ip4: str, nics: Sequence[Nic]) -> None:
        if not nics:
            log("WARN", f"{self.vm_name} has an IPv4 address but no NICs; NAT table will be empty")
        self.vp.write_nftables_conf(render_nat4_config(ip4, nics))

    def apply_nat4_rules(self) -> None:
        self.netns("nft", "-f", str(self.vp.nftables_conf))

    def forwarding(self) -> None:
        self.netns("sysctl", "-w", "net.ipv6.conf.all.forwarding=1")
        self.netns("sysctl", "-w", "net.ipv4.conf.all.forwarding=1")
        self.netns("sysctl", "-w", "net.ipv4.ip_forward=1")

    def setup_networking(self, skip_persisted: bool, params: NetworkParams) -> None:
        """Configure the namespace end to end.

        With ``skip_persisted`` the files written on first boot (ephemeral
        ranges, NAT rules) are reused rather than rewritten.
        """
        guest_ephemeral, clover_ephemeral = self.partition_ephemeral_space(params.gua)
        if not skip_persisted:
            self.vp.write_guest_ephemeral(str(guest_ephemeral))
            self.vp.write_clover_ephemeral(str(clover_ephemeral))

        self.interfaces(params.nics)
        self.setup_veths_6(guest_ephemeral, clover_ephemeral, params.gua, params.ndp_needed)
        self.setup_taps_6(params.gua, params.nics)
        self.routes4(params.ip4, params.local_ip4, params.nics)
        if params.ip4:
            if not skip_persisted:
                self.write_nat4_config(params.ip4, params.nics)
            self.apply_nat4_rules()
        self.forwarding()
        log("SUCCESS", f"Networking ready for {self.vm_name} (guest {guest_ephemeral}, control {clover_ephemeral})")
