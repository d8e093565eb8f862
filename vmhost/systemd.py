"""systemd units that run a VM's monitor and its dnsmasq inside the VM namespace."""

from __future__ import annotations

import textwrap
from typing import List

from vmhost.constants import CH_REMOTE_BIN, CLOUD_HYPERVISOR_BIN, CLOUD_HYPERVISOR_FIRMWARE, DNSMASQ_BIN
from vmhost.models import VmParams
from vmhost.paths import VmPath


def _cpus_arg(params: VmParams) -> str:
    # Topology is threads_per_core:cores_per_die:dies_per_package:packages.
    return f"boot={params.max_vcpus},topology={params.cpu_topology}"


def _monitor_args(vp: VmPath, params: VmParams) -> List[str]:
    args = [
        f"--api-socket path={vp.ch_api_sock}",
        f"--kernel {CLOUD_HYPERVISOR_FIRMWARE}",
    ]
    for volume in sorted(params.storage_volumes, key=lambda v: v.disk_index):
        args.append(f"--disk vhost_user=true,socket={vp.vhost_sock(volume.disk_index)},num_queues=1,queue_size=256")
    args += [
        f"--disk path={vp.cloudinit_img}",
        f"--serial file={vp.serial_log}",
        "--console off",
        f"--cpus {_cpus_arg(params)}",
        f"--memory size={params.mem_gib}G,hugepages=on,hugepage_size=1G",
    ]
    for nic in params.network.nics:
        args.append(f"--net mac={nic.mac},tap={nic.tap},num_queues={params.max_vcpus * 2}")
    return args


def render_vm_unit(vp: VmPath, params: VmParams) -> str:
    """Unit for the VM monitor, started after and stopped with the VM's dnsmasq."""
    command = f"{CLOUD_HYPERVISOR_BIN} \\\n      " + " \\\n      ".join(_monitor_args(vp, params))
    return textwrap.dedent(
        """\
        [Unit]
        Description={vm}
        After=network.target
        After={vm}-dnsmasq.service
        Requires={vm}-dnsmasq.service

        [Service]
        NetworkNamespacePath={netns}
        ExecStartPre=/usr/bin/rm -f {api_sock}
        ExecStart={command}
        ExecStop={ch_remote} --api-socket {api_sock} shutdown-vmm
        Restart=no
        User={vm}
        Group={vm}
        LimitNOFILE=500000
        LimitMEMLOCK=8796093022208
        """
    ).format(
        vm=params.vm_name,
        netns=vp.netns,
        api_sock=vp.ch_api_sock,
        command=command,
        ch_remote=CH_REMOTE_BIN,
    )


def render_dnsmasq_unit(vp: VmPath) -> str:
    return textwrap.dedent(
        """\
        [Unit]
        Description=A lightweight DHCP and caching DNS server
        After=network.target

        [Service]
        NetworkNamespacePath={netns}
        Type=simple
        ExecStartPre={dnsmasq} --test
        ExecStart={dnsmasq} -k -h -C {conf} --log-debug --user={vm} --group={vm}
        ExecReload=/bin/kill -HUP $MAINPID
        ProtectSystem=strict
        PrivateDevices=yes
        PrivateTmp=yes
        ProtectKernelTunables=yes
        ProtectControlGroups=yes
        ProtectHome=yes
        NoNewPrivileges=yes
        ReadOnlyPaths=/
        """
    ).format(netns=vp.netns, dnsmasq=DNSMASQ_BIN, conf=vp.dnsmasq_conf, vm=vp.vm_name)
