"""Utility functions for vmhost."""

from __future__ import annotations

import ipaddress
import os
import random
from pathlib import Path
from typing import Union

from vmhost.constants import _LOG_VERBOSE
from vmhost.exceptions import VmSetupError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def sync_parent_dir(path: Union[str, Path]) -> None:
    """fsync the directory holding ``path`` so a new directory entry is durable."""
    fd = os.open(Path(path).parent, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def random_mac() -> str:
    """Generate a random unicast, locally administered MAC address."""
    first = (random.randint(0x00, 0xFF) & 0xFE) | 0x02
    octets = [first] + [random.randint(0x00, 0xFF) for _ in range(5)]
    return ":".join(f"{octet:02x}" for octet in octets)


def mac_to_ipv6_link_local(mac: str) -> str:
    """Derive the EUI-64 link-local address for a MAC address."""
    try:
        octets = [int(part, 16) for part in mac.strip().split(":")]
    except ValueError:
        octets = []
    if len(octets) != 6 or not all(0 <= octet <= 0xFF for octet in octets):
        raise VmSetupError(f"Invalid MAC address '{mac}'")
    octets[0] ^= 0x02
    eui64 = octets[:3] + [0xFF, 0xFE] + octets[3:]
    interface_id = int.from_bytes(bytes(eui64), "big")
    return str(ipaddress.IPv6Address((0xFE80 << 112) | interface_id))
