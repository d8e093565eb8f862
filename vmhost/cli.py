"""CLI entry points for vmhost."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Dict, List, Optional, TextIO

from vmhost.config import load_image_catalog, load_manifest, load_params, parse_secrets
from vmhost.exceptions import ParameterError, VmSetupError
from vmhost.models import KeyWrappingSecret, validate_vm_name
from vmhost.paths import VmPath
from vmhost.utils import log
from vmhost.vm import VmSetup, secrets_for


def read_secrets(stream: Optional[TextIO] = None) -> Dict[str, KeyWrappingSecret]:
    """Read wrapping secrets from ``stream``; an interactive terminal supplies none."""
    stream = stream or sys.stdin
    if stream.isatty():
        return {}
    return parse_secrets(stream.read())


def list_images(config_path: Optional[Path] = None) -> None:
    """Print the boot images the agent can download."""
    images = load_image_catalog(config_path)
    if not images:
        log("WARN", "No boot images found")
        return
    max_key = max(len(k) for k in images)
    for key in sorted(images):
        info = images[key]
        name = info.get("name", key)
        image_format = info.get("format", "qcow2")
        print(f"  {key:<{max_key}}  {name}  (format={image_format})")


def cmd_setup(args: argparse.Namespace) -> None:
    params = load_params(Path(args.params))
    secrets = secrets_for(params, read_secrets())
    VmSetup(params.vm_name).setup(params, secrets)


def cmd_recreate_unpersisted(args: argparse.Namespace) -> None:
    vm_name = validate_vm_name(args.vm_name)
    params = load_manifest(VmPath(vm_name))
    if params is None:
        raise ParameterError(f"VM {vm_name} has no manifest; run setup first")
    secrets = secrets_for(params, read_secrets())
    VmSetup(vm_name).recreate_unpersisted(params, secrets)


def cmd_purge(args: argparse.Namespace) -> None:
    VmSetup(args.vm_name).purge()


def cmd_list_images(args: argparse.Namespace) -> None:
    list_images(Path(args.config) if args.config else None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vmhost", description="Per-host VM setup agent")
    sub = parser.add_subparsers(dest="command", required=True)

    setup = sub.add_parser("setup", help="Prepare a new VM (wrapping secrets JSON on stdin)")
    setup.add_argument("params", help="Path to the VM parameters JSON file")
    setup.set_defaults(func=cmd_setup)

    recreate = sub.add_parser(
        "recreate-unpersisted",
        help="Rebuild state lost on host reboot from the VM manifest (wrapping secrets JSON on stdin)",
    )
    recreate.add_argument("vm_name")
    recreate.set_defaults(func=cmd_recreate_unpersisted)

    purge = sub.add_parser("purge", help="Remove every trace of a VM")
    purge.add_argument("vm_name")
    purge.set_defaults(func=cmd_purge)

    images = sub.add_parser("list-images", help="List available boot images and exit")
    images.add_argument("--config", default=None, help="Boot image catalog (YAML)")
    images.set_defaults(func=cmd_list_images)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        args.func(args)
    except VmSetupError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
    return 0
