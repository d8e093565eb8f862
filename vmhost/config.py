"""Boot image catalog, invocation parameters and secrets for vmhost."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmhost.constants import DEFAULT_CONFIG_PATH, IMAGE_FORMATS
from vmhost.exceptions import ParameterError, VmSetupError
from vmhost.models import KeyWrappingSecret, StorageVolume, VmParams, validate_storage_volumes
from vmhost.paths import VmPath


def load_image_catalog(config_path: Optional[Path] = None) -> Dict[str, Dict[str, str]]:
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    if not config_path.exists():
        raise VmSetupError(f"Boot image catalog missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise VmSetupError(f"Boot image catalog {config_path} contains invalid YAML: {exc}")
    images = data.get("images", {})
    if not isinstance(images, dict):
        raise VmSetupError(f"Boot image catalog {config_path}: 'images' must be a mapping")
    return images


def load_image_config(image_name: str, config_path: Optional[Path] = None) -> Dict[str, str]:
    images = load_image_catalog(config_path)
    if image_name not in images:
        available = "\n    ".join(sorted(images.keys()))
        raise VmSetupError(
            f"Unknown boot image '{image_name}'.\n"
            f"  Available images:\n"
            f"    {available}"
        )
    info = dict(images[image_name])
    if not info.get("url"):
        raise VmSetupError(f"Boot image '{image_name}' has no url")
    image_format = str(info.get("format", "qcow2")).lower()
    if image_format not in IMAGE_FORMATS:
        supported = ", ".join(sorted(IMAGE_FORMATS))
        raise VmSetupError(f"Boot image '{image_name}' has unsupported format '{image_format}'. Supported: {supported}")
    info["format"] = image_format
    return info


def _load_json(text: str, label: str) -> Any:
    try:
        return json.loads(text)
    except ValueError as exc:
        raise ParameterError(f"{label} is not valid JSON: {exc}")


def parse_params(text: str) -> VmParams:
    data = _load_json(text, "VM parameters")
    if not isinstance(data, dict):
        raise ParameterError("VM parameters must be a JSON object")
    return VmParams.from_dict(data)


def load_params(path: Path) -> VmParams:
    if not path.exists():
        raise ParameterError(f"Parameter file not found: {path}")
    return parse_params(path.read_text(encoding="utf-8"))


def load_manifest(vp: VmPath) -> Optional[VmParams]:
    """Read the persisted ``prep.json`` of a VM; ``None`` when it was never written."""
    if not vp.prep_json.exists():
        return None
    return parse_params(vp.prep_json.read_text(encoding="utf-8"))


def load_manifest_volumes(vp: VmPath) -> Optional[List[StorageVolume]]:
    """Read only the storage volumes recorded in ``prep.json``.

    Purge needs nothing else, so a manifest holding just ``storage_volumes``
    is enough. ``None`` when the manifest was never written.
    """
    if not vp.prep_json.exists():
        return None
    data = _load_json(vp.prep_json.read_text(encoding="utf-8"), f"Manifest {vp.prep_json}")
    if not isinstance(data, dict):
        raise ParameterError(f"Manifest {vp.prep_json} must be a JSON object")
    raw = data.get("storage_volumes", [])
    if not isinstance(raw, list) or not all(isinstance(item, dict) for item in raw):
        raise ParameterError(f"Manifest {vp.prep_json}: 'storage_volumes' must be a list of objects")
    volumes = [StorageVolume.from_dict(item) for item in raw]
    validate_storage_volumes(volumes)
    return volumes


def parse_secrets(text: str) -> Dict[str, KeyWrappingSecret]:
    """Parse ``{"storage": {"<device_id>": {...}}}`` into per-device wrapping secrets."""
    if not text.strip():
        return {}
    data = _load_json(text, "Secrets")
    if not isinstance(data, dict):
        raise ParameterError("Secrets must be a JSON object")
    storage = data.get("storage", {}) or {}
    if not isinstance(storage, dict):
        raise ParameterError("Secrets: 'storage' must map device ids to key wrapping secrets")
    secrets: Dict[str, KeyWrappingSecret] = {}
    for device_id, raw in storage.items():
        if not isinstance(raw, dict):
            raise ParameterError(f"Secrets: entry for '{device_id}' must be an object")
        secrets[device_id] = KeyWrappingSecret.from_dict(raw)
    return secrets
