"""Custom exceptions for vmhost."""

from __future__ import annotations

import re
import shlex
from typing import Sequence, Union


class VmSetupError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ParameterError(VmSetupError):
    """Invocation parameters or secrets are malformed."""


class CommandFailed(VmSetupError):
    """A privileged external command exited non-zero."""

    def __init__(self, command: Sequence[str], exit_code: int, stderr: str = "") -> None:
        self.command = list(command)
        self.exit_code = exit_code
        self.stderr = stderr or ""
        detail = self.stderr.strip()
        message = f"Command failed (exit {exit_code}): {shlex.join(self.command)}"
        if detail:
            message += f"\n  stderr: {detail}"
        super().__init__(message)

    def stderr_matches(self, pattern: Union[str, re.Pattern]) -> bool:
        return re.search(pattern, self.stderr) is not None


class ImageError(VmSetupError):
    """Base class for boot image failures."""


class ImageDownloadFailed(ImageError):
    pass


class ImageConvertFailed(ImageError):
    pass


class ImageTooLarge(ImageError):
    """Boot image does not fit into the requested disk."""

    def __init__(self, image_size: int, disk_size: int) -> None:
        self.image_size = image_size
        self.disk_size = disk_size
        super().__init__(
            f"Image size greater than requested disk size ({image_size} bytes > {disk_size} bytes)"
        )


class InvalidPrefix(VmSetupError, ValueError):
    """An IPv6 network has no host bit left to split."""


class KeyMaterialUnreadable(VmSetupError):
    """Wrapping or unwrapping a data encryption key failed."""
