"""Per-task sandbox directories and environment overlays."""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

_SAFE_IDENTIFIER = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


class ProvisionErrorKind(str, Enum):
    UNSAFE_IDENTIFIER = "unsafe_identifier"
    IO_FAILURE = "io_failure"


class ProvisionError(RuntimeError):
    """Sandbox could not be allocated."""

    def __init__(self, message: str, *, kind: ProvisionErrorKind) -> None:
        super().__init__(message)
        self.kind = kind
        self.transient = kind == ProvisionErrorKind.IO_FAILURE


@dataclass(slots=True)
class Sandbox:
    """Filesystem root plus environment overlay owned by one worker pass."""

    correlation_id: str
    root: Path
    env: dict[str, str] = field(default_factory=dict)


def is_safe_identifier(value: str) -> bool:
    """Return True if value can be used as a single path segment."""

    return bool(_SAFE_IDENTIFIER.fullmatch(value)) and ".." not in value


class SandboxProvisioner:
    """Creates and removes per-task sandbox directories under one ephemeral root."""

    def __init__(self, root_dir: Path, *, keep_sandboxes: bool = False) -> None:
        self.root_dir = root_dir
        self.keep_sandboxes = keep_sandboxes

    def acquire(self, correlation_id: str) -> Sandbox:
        if not is_safe_identifier(correlation_id):
            raise ProvisionError(
                f"Unsafe correlation id for sandbox path: {correlation_id!r}",
                kind=ProvisionErrorKind.UNSAFE_IDENTIFIER,
            )

        base_dir = self.root_dir / correlation_id
        cache_dir = base_dir / ".cache"
        config_dir = base_dir / ".config"
        data_dir = base_dir / ".local" / "share"
        tmp_dir = base_dir / "tmp"
        try:
            # exist_ok tolerates redelivery of the same task.
            for directory in (base_dir, cache_dir, config_dir, data_dir, tmp_dir):
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise ProvisionError(
                f"Failed to create sandbox {base_dir}: {error}",
                kind=ProvisionErrorKind.IO_FAILURE,
            ) from error

        return Sandbox(
            correlation_id=correlation_id,
            root=base_dir,
            env={
                "HOME": str(base_dir),
                "XDG_CACHE_HOME": str(cache_dir),
                "XDG_CONFIG_HOME": str(config_dir),
                "XDG_DATA_HOME": str(data_dir),
                "TMPDIR": str(tmp_dir),
            },
        )

    def release(self, sandbox: Sandbox) -> None:
        """Remove the sandbox directory. Failures are logged, never raised."""

        if self.keep_sandboxes:
            logger.info(
                "Keeping sandbox: correlation_id=%s path=%s",
                sandbox.correlation_id,
                sandbox.root,
            )
            return
        try:
            shutil.rmtree(sandbox.root)
        except FileNotFoundError:
            return
        except OSError as error:
            logger.warning(
                "Sandbox cleanup failed: correlation_id=%s path=%s error=%s",
                sandbox.correlation_id,
                sandbox.root,
                error,
            )
