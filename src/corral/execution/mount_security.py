"""Mount allowlist validation for containers.

The allowlist lives at MOUNT_ALLOWLIST_PATH, outside the project root, so an
agent can never edit its own policy. It is read once per process: a missing,
unparseable or structurally invalid file is cached as ``None`` and every
additional mount is denied until restart.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from corral.execution.errors import AllowlistUnavailable, MountValidationError
from corral.groups.types import AdditionalMount, AllowedRoot, MountAllowlist
from corral.infrastructure.config import MOUNT_ALLOWLIST_PATH
from corral.infrastructure.logger import logger

# Always blocked, whatever the user-supplied allowlist says
DEFAULT_BLOCKED_PATTERNS: list[str] = [
    ".ssh",
    ".gnupg",
    ".gpg",
    ".aws",
    ".azure",
    ".gcloud",
    ".kube",
    ".docker",
    "credentials",
    ".env",
    ".netrc",
    ".npmrc",
    ".pypirc",
    "id_rsa",
    "id_ed25519",
    "private_key",
    ".secret",
]

_UNSET = object()
_cached_allowlist: MountAllowlist | None | object = _UNSET


@dataclass
class MountValidationResult:
    allowed: bool
    reason: str
    real_host_path: str | None = None
    resolved_container_path: str | None = None
    effective_readonly: bool | None = None


@dataclass
class ValidatedMount:
    host_path: str
    container_path: str  # absolute, under /workspace/extra
    readonly: bool


def _reset_cache() -> None:
    """For tests only."""
    global _cached_allowlist
    _cached_allowlist = _UNSET


def _read_allowlist(path: Path) -> MountAllowlist:
    if not path.exists():
        raise AllowlistUnavailable(f"Mount allowlist not found at {path}")
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        raise AllowlistUnavailable(f"Cannot read mount allowlist: {exc}") from exc
    try:
        allowlist = MountAllowlist.model_validate(data)
    except ValidationError as exc:
        raise AllowlistUnavailable(f"Invalid mount allowlist: {exc.error_count()} error(s)") from exc

    merged = list(dict.fromkeys([*DEFAULT_BLOCKED_PATTERNS, *allowlist.blocked_patterns]))
    return allowlist.model_copy(update={"blocked_patterns": merged})


def load_mount_allowlist() -> MountAllowlist | None:
    """Load and cache the allowlist. Returns None when it is unavailable."""
    global _cached_allowlist
    if _cached_allowlist is not _UNSET:
        return _cached_allowlist  # type: ignore[return-value]

    try:
        allowlist = _read_allowlist(MOUNT_ALLOWLIST_PATH)
    except AllowlistUnavailable as exc:
        logger.warning(
            "Mount allowlist unavailable, additional mounts will be blocked",
            path=str(MOUNT_ALLOWLIST_PATH),
            reason=str(exc),
        )
        _cached_allowlist = None
        return None

    logger.info(
        "Mount allowlist loaded",
        path=str(MOUNT_ALLOWLIST_PATH),
        allowed_roots=len(allowlist.allowed_roots),
        blocked_patterns=len(allowlist.blocked_patterns),
    )
    _cached_allowlist = allowlist
    return allowlist


def _expand_path(p: str) -> str:
    """Expand ~ and make absolute. Does not follow symlinks."""
    return os.path.abspath(os.path.expanduser(p))


def _real_path(p: str) -> str | None:
    """Symlink-resolved absolute path, or None if nothing exists there."""
    expanded = _expand_path(p)
    if not os.path.exists(expanded):
        return None
    return os.path.realpath(expanded)


def _matches_blocked_pattern(real_path: str, patterns: list[str]) -> str | None:
    """Return the first pattern found in the path, or None."""
    for pattern in patterns:
        if pattern in real_path:
            return pattern
    return None


def _find_allowed_root(real_path: str, roots: list[AllowedRoot]) -> AllowedRoot | None:
    for root in roots:
        real_root = _real_path(root.path)
        if real_root is None:
            continue
        if real_path == real_root or real_path.startswith(real_root.rstrip(os.sep) + os.sep):
            return root
    return None


def validate_container_path(container_path: str) -> tuple[bool, str]:
    """Check the container-side path on its own. Returns (ok, reason)."""
    if not container_path or not container_path.strip():
        return False, "must be non-empty"
    if container_path.startswith("/"):
        return False, "must be relative to /workspace/extra"
    if ".." in container_path.split("/"):
        return False, "must not contain '..'"
    return True, ""


def _check(mount: AdditionalMount, is_main: bool, allowlist: MountAllowlist) -> MountValidationResult:
    container_path = mount.container_path or Path(mount.host_path.rstrip("/")).name
    ok, why = validate_container_path(container_path)
    if not ok:
        raise MountValidationError(f'Invalid container path "{container_path}": {why}')

    real_host_path = _real_path(mount.host_path)
    if real_host_path is None:
        raise MountValidationError(f'Host path does not exist: "{mount.host_path}"')

    blocked = _matches_blocked_pattern(real_host_path, allowlist.blocked_patterns)
    if blocked is not None:
        raise MountValidationError(f'Path matches blocked pattern "{blocked}": "{real_host_path}"')

    root = _find_allowed_root(real_host_path, allowlist.allowed_roots)
    if root is None:
        roots = ", ".join(_expand_path(r.path) for r in allowlist.allowed_roots) or "(none)"
        raise MountValidationError(f'Path "{real_host_path}" is not under any allowed root. Allowed roots: {roots}')

    effective_readonly = True
    if not mount.readonly and root.allow_read_write:
        effective_readonly = not is_main and allowlist.non_main_read_only

    return MountValidationResult(
        allowed=True,
        reason=f'Allowed under root "{root.path}"' + (f" ({root.description})" if root.description else ""),
        real_host_path=real_host_path,
        resolved_container_path=container_path,
        effective_readonly=effective_readonly,
    )


def validate_mount(mount: AdditionalMount, is_main: bool) -> MountValidationResult:
    """Validate one additional mount request against the allowlist."""
    allowlist = load_mount_allowlist()
    if allowlist is None:
        return MountValidationResult(
            allowed=False,
            reason=f"No mount allowlist configured at {MOUNT_ALLOWLIST_PATH}",
        )
    try:
        return _check(mount, is_main, allowlist)
    except MountValidationError as exc:
        return MountValidationResult(allowed=False, reason=str(exc))


def validate_additional_mounts(
    mounts: list[AdditionalMount], group_folder: str, is_main: bool
) -> list[ValidatedMount]:
    """Validate every requested mount and return the accepted subset."""
    validated: list[ValidatedMount] = []
    for mount in mounts:
        result = validate_mount(mount, is_main)
        if not result.allowed:
            logger.warning(
                "Additional mount REJECTED",
                group=group_folder,
                requested_path=mount.host_path,
                container_path=mount.container_path,
                reason=result.reason,
            )
            continue

        assert result.real_host_path is not None and result.resolved_container_path is not None
        validated.append(
            ValidatedMount(
                host_path=result.real_host_path,
                container_path=f"/workspace/extra/{result.resolved_container_path}",
                readonly=bool(result.effective_readonly),
            )
        )
        logger.debug(
            "Additional mount validated",
            group=group_folder,
            host_path=result.real_host_path,
            container_path=result.resolved_container_path,
            readonly=result.effective_readonly,
        )
    return validated


def generate_allowlist_template() -> str:
    """Starter allowlist for ``corral allowlist-template``."""
    template = {
        "allowedRoots": [
            {"path": "~/projects", "allowReadWrite": True, "description": "Development projects"},
            {"path": "~/repos", "allowReadWrite": True, "description": "Git repositories"},
            {"path": "~/Documents/work", "allowReadWrite": False, "description": "Work documents (read-only)"},
        ],
        "blockedPatterns": ["password", "secret", "token"],
        "nonMainReadOnly": True,
    }
    return json.dumps(template, indent=2)
