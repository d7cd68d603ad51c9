"""Profile-based settings resolution.

A profile is a YAML document under ``<resourceDirectory>/<version>/profiles``
whose ``spec.values`` tree supplies default settings. Profiles are applied in
order, later ones overriding earlier ones, and user settings are applied last.
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import structlog
import yaml

from mesh_operator.services.mesh.exceptions import ProfileError
from mesh_operator.utils.merge import merge_overwrite
from mesh_operator.utils.values import Values

logger = structlog.get_logger()

PROFILE_SUFFIX = ".yaml"


def resolve(
    profiles_dir: str | Path,
    profiles: Iterable[str],
    user_values: dict[str, Any] | None,
) -> Values:
    """Merge the named profiles and user settings into one settings document.

    Args:
        profiles_dir: Directory holding ``<profile>.yaml`` files.
        profiles: Profile names in application order.
        user_values: Settings that override every profile.

    Returns:
        The merged settings document.

    Raises:
        ProfileError: If a profile name is invalid or a profile cannot be read.
    """
    defaults = get_values_from_profiles(profiles_dir, profiles)
    return Values(merge_overwrite(defaults, user_values))


def get_values_from_profiles(profiles_dir: str | Path, profiles: Iterable[str]) -> dict[str, Any]:
    """Merge profiles in order, skipping names that were already applied."""
    directory = os.path.abspath(profiles_dir)
    values: dict[str, Any] = {}
    applied: set[str] = set()

    for profile in profiles:
        if not profile:
            raise ProfileError("profile name cannot be empty")
        if profile in applied:
            continue
        applied.add(profile)

        file = os.path.abspath(os.path.join(directory, profile + PROFILE_SUFFIX))
        # the file must stay a direct child of the profiles directory
        if os.path.dirname(file) != directory:
            raise ProfileError(f"invalid profile name {profile}", profile=profile)

        values = merge_overwrite(values, get_profile_values(Path(file)))
        logger.debug("profile_applied", profile=profile, profiles_dir=directory)

    return values


def get_profile_values(file: Path) -> dict[str, Any]:
    """Read the ``spec.values`` tree of one profile file.

    A profile without ``spec.values`` contributes nothing.
    """
    try:
        contents = file.read_text()
    except OSError as e:
        raise ProfileError(f"failed to read profile file {file}: {e}", profile=file.stem) from e

    try:
        document = yaml.safe_load(contents)
    except yaml.YAMLError as e:
        raise ProfileError(
            f"failed to unmarshal profile YAML {file}: {e}", profile=file.stem
        ) from e

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ProfileError(f"profile {file} is not a mapping", profile=file.stem)
    spec = document.get("spec")
    if spec is None:
        return {}
    if not isinstance(spec, dict):
        raise ProfileError(f"spec in {file} is not a mapping", profile=file.stem)
    if spec.get("values") is None:
        return {}

    values = spec["values"]
    if not isinstance(values, dict):
        raise ProfileError(f"spec.values in {file} is not a mapping", profile=file.stem)
    return values
