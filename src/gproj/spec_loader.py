"""Spec file discovery and loading with validation.

SECURITY: The spec file size is checked before reading. Input validation
is performed at the boundary by pydantic.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES, MAX_SPEC_SEARCH_DEPTH, SPEC_FILENAME
from .models import ProjectSpec

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when spec discovery, loading or validation fails."""

    pass


class SpecNotFoundError(SpecLoadError):
    """Raised when no spec file exists in the working directory or its parents."""

    pass


def find_spec(start: Path | None = None) -> Path:
    """Walk up from ``start`` (default: cwd) looking for the spec file.

    Raises:
        SpecNotFoundError: If the filesystem root is reached without a match.
        SpecLoadError: If the search exceeds MAX_SPEC_SEARCH_DEPTH levels.
    """
    path = (start or Path.cwd()).resolve()

    for _ in range(MAX_SPEC_SEARCH_DEPTH):
        candidate = path / SPEC_FILENAME
        if candidate.is_file():
            return candidate

        parent = path.parent
        if parent == path:
            raise SpecNotFoundError(f"{SPEC_FILENAME} file not found")
        path = parent

    raise SpecLoadError(f"took more than {MAX_SPEC_SEARCH_DEPTH} steps up parent hierarchy")


def load_spec(spec_path: Path | None = None) -> ProjectSpec:
    """Load and validate the project spec.

    Args:
        spec_path: Explicit path. If None, the spec is searched for upwards
            from the current directory.

    Returns:
        Validated, immutable ProjectSpec.

    Raises:
        SpecLoadError: If the spec cannot be found, read or validated.
    """
    if spec_path is None:
        try:
            spec_path = find_spec()
        except SpecNotFoundError:
            raise
        except SpecLoadError as e:
            raise SpecLoadError(f"error finding project specification: {e}") from e

    if not spec_path.exists():
        raise SpecLoadError(f"error opening project spec: {spec_path} does not exist")

    # SECURITY: Check file size before reading
    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise SpecLoadError(f"error opening project spec: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"error parsing project spec at {spec_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    try:
        spec = ProjectSpec.model_validate(raw_data)
    except ValidationError as e:
        # Format pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {spec_path}:\n{error_list}") from e

    logger.debug("Loaded spec for project '%s' from %s", spec.id, spec_path)
    return spec
