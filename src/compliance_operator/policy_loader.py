"""Policy file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_POLICY_FILE_SIZE_BYTES
from .models import PolicySet

logger = logging.getLogger(__name__)


class PolicyLoadError(Exception):
    """Raised when policy loading or validation fails."""

    pass


def load_policies(policy_path: Path) -> PolicySet:
    """Load and validate the policy set from YAML.

    Both a flat document (``policies: [...]``) and a Kubernetes-style
    wrapper (``apiVersion``/``kind``/``spec``) are accepted.

    Args:
        policy_path: Path to the policy file.

    Returns:
        Validated, immutable policy set.

    Raises:
        PolicyLoadError: If the file cannot be loaded or fails validation.
    """
    if not policy_path.exists():
        raise PolicyLoadError(f"Policy file not found: {policy_path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = policy_path.stat().st_size
    except OSError as e:
        raise PolicyLoadError(f"Failed to stat policy file {policy_path}: {e}") from e

    if file_size > MAX_POLICY_FILE_SIZE_BYTES:
        raise PolicyLoadError(
            f"Policy file exceeds maximum size of {MAX_POLICY_FILE_SIZE_BYTES} bytes: "
            f"{policy_path}"
        )

    try:
        content = policy_path.read_text(encoding="utf-8")
    except OSError as e:
        raise PolicyLoadError(f"Failed to read policy file {policy_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise PolicyLoadError(f"Invalid YAML in {policy_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise PolicyLoadError(f"Policy file must contain a YAML mapping: {policy_path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        policy_data = raw_data.get("spec", {})
        if not isinstance(policy_data, dict):
            raise PolicyLoadError(f"Spec section must be a mapping: {policy_path}")
    else:
        policy_data = raw_data

    try:
        policy_set = PolicySet.model_validate(policy_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise PolicyLoadError(f"Validation failed for {policy_path}:\n{error_list}") from e

    logger.info(
        "Loaded policy set",
        extra={
            "policy_file": str(policy_path),
            "kinds": [k.value for k in policy_set.kinds],
            "declared_resources": len(policy_set.declared_resources()),
        },
    )
    return policy_set
