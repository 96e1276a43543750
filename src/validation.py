"""
Manifest Validation - JSON Schema checks for addon manifests.

Group addons carry a manifest document; these helpers reject documents that
lack the fields the rest of the system reads.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

logger = logging.getLogger(__name__)

MANIFEST_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["id", "name", "version"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": {"type": "string", "minLength": 1},
        "version": {"type": "string", "minLength": 1},
        "description": {"type": "string"},
        "resources": {"type": "array"},
        "types": {"type": "array", "items": {"type": "string"}},
        "catalogs": {"type": "array", "items": {"type": "object"}},
        "behaviorHints": {"type": "object"},
    },
}

_manifest_validator = Draft7Validator(
    MANIFEST_SCHEMA, format_checker=Draft7Validator.FORMAT_CHECKER
)


def _format_errors(validator: Draft7Validator, document: Any) -> Optional[str]:
    errors = sorted(validator.iter_errors(document), key=lambda e: list(e.path))
    if not errors:
        return None

    error_messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        error_messages.append(f"{path}: {error.message}")
    return "; ".join(error_messages)


def validate_manifest(manifest: Any) -> Tuple[bool, Optional[str]]:
    """
    Validate an addon manifest document.

    Args:
        manifest: The manifest to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        message = _format_errors(_manifest_validator, manifest)
        return message is None, message
    except ValidationError as e:
        return False, f"Validation error: {str(e)}"
    except Exception as e:
        logger.error(f"Unexpected error during manifest validation: {e}")
        return False, f"Validation failed: {str(e)}"

