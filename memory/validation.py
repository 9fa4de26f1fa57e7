"""
Input limits, allow-lists and sanitizers for memory writes.

All failures raise InvalidInput naming the offending field.
"""

import json
import math
import re
import unicodedata
import uuid
from typing import Any, Dict, List, Optional

from errors import InvalidInput

MAX_NAME_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 1000
MAX_CONTENT_LENGTH = 25000
MAX_SOURCE_LENGTH = 200
MAX_PREDICATE_LENGTH = 100
MAX_METADATA_SIZE = 8192  # serialized JSON characters
METADATA_MAX_DEPTH = 10
METADATA_MAX_KEYS = 100
MAX_BATCH_SIZE = 50
MAX_ENTITY_TYPES_FILTER = 10

ENTITY_TYPES = (
    "person",
    "place",
    "event",
    "concept",
    "organization",
    "document",
    "project",
    "task",
    "note",
    "other",
)

KNOWN_PREDICATES = (
    "knows",
    "works_with",
    "located_at",
    "part_of",
    "related_to",
    "mentions",
    "created_by",
    "assigned_to",
    "depends_on",
    "contains",
    "references",
    "follows",
    "precedes",
    "causes",
    "contradicts",
    "supports",
    "other",
)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_CUSTOM_PREDICATE = re.compile(r"^[\w \-:]+$", re.UNICODE)


def sanitize_string(value: str) -> str:
    """Drop NUL and control characters (keeping \\n and \\t), trim, NFC-normalize."""
    value = value.replace("\0", "")
    value = _CONTROL_CHARS.sub("", value)
    return unicodedata.normalize("NFC", value.strip())


def clean_text(field: str, value: Any, max_length: int, required: bool = True) -> Optional[str]:
    if value is None:
        if required:
            raise InvalidInput(field, "is required")
        return None
    if not isinstance(value, str):
        raise InvalidInput(field, "must be a string")
    value = sanitize_string(value)
    if not value:
        if required:
            raise InvalidInput(field, "must not be empty")
        return None
    if len(value) > max_length:
        raise InvalidInput(field, f"must be at most {max_length} characters")
    return value


def validate_entity_type(value: Any, field: str = "type") -> str:
    value = clean_text(field, value, 50)
    value = value.lower()
    if value not in ENTITY_TYPES:
        raise InvalidInput(field, f"must be one of {', '.join(ENTITY_TYPES)}")
    return value


def validate_predicate(value: Any, field: str = "predicate") -> str:
    value = clean_text(field, value, MAX_PREDICATE_LENGTH)
    if value in KNOWN_PREDICATES:
        return value
    if not _CUSTOM_PREDICATE.match(value):
        raise InvalidInput(field, "custom predicates may only contain letters, digits, spaces, '_', '-' and ':'")
    return value


def validate_strength(value: Any, field: str = "strength") -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInput(field, "must be a number")
    if math.isnan(value) or value < 0.0 or value > 1.0:
        raise InvalidInput(field, "must be between 0 and 1")
    return float(value)


def validate_uuid(value: Any, field: str) -> str:
    if not isinstance(value, str):
        raise InvalidInput(field, "must be a UUID string")
    try:
        return str(uuid.UUID(value))
    except ValueError:
        raise InvalidInput(field, "must be a valid UUID")


def validate_entity_types(values: Optional[List[str]], field: str = "entity_types") -> Optional[List[str]]:
    if not values:
        return None
    if len(values) > MAX_ENTITY_TYPES_FILTER:
        raise InvalidInput(field, f"at most {MAX_ENTITY_TYPES_FILTER} types may be given")
    return [validate_entity_type(v, f"{field}[{i}]") for i, v in enumerate(values)]


def _sanitize_value(value: Any, field: str, depth: int) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        return sanitize_string(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidInput(field, "numbers must be finite")
        return value
    if isinstance(value, (list, tuple)):
        if depth >= METADATA_MAX_DEPTH:
            raise InvalidInput(field, f"nesting deeper than {METADATA_MAX_DEPTH} levels")
        return [_sanitize_value(item, f"{field}[{i}]", depth + 1) for i, item in enumerate(value)]
    if isinstance(value, dict):
        if depth >= METADATA_MAX_DEPTH:
            raise InvalidInput(field, f"nesting deeper than {METADATA_MAX_DEPTH} levels")
        if len(value) > METADATA_MAX_KEYS:
            raise InvalidInput(field, f"objects may have at most {METADATA_MAX_KEYS} keys")
        result = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise InvalidInput(field, "keys must be strings")
            clean_key = sanitize_string(key)
            if not clean_key:
                raise InvalidInput(field, "keys must not be empty")
            result[clean_key] = _sanitize_value(item, f"{field}.{clean_key}", depth + 1)
        return result
    raise InvalidInput(field, f"unsupported value type {type(value).__name__}")


def sanitize_metadata(metadata: Any, field: str = "metadata") -> Optional[Dict[str, Any]]:
    """
    Validate metadata as a JSON object of primitives, lists and nested objects.

    Unsupported leaves are rejected, never coerced.
    """
    if metadata is None:
        return None
    if not isinstance(metadata, dict):
        raise InvalidInput(field, "must be an object")
    sanitized = _sanitize_value(metadata, field, 0)
    size = len(json.dumps(sanitized, ensure_ascii=False, separators=(",", ":")))
    if size > MAX_METADATA_SIZE:
        raise InvalidInput(field, f"must not exceed {MAX_METADATA_SIZE} characters when serialized")
    return sanitized
