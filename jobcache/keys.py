"""
Deterministic key construction for everything stored in Redis.

Every key is ``<prefix><namespace>:<id>[:<field>]`` so that all keys of one
deployment share a prefix and can be matched by a glob pattern.
"""

import re
from typing import Optional

from .errors import InvalidKeyError

SEPARATOR = ":"
DEFAULT_PREFIX = "gmap:"

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_GLOB_CHARS = re.compile(r"[*?\[\]]")


def _check_component(kind: str, value: str) -> None:
    if not isinstance(value, str):
        raise InvalidKeyError(f"Key {kind} must be a string, got {type(value).__name__}")
    if not value:
        raise InvalidKeyError(f"Key {kind} must not be empty")
    if SEPARATOR in value:
        raise InvalidKeyError(f"Key {kind} must not contain '{SEPARATOR}': {value!r}")
    if _CONTROL_CHARS.search(value):
        raise InvalidKeyError(f"Key {kind} must not contain control characters: {value!r}")


def build_key(
    namespace: str,
    id: str,
    field: Optional[str] = None,
    prefix: str = DEFAULT_PREFIX,
) -> str:
    """
    Build a fully prefixed key.

    Args:
        namespace: Entity class, e.g. "job" or "results"
        id: Entity identifier
        field: Optional sub-field, e.g. "tag" or "jobs"
        prefix: Deployment-wide prefix (default: "gmap:")

    Returns:
        The key string

    Raises:
        InvalidKeyError: If any component is empty or contains the separator
            or a control character
    """
    _check_component("namespace", namespace)
    if _GLOB_CHARS.search(namespace):
        raise InvalidKeyError(f"Key namespace must not contain glob characters: {namespace!r}")
    _check_component("id", id)
    parts = [namespace, id]
    if field is not None:
        _check_component("field", field)
        parts.append(field)
    return prefix + SEPARATOR.join(parts)


class KeyBuilder:
    """Key factory bound to one deployment prefix."""

    def __init__(self, prefix: str = DEFAULT_PREFIX):
        if _CONTROL_CHARS.search(prefix) or _GLOB_CHARS.search(prefix):
            raise InvalidKeyError(f"Invalid key prefix: {prefix!r}")
        self.prefix = prefix

    def build(self, namespace: str, id: str, field: Optional[str] = None) -> str:
        return build_key(namespace, id, field, prefix=self.prefix)

    def pattern(self, glob: str = "*") -> str:
        """Prefix a glob pattern so it only matches this deployment's keys."""
        if _CONTROL_CHARS.search(glob):
            raise InvalidKeyError(f"Pattern must not contain control characters: {glob!r}")
        return self.prefix + glob

    def strip(self, full_key: str) -> str:
        """Return a key without the deployment prefix."""
        if full_key.startswith(self.prefix):
            return full_key[len(self.prefix):]
        return full_key
