"""
Data Extractor: pulls named values out of a JSON response by dot path.

    extract({"token": "data.auth.token", "first": "items.0.id"}, body)

An all-digit segment indexes an array, any other segment looks up an object
field. A path that cannot be walked is dropped without error; an unparseable
spec or body (including one nested too deeply to decode) yields an empty
result. This module never raises.
"""

import json
import logging
from typing import Any, Mapping

logger = logging.getLogger(__name__)

_MISSING = object()


def leaf_text(value: Any) -> str:
    """Text form of a JSON leaf."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def walk_path(document: Any, path: str) -> Any:
    """Return the node at `path`, or _MISSING when any segment fails."""
    current = document
    for segment in path.split("."):
        if segment.isascii() and segment.isdigit():
            if not isinstance(current, list):
                return _MISSING
            index = int(segment)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            if not isinstance(current, dict) or segment not in current:
                return _MISSING
            current = current[segment]
    return current


def extract_path(document: Any, path: str) -> str | None:
    node = walk_path(document, path)
    if node is _MISSING:
        return None
    return leaf_text(node)


def _load(raw: Any) -> Any:
    if isinstance(raw, (str, bytes, bytearray)):
        return json.loads(raw)
    return raw


def extract(spec: Mapping[str, Any] | str | None, body: Any) -> dict[str, str]:
    """
    Apply an extraction spec (output name -> path) to a response body.

    Both arguments may be given as JSON text or as already-decoded values.
    """
    if spec is None or (isinstance(spec, str) and not spec.strip()):
        return {}
    try:
        rules = _load(spec)
        document = _load(body)
    except (ValueError, TypeError, RecursionError) as exc:
        logger.info("Extraction skipped, unparseable spec or body: %s", exc)
        return {}
    if not isinstance(rules, dict):
        logger.info("Extraction skipped, spec is not an object")
        return {}

    extracted: dict[str, str] = {}
    for name, path in rules.items():
        if not isinstance(path, str):
            continue
        try:
            value = extract_path(document, path)
        except (ValueError, RecursionError) as exc:
            # leaf too deep (or not serializable) to render as JSON text
            logger.info("Extraction path %r for %r skipped: %s", path, name, exc)
            continue
        if value is None:
            logger.debug("Extraction path %r for %r did not resolve", path, name)
            continue
        extracted[name] = value
    return extracted
