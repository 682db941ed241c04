"""Step input mapping.

A step's ``input_mapping`` maps a parameter name to either a literal value or
a reference into an earlier step's recorded result:

    {"titles": "step:pick-titles:gate_response.selected_options"}

Unresolvable references never raise. A missing step omits the parameter; a
missing path segment resolves to None.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "step:"


def get_nested_value(obj: Any, path: str) -> Any:
    """Walk a dot path through nested mappings (and sequences, by index)."""
    current = obj
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, Sequence) and not isinstance(current, str) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def resolve_input_mapping(
    mapping: Mapping[str, Any], step_results: Mapping[str, Mapping[str, Any]]
) -> dict[str, Any]:
    resolved: dict[str, Any] = {}
    for param, reference in mapping.items():
        if not isinstance(reference, str) or not reference.startswith(REFERENCE_PREFIX):
            resolved[param] = reference
            continue

        parts = reference.split(":")
        if len(parts) < 3:
            continue

        step_id = parts[1]
        # the path may itself contain ':'
        dot_path = ":".join(parts[2:])
        result = step_results.get(step_id)
        if result is None:
            logger.warning("Input mapping: step %s not found in results", step_id)
            continue

        resolved[param] = get_nested_value(result, dot_path)
    return resolved
