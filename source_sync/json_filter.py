"""Extract a value from a JSON body by a dotted/bracketed path.

Supported paths look like ``data.items[2].name`` or ``matrix[0][1]``; a
leading ``root.`` is ignored.  Filtering never raises: structural
problems come back as a readable message in place of the content.
"""

from __future__ import annotations

import json
import re
from typing import Any

_SEGMENT_RE = re.compile(r"^([^\[\]]*)((?:\[\d+\])*)$")
_INDEX_RE = re.compile(r"\[(\d+)\]")


def _render(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2, ensure_ascii=False)
    if isinstance(value, str):
        return value
    # true / false / null / numbers in JSON spelling
    return json.dumps(value)


def _split_path(path: str) -> list[tuple[str, list[int]]] | None:
    """Split into (property, [indices]) steps; None when unparsable."""
    steps = []
    for part in path.split("."):
        match = _SEGMENT_RE.match(part)
        if not match:
            return None
        name, brackets = match.groups()
        indices = [int(i) for i in _INDEX_RE.findall(brackets)]
        if not name and not indices:
            return None
        steps.append((name, indices))
    return steps


def extract(data: Any, path: str) -> tuple[bool, Any]:
    """Walk *data* along *path*.

    Returns ``(True, value)`` on success and ``(False, message)`` when the
    path does not fit the data.
    """
    path = path.strip()
    if path == "root":
        path = ""
    elif path.startswith("root."):
        path = path[len("root."):]
    if not path:
        return True, data

    steps = _split_path(path)
    if steps is None:
        return False, f"Path '{path}' is invalid (cannot parse)"

    current = data
    for name, indices in steps:
        if name:
            if not isinstance(current, dict) or name not in current:
                return False, f"Path '{path}' not found (property '{name}' is missing)"
            current = current[name]
        label = name or "value"
        for index in indices:
            if not isinstance(current, list):
                return False, f"Path '{path}' is invalid ('{label}' is not an array)"
            if index >= len(current):
                return False, f"Path '{path}' is invalid (index {index} out of bounds)"
            current = current[index]
            label = f"{label}[{index}]"
    return True, current


def apply_json_filter(body: str, path: str) -> str:
    """Filter a response body; non-JSON bodies are returned unchanged."""
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return body
    _, value = extract(data, path or "")
    return _render(value)
