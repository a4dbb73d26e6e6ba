from typing import Any, Optional

from .placeholders import is_empty


ERROR_MARKERS = ("Error executing tool",)


def extract_path(value: Any, path: Optional[str]) -> Any:
    """Follow a dotted path ("items.0._id") through nested dicts and lists. None when it breaks."""
    if not path:
        return value
    current = value
    for part in str(path).strip().strip(".").split("."):
        if part in ("", "$"):
            continue
        if isinstance(current, list):
            try:
                current = current[int(part.strip("[]"))]
            except (ValueError, IndexError):
                return None
        elif isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        else:
            return None
    return current


def extract_identifier(result: Any) -> Any:
    """First-result identifier: `_id`, then `id`, then the element itself."""
    if isinstance(result, list):
        if not result:
            return None
        first = result[0]
        if isinstance(first, dict):
            return first.get("_id") or first.get("id") or first
        return first
    if isinstance(result, dict):
        return result.get("_id") or result.get("id")
    return None


def is_unusable_result(result: Any) -> bool:
    """Empty lists and lists of tool error strings carry nothing a later step can use."""
    if is_empty(result):
        return True
    if isinstance(result, list):
        return all(isinstance(item, str) and any(m in item for m in ERROR_MARKERS) for item in result)
    if isinstance(result, str):
        return any(m in result for m in ERROR_MARKERS)
    return False
