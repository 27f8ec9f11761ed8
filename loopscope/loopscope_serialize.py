from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional
import collections.abc

import yaml

from loopscope.loopscope_datatypes import Scope, Closure, UNDEFINED


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        return data.decode(encoding or 'utf-8', errors='replace')
    if isinstance(data, str):
        return data
    return str(data)


def _to_builtin(obj: Any) -> Any:
    # Runtime values become plain data; scopes and closures are summarized.
    if obj is UNDEFINED:
        return None
    if isinstance(obj, Scope):
        return {"kind": obj.kind, "bindings": _to_builtin(obj.bindings)}
    if isinstance(obj, Closure):
        return {"closure": getattr(obj.body, "__name__", "fn"), "scope": obj.definition_scope.kind}
    if isinstance(obj, (list, tuple)):
        return [_to_builtin(x) for x in obj]
    if isinstance(obj, collections.abc.Mapping):
        return {str(k): _to_builtin(v) for k, v in obj.items()}
    return obj


def detect_format(path: Optional[str | Path] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns a canonical format name among: 'json', 'yaml'.
    Uses the file extension first; falls back to simple data sniffing if provided.
    """
    if path is not None:
        ext = Path(path).suffix.lower()
        if ext == ".json":
            return 'json'
        if ext in (".yaml", ".yml"):
            return 'yaml'
    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
        if s:
            return 'yaml'
    return None


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str,
                *,
                fmt: Optional[str] = None,
                path: Optional[str | Path] = None) -> Any:
    """
    Convert scenario text (bytes/string) to native Python structures.
    Supported fmt: 'json', 'yaml'. If fmt is None, uses the path, then sniffing.
    JSON that fails to parse is retried as YAML (a superset).
    """
    text = _norm_text(data)
    f = fmt or detect_format(path, text)
    if f == 'json':
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return yaml.safe_load(text)
    if f == 'yaml':
        return yaml.safe_load(text)
    if f is None:
        return None
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


def serialize(value: Any, *, fmt: str, pretty: bool = True) -> str:
    """
    Convert a native Python/loopscope value into a textual representation.
    - fmt: 'json' | 'yaml'
    """
    f = (fmt or '').lower()
    built = _to_builtin(value)
    if f == 'json':
        return json.dumps(built, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


def load_scenario_file(path: str | Path) -> Any:
    """Reads a scenario document from disk, picking the format from its extension."""
    p = Path(path)
    return deserialize(p.read_text(encoding="utf-8"), path=p)


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "load_scenario_file",
]
