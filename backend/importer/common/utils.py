from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import psutil
import yaml

__all__ = [
    "NOT_FOUND",
    "load_yaml",
    "norm_header",
    "make_unique_headers",
    "dig",
    "set_dotted",
    "normalize_contents",
    "resolve_placeholders",
    "memory_usage",
    "parse_scalar",
]


class _NotFound:
    """Sentinel for a dot path that does not resolve (distinct from a None value)."""
    __slots__ = ()

    def __repr__(self) -> str:
        return "NOT_FOUND"

    def __bool__(self) -> bool:
        return False


NOT_FOUND = _NotFound()


def load_yaml(fp: Path) -> Dict[str, Any]:
    return yaml.safe_load(fp.read_text(encoding="utf-8")) or {}


def norm_header(s: str) -> str:
    s = str(s or "").strip()
    s = re.sub(r"\s+", " ", s).rstrip(".")
    return s.lower()


def make_unique_headers(headers: List[str]) -> List[str]:
    seen: Dict[str, int] = {}
    out: List[str] = []
    for h in headers:
        k = norm_header(h)
        cnt = seen.get(k, 0)
        out.append(h if cnt == 0 else f"{h}_{cnt}")
        seen[k] = cnt + 1
    return out


def _step(cur: Any, key: str) -> Any:
    if isinstance(cur, Mapping):
        return cur[key] if key in cur else NOT_FOUND
    if isinstance(cur, (list, tuple)) and key.lstrip("-").isdigit():
        idx = int(key)
        return cur[idx] if -len(cur) <= idx < len(cur) else NOT_FOUND
    return NOT_FOUND


def dig(obj: Any, dotpath: Optional[str]) -> Any:
    """
    Resolve a dot path ("vehicle.engine.size", "images.0") into nested data.

    Returns NOT_FOUND when any segment is missing; a present key holding None
    returns None.
    """
    if not dotpath:
        return obj
    if isinstance(obj, Mapping) and dotpath in obj:
        # Flat rows may legitimately carry dotted column names
        return obj[dotpath]
    cur = obj
    for key in dotpath.split("."):
        cur = _step(cur, key)
        if cur is NOT_FOUND:
            return NOT_FOUND
    return cur


def set_dotted(target: Dict[str, Any], dotted: str, value: Any) -> None:
    cur = target
    parts = dotted.split(".")
    for p in parts[:-1]:
        if p not in cur or not isinstance(cur[p], dict):
            cur[p] = {}
        cur = cur[p]
    cur[parts[-1]] = value


def parse_scalar(raw: str) -> Any:
    """Parse a CLI/env override value: YAML scalars (true, 12, [a, b]) or the raw string."""
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def normalize_contents(contents: bytes | str, encoding: str = "utf-8") -> str:
    """Decode raw bytes, drop a UTF-8 BOM and normalize line endings to \\n."""
    if isinstance(contents, bytes):
        text = contents.decode(encoding, errors="replace")
    else:
        text = contents
    if text.startswith("\ufeff"):
        text = text[1:]
    return text.replace("\r\n", "\n").replace("\r", "\n")


def resolve_placeholders(s: Optional[str], variables: Optional[Mapping[str, str]] = None) -> str:
    """Support {VAR}, ${VAR}, and $VAR placeholders (environment by default)."""
    if s is None:
        return ""
    variables = os.environ if variables is None else variables
    def repl(m):              return variables.get(m.group(1), m.group(0))
    s = re.sub(r"\$\{([A-Za-z0-9_]+)\}", repl, s)
    s = re.sub(r"\{([A-Za-z0-9_]+)\}", repl, s)
    s = re.sub(r"\$([A-Za-z0-9_]+)", repl, s)
    return s


def memory_usage() -> int:
    """Resident set size of this process in bytes."""
    return psutil.Process().memory_info().rss
