from __future__ import annotations
from abc import abstractmethod
from typing import Any, Dict, List, Mapping, Optional

from importer.common.exceptions import ReaderError
from importer.common.logger import Category, get_logger
from importer.common.utils import NOT_FOUND, dig, normalize_contents
from importer.plugins.api import Reader, ReadResult

log = get_logger()


def trim_values(value: Any) -> Any:
    """Strip every string value, descending into dicts and lists."""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict):
        return {k: trim_values(v) for k, v in value.items()}
    if isinstance(value, list):
        return [trim_values(v) for v in value]
    return value


def as_rows(data: Any) -> List[Dict[str, Any]]:
    """
    Coerce a parsed document into row records.

    A mapping becomes a single row; scalar list items become {"value": x}.
    """
    if data is None:
        return []
    if isinstance(data, Mapping):
        return [dict(data)]
    if isinstance(data, list):
        return [dict(item) if isinstance(item, Mapping) else {"value": item} for item in data]
    return [{"value": data}]


def collect_headers(rows: List[Dict[str, Any]]) -> List[str]:
    """Union of row keys in first-seen order."""
    seen: Dict[str, None] = {}
    for row in rows:
        for key in row:
            seen.setdefault(key, None)
    return list(seen)


class BaseReader(Reader):
    """
    Shared read flow: validate/merge options, decode and normalize the raw
    contents, then hand the text to `do_read()`.
    """

    def read(self, contents: bytes | str, options: Optional[Mapping[str, Any]] = None) -> ReadResult:
        opts = self.resolve_options(options)
        encoding = opts.get("encoding") or "utf-8"
        try:
            text = normalize_contents(contents, encoding)
        except LookupError as e:
            raise ReaderError.parsing_failed(self.name, f"unknown encoding '{encoding}'") from e

        result = self.do_read(text, opts)
        if opts.get("trim", True):
            result.rows = [trim_values(row) for row in result.rows]
        log.dev(f"{self.name.upper()} reader produced {result.total_rows} rows",
                {"headers": result.headers[:10]}, category=Category.READ)
        return result

    @abstractmethod
    def do_read(self, text: str, options: Dict[str, Any]) -> ReadResult:
        ...

    def extract_entry_point(self, data: Any, entry_point: Optional[str]) -> Any:
        """Follow a dot path into the parsed document; a missing path is a parse failure."""
        if not entry_point:
            return data
        target = dig(data, entry_point)
        if target is NOT_FOUND:
            raise ReaderError.parsing_failed(
                self.name, f"Entry point '{entry_point}' not found in {self.name.upper()} data"
            )
        return target
