from __future__ import annotations
import json
from typing import Any, Dict

from importer.common.exceptions import ReaderError
from importer.plugins.api import ReadResult
from importer.plugins.options import OptionDefinition
from importer.plugins.registry import register_reader
from .base import BaseReader, as_rows, collect_headers


@register_reader
class JSONReader(BaseReader):
    """
    Reader for JSON documents.

    Options:
      - entry_point (str): dot path to the row list (e.g. "inventory.listing")
      - trim, encoding
    A single object becomes one row; scalar list items become {"value": x}.
    """
    name = "json"

    option_definitions = {
        "entry_point": OptionDefinition("string", "", 'Dot notation path to extract data from (e.g., "inventory.listing")'),
        "trim": OptionDefinition("boolean", True, "Trim whitespace from string values"),
        "encoding": OptionDefinition("string", "utf-8", "Character encoding of the raw contents"),
    }

    def do_read(self, text: str, options: Dict[str, Any]) -> ReadResult:
        if not text.strip():
            raise ReaderError.invalid_content(self.name, "document is empty")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ReaderError.parsing_failed(self.name, str(e)) from e

        target = self.extract_entry_point(data, options["entry_point"])
        rows = as_rows(target)
        return ReadResult(rows=rows, headers=collect_headers(rows), meta={"entry_point": options["entry_point"]})
