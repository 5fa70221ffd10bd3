from __future__ import annotations
from typing import Any, Dict

import yaml

from importer.common.exceptions import ReaderError
from importer.plugins.api import ReadResult
from importer.plugins.options import OptionDefinition
from importer.plugins.registry import register_reader
from .base import BaseReader, as_rows, collect_headers


@register_reader
class YAMLReader(BaseReader):
    """
    Reader for YAML documents (PyYAML safe loader).

    Options: entry_point (dot path to the row list), trim, encoding.
    """
    name = "yaml"

    option_definitions = {
        "entry_point": OptionDefinition("string", "", "Dot notation path to the row list"),
        "trim": OptionDefinition("boolean", True, "Trim whitespace from string values"),
        "encoding": OptionDefinition("string", "utf-8", "Character encoding of the raw contents"),
    }

    def do_read(self, text: str, options: Dict[str, Any]) -> ReadResult:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ReaderError.parsing_failed(self.name, str(e)) from e
        if isinstance(data, str) and options["entry_point"]:
            raise ReaderError.invalid_content(self.name, "document is a plain scalar")

        target = self.extract_entry_point(data, options["entry_point"])
        rows = as_rows(target)
        return ReadResult(rows=rows, headers=collect_headers(rows), meta={"entry_point": options["entry_point"]})
