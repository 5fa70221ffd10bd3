from __future__ import annotations
import io
from typing import Any, Dict, List

import polars as pl

from importer.common.exceptions import ReaderError
from importer.common.logger import Category, get_logger
from importer.common.utils import make_unique_headers
from importer.plugins.api import ReadResult
from importer.plugins.options import OptionDefinition
from importer.plugins.registry import register_reader
from .base import BaseReader

log = get_logger()

_DELIMITER_ALIASES = {"\\t": "\t", "tab": "\t"}


def _headers_from_row(values: List[Any]) -> List[str]:
    names = [str(v).strip() if v not in (None, "") else f"column_{i + 1}" for i, v in enumerate(values)]
    return make_unique_headers(names)


@register_reader
class CSVReader(BaseReader):
    """
    Reader for CSV content (polars).

    Options:
      - delimiter (`,` `;` `\\t` `|`), enclosure (`"` or `'`), escape
      - has_header: first row holds the column names; without it columns
        are `column_1..n`
      - trim, encoding

    Every value is read as a string; typing happens in the Map stage.
    """
    name = "csv"

    option_definitions = {
        "delimiter": OptionDefinition("string", ",", "Field delimiter character",
                                      allowed_values=(",", ";", "\t", "\\t", "|")),
        "enclosure": OptionDefinition("string", '"', "Field enclosure character", allowed_values=('"', "'")),
        "escape": OptionDefinition("string", "\\", "Escape character for the enclosure"),
        "has_header": OptionDefinition("boolean", True, "Whether first row contains headers"),
        "trim": OptionDefinition("boolean", True, "Trim whitespace from values"),
        "encoding": OptionDefinition("string", "utf-8", "Character encoding of the raw contents"),
    }

    def do_read(self, text: str, options: Dict[str, Any]) -> ReadResult:
        if "\x00" in text:
            raise ReaderError.invalid_content(self.name, "contents look binary (NUL byte found)")
        if not text.strip():
            log.warning("CSV contents are empty", category=Category.READ)
            return ReadResult(rows=[], headers=[])

        delimiter = _DELIMITER_ALIASES.get(options["delimiter"], options["delimiter"])
        enclosure = options["enclosure"]
        escape = options["escape"]
        if escape and escape != enclosure:
            # polars only understands doubled enclosures
            text = text.replace(escape + enclosure, enclosure + enclosure)

        try:
            df = pl.read_csv(
                io.BytesIO(text.encode("utf-8")),
                separator=delimiter,
                quote_char=enclosure,
                has_header=False,
                infer_schema_length=0,
                empty_string_is_null=False,
                truncate_ragged_lines=False,
            )
        except pl.exceptions.PolarsError as e:
            raise ReaderError.parsing_failed(self.name, str(e)) from e

        records = df.rows()
        if options["has_header"]:
            if not records:
                return ReadResult(rows=[], headers=[])
            headers = _headers_from_row(list(records[0]))
            records = records[1:]
        else:
            headers = [f"column_{i + 1}" for i in range(df.width)]

        rows = [dict(zip(headers, record)) for record in records]
        log.debug(f"CSV parsed: {len(rows)} rows, {len(headers)} columns",
                  {"delimiter": repr(delimiter)}, category=Category.READ)
        return ReadResult(rows=rows, headers=headers, meta={"delimiter": delimiter})
