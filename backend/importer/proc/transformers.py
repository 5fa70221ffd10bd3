"""
Built-in field transformers for the Map stage.

`transform()` raises ValueError when a value cannot be converted; the
mapper records the message against the row and falls back to the rule's
default (see `Transformer.fallback`).
"""
from __future__ import annotations
import re
import unicodedata
from datetime import date, datetime
from typing import Any, Optional

from importer.plugins.api import Transformer
from importer.plugins.registry import register_transformer

TRUE_STRINGS = frozenset({"1", "true", "yes", "on", "y", "t"})
FALSE_STRINGS = frozenset({"0", "false", "no", "off", "n", "f", ""})

DATE_INPUT_FORMATS = (
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %H:%M:%S",
    "%d.%m.%Y",
    "%d-%m-%Y",
    "%Y%m%d",
    "%b %d, %Y",
    "%d %b %Y",
)


@register_transformer
class NoneTransformer(Transformer):
    name = "none"
    label = "None"
    description = "Keep the value unchanged"

    def transform(self, value: Any, format: Optional[str] = None) -> Any:
        return value


@register_transformer
class TrimTransformer(Transformer):
    name = "trim"
    label = "Trim"
    description = "Strip surrounding whitespace"

    def transform(self, value: Any, format: Optional[str] = None) -> Any:
        return value.strip() if isinstance(value, str) else value


@register_transformer
class UpperTransformer(Transformer):
    name = "upper"
    label = "Uppercase"
    description = "Convert text to uppercase"

    def transform(self, value: Any, format: Optional[str] = None) -> Any:
        return value.upper() if isinstance(value, str) else value


@register_transformer
class LowerTransformer(Transformer):
    name = "lower"
    label = "Lowercase"
    description = "Convert text to lowercase"

    def transform(self, value: Any, format: Optional[str] = None) -> Any:
        return value.lower() if isinstance(value, str) else value


@register_transformer
class IntegerTransformer(Transformer):
    name = "integer"
    label = "Integer"
    description = "Convert value to integer (fractions are truncated)"

    def transform(self, value: Any, format: Optional[str] = None) -> Any:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)):
            return int(value)
        text = str(value).strip().replace(",", "").replace(" ", "")
        try:
            return int(float(text))
        except ValueError:
            raise ValueError(f"Value '{value}' is not an integer")


@register_transformer
class IntTransformer(IntegerTransformer):
    """Short alias kept for stored mappings."""
    name = "int"


@register_transformer
class FloatTransformer(Transformer):
    name = "float"
    label = "Float"
    description = "Convert value to float, stripping currency and thousands separators"

    def transform(self, value: Any, format: Optional[str] = None) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        text = str(value).strip()
        try:
            return float(text)
        except ValueError:
            pass
        cleaned = re.sub(r"[^\d.-]", "", text)
        try:
            return float(cleaned)
        except ValueError:
            raise ValueError(f"Value '{value}' is not numeric")

    def fallback(self, default: Any) -> Any:
        return 0.0 if default is None else default


@register_transformer
class BooleanTransformer(Transformer):
    name = "bool"
    label = "Boolean"
    description = 'Parse truthy strings ("1", "true", "yes", "on") to booleans'

    def transform(self, value: Any, format: Optional[str] = None) -> Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        text = str(value).strip().lower()
        if text in TRUE_STRINGS:
            return True
        if text in FALSE_STRINGS:
            return False
        raise ValueError(f"Value '{value}' is not a boolean")


@register_transformer
class DateTransformer(Transformer):
    """Parses common date layouts and renders them with `format` (strftime)."""
    name = "date"
    label = "Date"
    description = "Parse a date and format it (format uses strftime syntax)"
    requires_format = True

    @staticmethod
    def parse(value: Any) -> datetime:
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        text = str(value).strip()
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            pass
        for fmt in DATE_INPUT_FORMATS:
            try:
                return datetime.strptime(text, fmt)
            except ValueError:
                continue
        raise ValueError(f"Value '{value}' is not a recognized date")

    def transform(self, value: Any, format: Optional[str] = None) -> Any:
        return self.parse(value).strftime(format or "%Y-%m-%d")


@register_transformer
class ArrayFirstTransformer(Transformer):
    name = "array_first"
    label = "Array First"
    description = "Get the first element from an array"

    def transform(self, value: Any, format: Optional[str] = None) -> Any:
        if isinstance(value, (list, tuple)):
            return value[0] if value else None
        return value


@register_transformer
class ArrayJoinTransformer(Transformer):
    name = "array_join"
    label = "Array Join"
    description = "Join array elements into a string using a separator (format, default ',')"
    requires_format = True

    def transform(self, value: Any, format: Optional[str] = None) -> Any:
        if isinstance(value, (list, tuple)):
            return (format if format is not None else ",").join("" if v is None else str(v) for v in value)
        return value


@register_transformer
class SlugTransformer(Transformer):
    name = "slug"
    label = "Slug"
    description = "Lowercase ASCII slug with dashes"

    def transform(self, value: Any, format: Optional[str] = None) -> Any:
        text = unicodedata.normalize("NFKD", str(value)).encode("ascii", "ignore").decode("ascii")
        separator = format or "-"
        return re.sub(r"[^a-z0-9]+", separator, text.lower()).strip(separator)
