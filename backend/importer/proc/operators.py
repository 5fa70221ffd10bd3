"""
Built-in filter operators.

Each operator only implements `compare()` (and, for the null operators,
`handle_null_values()`); normalization, null policy and the value type
check live in `FilterOperator.apply()`.
"""
from __future__ import annotations
import re
from typing import Any, ClassVar, Mapping, Optional, Sequence

from importer.common.exceptions import FilterError
from importer.plugins.api import FilterOperator
from importer.plugins.options import OptionDefinition, type_name
from importer.plugins.registry import register_operator

_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_DELIMITED_RE = re.compile(r"^([/~#%])(.*)\1([imsx]*)$", re.DOTALL)
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}


def as_number(value: Any) -> Optional[float]:
    """float for numbers and numeric strings, else None (bools are not numbers)"""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and _NUMBER_RE.match(value.strip()):
        return float(value)
    return None


def as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(map(str, value))
    return str(value)


def fold(value: Any, case_sensitive: bool) -> Any:
    return value.lower() if isinstance(value, str) and not case_sensitive else value


def values_equal(a: Any, b: Any, case_sensitive: bool) -> bool:
    na, nb = as_number(a), as_number(b)
    if na is not None and nb is not None:
        return na == nb
    if isinstance(a, str) and isinstance(b, str):
        return fold(a, case_sensitive) == fold(b, case_sensitive)
    return a == b


def compile_pattern(pattern: str, flags: Optional[str] = None) -> re.Pattern:
    """
    Compile a rule pattern. Accepts bare patterns and delimited ones
    ("/^ab+c$/i"); `flags` letters are i m s x.

    Raises:
        FilterError: regex_error when the pattern does not compile
    """
    body, letters = pattern, flags or ""
    m = _DELIMITED_RE.match(pattern)
    if m:
        body, letters = m.group(2), letters + m.group(3)
    re_flags = 0
    for letter in letters:
        if letter not in _REGEX_FLAGS:
            raise FilterError.regex_error(pattern, f"unknown flag '{letter}'")
        re_flags |= _REGEX_FLAGS[letter]
    try:
        return re.compile(body, re_flags)
    except re.error as e:
        raise FilterError.regex_error(pattern, str(e)) from e


class BaseOperator(FilterOperator):
    """Shared options for every built-in operator."""
    option_definitions = {
        "case_sensitive": OptionDefinition("boolean", False, "Compare strings case-sensitively"),
        "regex_flags": OptionDefinition("string", "", "Regex flags (i, m, s, x)"),
    }
    supported_types: ClassVar[Sequence[str]] = ("string", "integer", "float", "boolean")


# ============================================================================
# Equality and membership
# ============================================================================

@register_operator
class EqualsOperator(BaseOperator):
    name = "equals"
    label = "Equals"
    description = "Check if the value exactly matches the filter value"
    expected_value_type = "mixed"

    def compare(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        return values_equal(data_value, filter_value, options["case_sensitive"])


@register_operator
class NotEqualsOperator(EqualsOperator):
    name = "not_equals"
    label = "Not Equals"
    description = "Check if the value does not match the filter value"

    def compare(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        return not super().compare(data_value, filter_value, options)


@register_operator
class InOperator(BaseOperator):
    name = "in"
    label = "In List"
    description = "Check if the value is in the provided list"
    expected_value_type = "array"
    validation_rules = {"value": ("required", "array")}

    def compare(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        candidates = filter_value if isinstance(filter_value, (list, tuple)) else [filter_value]
        return any(values_equal(data_value, c, options["case_sensitive"]) for c in candidates)


@register_operator
class NotInOperator(InOperator):
    name = "not_in"
    label = "Not In List"
    description = "Check if the value is not in the provided list"

    def compare(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        return not super().compare(data_value, filter_value, options)


# ============================================================================
# Substring
# ============================================================================

@register_operator
class ContainsOperator(BaseOperator):
    name = "contains"
    label = "Contains"
    description = "Check if the value contains the filter value (substring, or list membership)"
    supported_types = ("string", "integer", "float", "array")

    def compare(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        cs = options["case_sensitive"]
        if isinstance(data_value, (list, tuple)):
            return any(values_equal(item, filter_value, cs) for item in data_value)
        return fold(as_text(filter_value), cs) in fold(as_text(data_value), cs)


@register_operator
class NotContainsOperator(ContainsOperator):
    name = "not_contains"
    label = "Not Contains"
    description = "Check if the value does not contain the filter value"

    def compare(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        return not super().compare(data_value, filter_value, options)


@register_operator
class StartsWithOperator(BaseOperator):
    name = "starts_with"
    label = "Starts With"
    description = "Check if the value starts with the filter value"
    supported_types = ("string", "integer", "float")

    def compare(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        cs = options["case_sensitive"]
        return fold(as_text(data_value), cs).startswith(fold(as_text(filter_value), cs))


@register_operator
class EndsWithOperator(StartsWithOperator):
    name = "ends_with"
    label = "Ends With"
    description = "Check if the value ends with the filter value"

    def compare(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        cs = options["case_sensitive"]
        return fold(as_text(data_value), cs).endswith(fold(as_text(filter_value), cs))


# ============================================================================
# Regex
# ============================================================================

@register_operator
class RegexOperator(BaseOperator):
    name = "regex"
    label = "Regex Match"
    description = "Check if the value matches the regular expression pattern"
    expected_value_type = "string"
    supported_types = ("string", "integer", "float")
    validation_rules = {"value": ("required", "string", "pattern")}

    def compare(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        pattern = compile_pattern(as_text(filter_value), options["regex_flags"])
        return pattern.search(as_text(data_value)) is not None


@register_operator
class NotRegexOperator(RegexOperator):
    name = "not_regex"
    label = "Not Regex Match"
    description = "Check if the value does not match the regular expression pattern"

    def compare(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        return not super().compare(data_value, filter_value, options)


# ============================================================================
# Numeric comparison
# ============================================================================

class NumericOperator(BaseOperator):
    expected_value_type = "numeric"
    supported_types = ("integer", "float", "string")  # strings only when numeric
    validation_rules = {"value": ("required", "numeric")}

    def supports_value(self, value: Any) -> bool:
        return as_number(value) is not None

    def value_type(self, value: Any) -> str:
        name = type_name(value)
        return f"non-numeric {name}" if name == "string" else name


@register_operator
class GreaterThanOperator(NumericOperator):
    name = "greater_than"
    label = "Greater Than"
    description = "Check if the value is greater than the filter value"

    def compare(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        limit = as_number(filter_value)
        return limit is not None and as_number(data_value) > limit


@register_operator
class LessThanOperator(NumericOperator):
    name = "less_than"
    label = "Less Than"
    description = "Check if the value is less than the filter value"

    def compare(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        limit = as_number(filter_value)
        return limit is not None and as_number(data_value) < limit


# ============================================================================
# Ranges
# ============================================================================

@register_operator
class BetweenOperator(BaseOperator):
    name = "between"
    label = "Between"
    description = "Check if the value is between two values (inclusive)"
    expected_value_type = "array"
    validation_rules = {"value": ("required", "array", "array_size:2")}

    def in_range(self, data_value: Any, bounds: Any, case_sensitive: bool) -> bool:
        if not isinstance(bounds, (list, tuple)) or len(bounds) != 2:
            return False
        low, high = bounds
        nums = [as_number(v) for v in (data_value, low, high)]
        if all(n is not None for n in nums):
            value, low, high = nums
        else:
            value, low, high = (fold(as_text(v), case_sensitive) for v in (data_value, low, high))
        if low > high:
            low, high = high, low
        return low <= value <= high

    def compare(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        return self.in_range(data_value, filter_value, options["case_sensitive"])


@register_operator
class NotBetweenOperator(BetweenOperator):
    name = "not_between"
    label = "Not Between"
    description = "Check if the value is outside two values"

    def compare(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        if not isinstance(filter_value, (list, tuple)) or len(filter_value) != 2:
            return False
        return not self.in_range(data_value, filter_value, options["case_sensitive"])


# ============================================================================
# Null checks
# ============================================================================

@register_operator
class IsNullOperator(BaseOperator):
    name = "is_null"
    label = "Is Null"
    description = "Check if the value is null or empty"
    expected_value_type = "mixed"
    validation_rules = {}
    requires_value = False

    def handle_null_values(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        return data_value is None

    def compare(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        return data_value is None


@register_operator
class IsNotNullOperator(IsNullOperator):
    name = "is_not_null"
    label = "Is Not Null"
    description = "Check if the value is present and not empty"

    def handle_null_values(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        return data_value is not None

    def compare(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        return data_value is not None


NULL_OPERATORS = frozenset({IsNullOperator.name, IsNotNullOperator.name})
