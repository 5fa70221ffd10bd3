"""
Typed option definitions shared by every plugin family.

Downloaders, readers, filter operators and transformers all receive one
unified options bag that may carry keys meant for other plugins. Each plugin
validates only the keys it declares and merges the rest from its defaults.
"""
from __future__ import annotations

import copy
from dataclasses import asdict, dataclass
from typing import Any, ClassVar, Dict, Mapping, Optional, Sequence

from importer.common.exceptions import InvalidOptionError

OPTION_TYPES = ("string", "integer", "float", "boolean", "array", "object")


def type_name(value: Any) -> str:
    """Option-type vocabulary name for a Python value"""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "float"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    return type(value).__name__


def _matches(expected: str, value: Any) -> bool:
    # bool is an int subclass; it is never accepted as a number
    if expected == "string":
        return isinstance(value, str)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "float":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "array":
        return isinstance(value, (list, tuple))
    if expected == "object":
        return isinstance(value, Mapping)
    return True


@dataclass(frozen=True)
class OptionDefinition:
    type: str
    default: Any = None
    description: str = ""
    required: bool = False
    allowed_values: Optional[Sequence[Any]] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None

    def __post_init__(self) -> None:
        if self.type not in OPTION_TYPES:
            raise ValueError(f"Unknown option type '{self.type}'. Expected one of: {', '.join(OPTION_TYPES)}")

    def validate(self, name: str, value: Any, owner: str) -> None:
        if value is None:
            if self.required:
                raise InvalidOptionError.missing(name, owner, self.type)
            return
        if not _matches(self.type, value):
            raise InvalidOptionError.type_mismatch(name, owner, self.type, type_name(value))
        if self.allowed_values is not None and value not in self.allowed_values:
            raise InvalidOptionError.not_allowed(name, owner, value, self.allowed_values)
        if self.type in ("integer", "float"):
            if (self.min_value is not None and value < self.min_value) or \
               (self.max_value is not None and value > self.max_value):
                raise InvalidOptionError.out_of_range(name, owner, value, self.min_value, self.max_value)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data["allowed_values"] is not None:
            data["allowed_values"] = list(data["allowed_values"])
        return data


class HasOptions:
    """
    Mixin giving a plugin the shared option contract.

    Subclasses declare `option_definitions` (a class-level mapping) or override
    `get_option_definitions()` when definitions are computed.
    """
    option_definitions: ClassVar[Mapping[str, OptionDefinition]] = {}

    def get_option_definitions(self) -> Mapping[str, OptionDefinition]:
        return self.option_definitions

    @property
    def owner_name(self) -> str:
        return type(self).__name__

    def validate_options(self, options: Optional[Mapping[str, Any]]) -> None:
        """Validate recognized keys; keys owned by other plugins are ignored."""
        definitions = self.get_option_definitions()
        supplied = options or {}
        for key, definition in definitions.items():
            definition.validate(key, supplied.get(key), self.owner_name)

    def merge_with_defaults(self, options: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Exactly the declared keys; a supplied None counts as absent."""
        supplied = options or {}
        merged: Dict[str, Any] = {}
        for key, definition in self.get_option_definitions().items():
            value = supplied.get(key)
            merged[key] = copy.deepcopy(definition.default) if value is None else value
        return merged

    def resolve_options(self, options: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        self.validate_options(options)
        return self.merge_with_defaults(options)

    def get_option_metadata(self) -> Dict[str, Dict[str, Any]]:
        return {key: d.to_dict() for key, d in self.get_option_definitions().items()}
