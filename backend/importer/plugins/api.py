from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Sequence

from importer.common.exceptions import FilterError
from importer.plugins.options import HasOptions, type_name


# ---------------- Stage payloads ----------------

@dataclass
class DownloadRequest:
    """What to fetch: source URL/path plus the unified options bag."""
    source: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    options: Dict[str, Any] = field(default_factory=dict)
    preferred_filename: Optional[str] = None


@dataclass
class DownloadResult:
    success: bool
    contents: bytes
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: int = 0
    status_code: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        # Summary only; raw contents stay on the object
        return {
            "success": self.success,
            "filename": self.filename,
            "mime_type": self.mime_type,
            "file_size": self.file_size,
            "status_code": self.status_code,
        }


@dataclass
class ReadResult:
    """Row records plus header metadata when the format has one."""
    rows: List[Dict[str, Any]]
    headers: List[str] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_rows(self) -> int:
        return len(self.rows)


# ---------------- Plugin contracts ----------------

class Downloader(HasOptions, ABC):
    """Downloader plugins fetch raw bytes for one URL scheme."""
    name: str

    @abstractmethod
    def download(self, request: DownloadRequest) -> DownloadResult:
        ...


class Reader(HasOptions, ABC):
    """Reader plugins turn raw bytes into row records."""
    name: str

    @abstractmethod
    def read(self, contents: bytes | str, options: Optional[Mapping[str, Any]] = None) -> ReadResult:
        ...


class FilterOperator(HasOptions, ABC):
    """
    Named predicate evaluated for one row value against one rule value.

    `apply()` is the shared evaluation algorithm; operators implement
    `compare()` and may override `handle_null_values()`.
    """
    name: str
    label: str = ""
    description: str = ""
    expected_value_type: str = "string"
    supported_types: ClassVar[Sequence[str]] = ("string", "integer", "float", "boolean")
    validation_rules: ClassVar[Mapping[str, Sequence[str]]] = {"value": ("required",)}
    requires_value: bool = True

    @staticmethod
    def normalize(value: Any) -> Any:
        """Trim strings; empty strings and empty arrays become None."""
        if isinstance(value, str):
            value = value.strip()
            return value or None
        if isinstance(value, (list, tuple)):
            items = [v.strip() if isinstance(v, str) else v for v in value]
            return items or None
        return value

    def apply(self, data_value: Any, filter_value: Any, options: Optional[Mapping[str, Any]] = None) -> bool:
        opts = self.resolve_options(options)
        data_value = self.normalize(data_value)
        filter_value = self.normalize(filter_value) if self.requires_value else None

        if not self.requires_value or data_value is None or filter_value is None:
            return self.handle_null_values(data_value, filter_value, opts)

        if not self.supports_value(data_value):
            raise FilterError.unsupported_value_type(self.name, self.value_type(data_value))

        return self.compare(data_value, filter_value, opts)

    def supports_value(self, value: Any) -> bool:
        return type_name(value) in self.supported_types

    def value_type(self, value: Any) -> str:
        """Type name reported when `supports_value` rejects a value."""
        return type_name(value)

    def handle_null_values(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        return False

    @abstractmethod
    def compare(self, data_value: Any, filter_value: Any, options: Mapping[str, Any]) -> bool:
        ...

    def get_metadata(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "label": self.label,
            "description": self.description,
            "expected_value_type": self.expected_value_type,
            "validation_rules": {k: list(v) for k, v in self.validation_rules.items()},
        }


class Transformer(HasOptions, ABC):
    """
    Per-field value transformation.

    `transform()` raises ValueError when the value cannot be converted; the
    mapper records the message against the row and uses `fallback()`.
    """
    name: str
    label: str = ""
    description: str = ""
    requires_format: bool = False

    @abstractmethod
    def transform(self, value: Any, format: Optional[str] = None) -> Any:
        ...

    def fallback(self, default: Any) -> Any:
        return default

    def get_metadata(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "label": self.label,
            "description": self.description,
            "requires_format": self.requires_format,
        }


class Resolver(ABC):
    """Post-mapping business transformation: `resolve(row, config) -> row`."""
    name: str
    description: str = ""

    @abstractmethod
    def resolve(self, row: Dict[str, Any], config: Any) -> Dict[str, Any]:
        ...

    def get_metadata(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description}
