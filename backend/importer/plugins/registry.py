from __future__ import annotations
from importlib import import_module
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Type, TypeVar

from importer.common.exceptions import FactoryError, FilterError, ImporterError
from importer.common.logger import get_logger
from .api import Downloader, FilterOperator, Reader, Resolver, Transformer

log = get_logger()

T = TypeVar("T")


class Registry(Generic[T]):
    """
    Name-keyed plugin lookup.

    Holds plugin classes keyed by their `name` attribute; `get()` returns a
    fresh instance. Lookup of an unknown name raises the family's typed error.
    """

    def __init__(self, kind: str, base: Type[T], missing: Optional[Callable[[str, List[str]], ImporterError]] = None):
        self.kind = kind
        self.base = base
        self._classes: Dict[str, Type[T]] = {}
        self._missing = missing or (lambda name, available: FactoryError.unsupported_type(name, available))

    def register(self, cls: Type[T], name: Optional[str] = None) -> Type[T]:
        if not (isinstance(cls, type) and issubclass(cls, self.base)):
            raise FactoryError.invalid_service_class(getattr(cls, "__name__", repr(cls)), self.base.__name__)
        key = (name or getattr(cls, "name", "")).strip().lower()
        if not key:
            raise FactoryError.invalid_service_class(cls.__name__, f"{self.base.__name__} with a non-empty name")
        self._classes[key] = cls
        return cls

    def unregister(self, name: str) -> None:
        self._classes.pop(name.strip().lower(), None)

    def has(self, name: str) -> bool:
        return str(name or "").strip().lower() in self._classes

    def get(self, name: str) -> T:
        key = str(name or "").strip().lower()
        cls = self._classes.get(key)
        if cls is None:
            raise self._missing(key, self.available_types())
        return cls()  # type: ignore[call-arg]

    def all(self) -> Dict[str, T]:
        return {key: cls() for key, cls in self._classes.items()}  # type: ignore[call-arg]

    def available_types(self) -> List[str]:
        return sorted(self._classes)

    def metadata(self) -> List[Dict[str, Any]]:
        out = []
        for key in self.available_types():
            inst: Any = self._classes[key]()
            out.append(inst.get_metadata() if hasattr(inst, "get_metadata") else {"name": key})
        return out

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.has(name)

    def __len__(self) -> int:
        return len(self._classes)


# Registries
DOWNLOADERS: Registry[Downloader] = Registry("downloader", Downloader)
READERS: Registry[Reader] = Registry("reader", Reader)
OPERATORS: Registry[FilterOperator] = Registry(
    "operator", FilterOperator, missing=lambda name, available: FilterError.unknown_operator(name)
)
TRANSFORMERS: Registry[Transformer] = Registry("transformer", Transformer)
RESOLVERS: Registry[Resolver] = Registry("resolver", Resolver)


# ---------------- Registration decorators ----------------
def register_downloader(cls: Type[Downloader]):
    """Decorator used by built-in downloaders to self-register under their scheme."""
    return DOWNLOADERS.register(cls)


def register_reader(cls: Type[Reader]):
    """Decorator used by built-in readers to self-register."""
    return READERS.register(cls)


def register_operator(cls: Type[FilterOperator]):
    """Decorator for filter operators."""
    return OPERATORS.register(cls)


def register_transformer(cls: Type[Transformer]):
    """Decorator for mapping transformers."""
    return TRANSFORMERS.register(cls)


def register_resolver(cls: Type[Resolver]):
    """Decorator for prepare resolvers."""
    return RESOLVERS.register(cls)


# ---------------- Bootstrap built-ins ----------------
BUILTIN_MODULES = (
    # Downloaders
    "importer.io.downloaders.http_downloader",
    "importer.io.downloaders.ftp_downloader",
    "importer.io.downloaders.sftp_downloader",
    # Readers
    "importer.io.readers.csv_reader",
    "importer.io.readers.json_reader",
    "importer.io.readers.xml_reader",
    "importer.io.readers.yaml_reader",
    # Filter operators
    "importer.proc.operators",
    # Transformers
    "importer.proc.transformers",
    # Resolvers
    "importer.proc.resolvers",
)

_bootstrapped = False


def bootstrap_discovery(extra_modules: Iterable[str] = ()) -> None:
    """
    Import the fixed list of built-in plugin modules (plus any extra modules
    named by the deployment) so their decorators populate the registries.

    Raises:
        FactoryError: If a listed module cannot be imported
    """
    global _bootstrapped
    modules = list(extra_modules) if _bootstrapped else [*BUILTIN_MODULES, *extra_modules]
    for mod in modules:
        try:
            import_module(mod)
        except ImportError as e:
            raise FactoryError.class_not_found(mod) from e
    _bootstrapped = True
    log.debug("Plugin registries ready", {
        "downloaders": DOWNLOADERS.available_types(),
        "readers": READERS.available_types(),
        "operators": len(OPERATORS),
        "transformers": len(TRANSFORMERS),
        "resolvers": RESOLVERS.available_types(),
    })


# ---------------- Plugin pickers ----------------
def get_downloader(scheme: str) -> Downloader:
    """Pick a downloader by URL scheme (or explicit type)."""
    return DOWNLOADERS.get(scheme)


def get_reader(reader_type: str) -> Reader:
    return READERS.get(reader_type)


def get_operator(name: str) -> FilterOperator:
    return OPERATORS.get(name)


def get_transformer(name: str) -> Transformer:
    return TRANSFORMERS.get(name)


def get_resolver(name: str) -> Resolver:
    return RESOLVERS.get(name)
