from __future__ import annotations
# Re-export common things for convenience
from .utils import load_yaml, norm_header, make_unique_headers, dig, set_dotted
from .exceptions import ImporterError, ConfigurationError

__all__ = []
