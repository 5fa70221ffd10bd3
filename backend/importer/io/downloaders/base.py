from __future__ import annotations
import posixpath
import re
from abc import abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlparse

from importer.plugins.api import Downloader, DownloadRequest, DownloadResult

_DISPOSITION_RE = re.compile(r"filename\*=UTF-8''([^;]+)|filename=\"?([^\";]+)\"?", re.IGNORECASE)


def guess_filename_from_headers(content_disposition: Optional[str]) -> Optional[str]:
    """Best-effort filename from a Content-Disposition header."""
    if not content_disposition:
        return None
    m = _DISPOSITION_RE.search(content_disposition)
    if not m:
        return None
    raw = unquote(m.group(1) or m.group(2) or "").strip()
    return posixpath.basename(raw.replace("\\", "/")) or None


def filename_from_url(url: str, fallback: str = "download") -> str:
    path = urlparse(url).path or ""
    return posixpath.basename(path) or fallback


class BaseDownloader(Downloader):
    """
    Validates and merges the unified options bag before any I/O, then hands
    the merged options to `do_download()`.
    """

    def download(self, request: DownloadRequest) -> DownloadResult:
        options = self.resolve_options(request.options)
        return self.do_download(request, options)

    @abstractmethod
    def do_download(self, request: DownloadRequest, options: Dict[str, Any]) -> DownloadResult:
        ...
