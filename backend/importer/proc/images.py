from __future__ import annotations
import hashlib
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import requests

from importer.common.config_models import ImageDownloadMode, ImagesPrepareConfig
from importer.common.logger import Category, get_logger

log = get_logger()

METADATA_HEADERS = {
    "etag": "ETag",
    "last_modified": "Last-Modified",
    "content_length": "Content-Length",
    "content_type": "Content-Type",
}


class ImageAction:
    CREATE = "create"
    KEEP = "keep"
    REPLACE = "replace"


def split_images(value: Any, separator: str) -> List[str]:
    """String field -> trimmed list; lists are trimmed; empties are dropped."""
    if value is None:
        return []
    if isinstance(value, str):
        parts = value.split(separator) if separator else [value]
    elif isinstance(value, (list, tuple)):
        parts = [v for v in value if v is not None]
    else:
        parts = [value]
    return [str(p).strip() for p in parts if str(p).strip()]


def drop_indexes(images: Sequence[str], indexes_to_skip: Sequence[int]) -> List[str]:
    skip = set(indexes_to_skip)
    return [img for i, img in enumerate(images) if i not in skip]


def clean_url(url: str) -> Optional[str]:
    """Spaces -> %20; None when the URL is not absolute http(s)."""
    url = url.strip().replace(" ", "%20")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return url


def metadata_hash(url: str, meta: Dict[str, Any]) -> str:
    key = "|".join([url] + [str(meta.get(k) or "") for k in METADATA_HEADERS])
    return hashlib.md5(key.encode()).hexdigest()


@dataclass
class ImagesResult:
    rows: List[Dict[str, Any]]
    total_images: int = 0
    unique_images: int = 0
    invalid_urls: List[str] = field(default_factory=list)
    fetched: int = 0
    failed: int = 0
    actions: Dict[str, int] = field(default_factory=dict)
    processing_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed_rows": len(self.rows),
            "total_images": self.total_images,
            "unique_images": self.unique_images,
            "invalid_urls": self.invalid_urls,
            "fetched": self.fetched,
            "failed": self.failed,
            "actions": self.actions,
            "processing_time": self.processing_time,
        }


class ImagesPrepareService:
    """
    Normalizes the image field of every row and, when `fetch_metadata` is on,
    fetches HEAD metadata for each distinct URL with a bounded thread pool.
    Rows keep their order; per-row metadata lists follow image order.

    Each worker thread gets its own session from `session_factory`; the
    sessions are closed once the batch is fetched.
    """

    def __init__(self, session_factory: Callable[[], requests.Session] = requests.Session, max_workers: int = 4,
                 timeout: int = 10):
        self.session_factory = session_factory
        self.max_workers = max_workers
        self.timeout = timeout

    def prepare(self, rows: List[Dict[str, Any]], config: ImagesPrepareConfig) -> ImagesResult:
        t0 = time.perf_counter()
        key = config.images_key
        out_rows: List[Dict[str, Any]] = []
        total = 0
        for row in rows:
            row = dict(row)
            if key in row:
                images = drop_indexes(split_images(row[key], config.image_separator), config.image_indexes_to_skip)
                row[key] = images
                total += len(images)
            out_rows.append(row)

        result = ImagesResult(rows=out_rows, total_images=total)
        if config.fetch_metadata:
            self._attach_metadata(result, config)
        result.processing_time = time.perf_counter() - t0
        log.info("Images prepare completed", result.to_dict(), category=Category.IMAGES)
        return result

    # ---------------- metadata ----------------

    def _wants_fetch(self, row: Dict[str, Any], config: ImagesPrepareConfig) -> bool:
        if config.download_mode == ImageDownloadMode.NEW_PRODUCTS_ONLY:
            return not row.get("product_id")
        if config.download_mode == ImageDownloadMode.PRODUCTS_WITHOUT_IMAGES:
            return not any(
                (clean_url(u) or u) in config.previous_metadata for u in row.get(config.images_key) or []
            )
        return True

    def _attach_metadata(self, result: ImagesResult, config: ImagesPrepareConfig) -> None:
        key = config.images_key
        selected = [row for row in result.rows if row.get(key) and self._wants_fetch(row, config)]

        # Deduplicate across the batch, keeping first-seen order
        unique: Dict[str, None] = {}
        for row in selected:
            for raw in row[key]:
                url = clean_url(raw)
                if url is None:
                    result.invalid_urls.append(raw)
                else:
                    unique.setdefault(url, None)
        result.unique_images = len(unique)

        workers = config.max_workers or self.max_workers
        fetched = self._fetch_all(list(unique), workers)

        actions: Dict[str, int] = {}
        for row in selected:
            entries: List[Dict[str, Any]] = []
            images: List[str] = []
            for raw in row[key]:
                url = clean_url(raw)
                if url is None:
                    continue
                meta = dict(fetched[url])
                meta["action"] = self._action(url, meta, config.previous_metadata)
                actions[meta["action"]] = actions.get(meta["action"], 0) + 1
                entries.append(meta)
                images.append(url)
            row[key] = images
            row[f"{key}_metadata"] = entries

        result.fetched = sum(1 for m in fetched.values() if "error" not in m)
        result.failed = len(fetched) - result.fetched
        result.actions = actions

    @staticmethod
    def _action(url: str, meta: Dict[str, Any], previous: Dict[str, Dict[str, Any]]) -> str:
        known = previous.get(url)
        if not known:
            return ImageAction.CREATE
        return ImageAction.KEEP if known.get("hash") == meta.get("hash") else ImageAction.REPLACE

    def _fetch_all(self, urls: List[str], workers: int) -> Dict[str, Dict[str, Any]]:
        local = threading.local()
        lock = threading.Lock()
        sessions: List[requests.Session] = []

        def fetch(url: str) -> Dict[str, Any]:
            session = getattr(local, "session", None)
            if session is None:
                session = local.session = self.session_factory()
                with lock:
                    sessions.append(session)
            return self.fetch_metadata(url, session)

        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="image-meta") as pool:
                return dict(zip(urls, pool.map(fetch, urls)))
        finally:
            for session in sessions:
                session.close()

    def fetch_metadata(self, url: str, session: Optional[requests.Session] = None) -> Dict[str, Any]:
        """HEAD one image; failures are returned as an `error` entry."""
        if session is None:
            own = self.session_factory()
            try:
                return self.fetch_metadata(url, own)
            finally:
                own.close()
        try:
            response = session.head(url, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as e:
            log.warning("Image metadata fetch failed", {"url": url, "error": str(e)}, category=Category.IMAGES)
            return {"url": url, "error": str(e)}
        if response.status_code >= 400:
            return {"url": url, "error": f"HTTP {response.status_code}"}
        meta: Dict[str, Any] = {"url": url}
        for name, header in METADATA_HEADERS.items():
            meta[name] = response.headers.get(header)
        if meta["content_length"] and str(meta["content_length"]).isdigit():
            meta["content_length"] = int(meta["content_length"])
        meta["hash"] = metadata_hash(url, meta)
        return meta
