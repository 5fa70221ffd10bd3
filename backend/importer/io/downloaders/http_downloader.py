from __future__ import annotations
import json
from typing import Any, Dict, Mapping, Optional

import requests

from importer.common.exceptions import DownloaderError
from importer.common.logger import Category, get_logger
from importer.plugins.api import DownloadRequest, DownloadResult
from importer.plugins.options import OptionDefinition
from importer.plugins.registry import register_downloader
from .base import BaseDownloader, filename_from_url, guess_filename_from_headers

log = get_logger()

NOT_FOUND_STATUSES = (404, 410)


@register_downloader
class HttpDownloader(BaseDownloader):
    """
    Downloader for http:// sources (requests).

    Options:
      - timeout (int, 1-300), verify_ssl, follow_redirects
      - method (GET/POST/PUT/PATCH/DELETE/HEAD), query
      - accept, user_agent, bearer_token, basic_auth {username, password}
      - body {type: json|form|raw, data, content_type}
    """
    name = "http"

    option_definitions = {
        "timeout": OptionDefinition("integer", 30, "Request timeout in seconds", min_value=1, max_value=300),
        "verify_ssl": OptionDefinition("boolean", True, "Verify SSL certificates"),
        "method": OptionDefinition(
            "string", "GET", "HTTP method",
            allowed_values=("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"),
        ),
        "accept": OptionDefinition("string", None, "Accept header"),
        "user_agent": OptionDefinition("string", None, "User-Agent header"),
        "bearer_token": OptionDefinition("string", None, "Bearer token for authentication"),
        "basic_auth": OptionDefinition("object", None, "Basic auth credentials {username, password}"),
        "query": OptionDefinition("object", {}, "Query parameters"),
        "follow_redirects": OptionDefinition("boolean", True, "Follow HTTP redirects"),
        "body": OptionDefinition("object", None, "Request body {type, data, content_type}"),
    }

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    def _headers(self, request: DownloadRequest, options: Mapping[str, Any]) -> Dict[str, str]:
        headers = dict(request.headers)
        if options["accept"]:
            headers["Accept"] = options["accept"]
        if options["user_agent"]:
            headers["User-Agent"] = options["user_agent"]
        if options["bearer_token"]:
            headers["Authorization"] = f"Bearer {options['bearer_token']}"
        return headers

    def _body_kwargs(self, body: Optional[Mapping[str, Any]], headers: Dict[str, str]) -> Dict[str, Any]:
        if not body:
            return {}
        btype = str(body.get("type") or "none").lower()
        data = body.get("data")
        if btype == "json":
            return {"json": json.loads(data) if isinstance(data, str) else data}
        if btype == "form":
            return {"data": dict(data or {})}
        if btype == "raw":
            if body.get("content_type"):
                headers["Content-Type"] = str(body["content_type"])
            return {"data": "" if data is None else str(data)}
        return {}

    def do_download(self, request: DownloadRequest, options: Dict[str, Any]) -> DownloadResult:
        url = request.source
        method = str(request.options.get("method") or request.method or options["method"]).upper()

        headers = self._headers(request, options)
        body = options["body"] if options["body"] is not None else (
            request.body if isinstance(request.body, Mapping) else None
        )
        kwargs = self._body_kwargs(body, headers)
        auth = None
        if isinstance(options["basic_auth"], Mapping):
            auth = (options["basic_auth"].get("username", ""), options["basic_auth"].get("password", ""))

        log.dev(f"HTTP {method} {url}", {"timeout": options["timeout"]}, category=Category.DOWNLOAD)
        try:
            response = self.session.request(
                method,
                url,
                headers=headers,
                params=options["query"] or None,
                auth=auth,
                timeout=options["timeout"],
                verify=options["verify_ssl"],
                allow_redirects=options["follow_redirects"],
                **kwargs,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise DownloaderError.connection_failed(self.name, str(e)) from e
        except requests.RequestException as e:
            raise DownloaderError.download_failed(self.name, str(e)) from e

        if response.status_code in NOT_FOUND_STATUSES:
            raise DownloaderError.file_not_found(self.name, url)
        if response.status_code >= 400:
            raise DownloaderError.download_failed(self.name, f"HTTP {response.status_code} for {url}")

        contents = response.content
        filename = (
            request.preferred_filename
            or guess_filename_from_headers(response.headers.get("Content-Disposition"))
            or filename_from_url(url)
        )
        log.info("HTTP download completed", {"url": url, "filename": filename, "size": len(contents)},
                 category=Category.DOWNLOAD)
        return DownloadResult(
            success=True,
            contents=contents,
            filename=filename,
            mime_type=response.headers.get("Content-Type", "application/octet-stream"),
            file_size=len(contents),
            status_code=response.status_code,
            headers=dict(response.headers),
        )


@register_downloader
class HttpsDownloader(HttpDownloader):
    """Same transport for https:// sources."""
    name = "https"
