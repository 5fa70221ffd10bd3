from __future__ import annotations
import io
import posixpath
import socket
from typing import Any, Dict

import paramiko

from importer.common.exceptions import DownloaderError
from importer.common.logger import Category, get_logger
from importer.plugins.api import DownloadRequest, DownloadResult
from importer.plugins.options import OptionDefinition
from importer.plugins.registry import register_downloader
from .base import BaseDownloader
from .ftp_downloader import connection_options

log = get_logger()


def _load_private_key(key_text: str) -> paramiko.PKey:
    last_error: Exception | None = None
    for key_cls in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_cls.from_private_key(io.StringIO(key_text))
        except paramiko.SSHException as e:
            last_error = e
    raise paramiko.SSHException(f"Unsupported private key: {last_error}")


@register_downloader
class SftpDownloader(BaseDownloader):
    """
    Downloader for sftp:// sources (paramiko).

    Options: host, port (22), username, password, private_key (PEM text), file, timeout.
    """
    name = "sftp"

    option_definitions = {
        "host": OptionDefinition("string", None, "SFTP host"),
        "port": OptionDefinition("integer", 22, "SFTP port", min_value=1, max_value=65535),
        "username": OptionDefinition("string", None, "SFTP username"),
        "password": OptionDefinition("string", None, "SFTP password"),
        "private_key": OptionDefinition("string", None, "Private key (PEM text)"),
        "file": OptionDefinition("string", None, "Remote file path"),
        "timeout": OptionDefinition("integer", 30, "Connection timeout in seconds", min_value=1, max_value=300),
    }

    def do_download(self, request: DownloadRequest, options: Dict[str, Any]) -> DownloadResult:
        conn = connection_options(request.source, options, default_port=22)
        if not conn["host"]:
            raise DownloaderError.connection_failed(self.name, "no host given")
        remote = conn["file"]
        if not remote:
            raise DownloaderError.file_not_found(self.name, "(no file given)")

        log.dev(f"SFTP connect {conn['host']}:{conn['port']}", {"file": remote}, category=Category.DOWNLOAD)
        transport = None
        try:
            try:
                pkey = _load_private_key(options["private_key"]) if options["private_key"] else None
                transport = paramiko.Transport((conn["host"], int(conn["port"])))
                transport.banner_timeout = options["timeout"]
                transport.connect(username=conn["username"], password=conn["password"], pkey=pkey)
                sftp = paramiko.SFTPClient.from_transport(transport)
            except (OSError, socket.timeout, paramiko.SSHException) as e:
                raise DownloaderError.connection_failed(self.name, str(e)) from e

            buf = io.BytesIO()
            try:
                sftp.getfo(remote, buf)
            except FileNotFoundError as e:
                raise DownloaderError.file_not_found(self.name, remote) from e
            except (OSError, paramiko.SSHException) as e:
                raise DownloaderError.download_failed(self.name, str(e)) from e
            finally:
                sftp.close()
        finally:
            if transport is not None:
                transport.close()

        contents = buf.getvalue()
        filename = request.preferred_filename or posixpath.basename(remote) or "download"
        log.info("SFTP download completed", {"host": conn["host"], "file": remote, "size": len(contents)},
                 category=Category.DOWNLOAD)
        return DownloadResult(
            success=True,
            contents=contents,
            filename=filename,
            mime_type="application/octet-stream",
            file_size=len(contents),
        )
