"""
Server configuration - built once at startup from the command line
and passed explicitly to the app and the listener.
"""

import os
import ssl
import logging
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Optional

logger = logging.getLogger(__name__)

__version__ = "1.0.0"

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 5000
DEFAULT_FOLDER = "files"


class StartupConfigError(Exception):
    """Fatal configuration problem detected before any socket is bound."""


@dataclass(frozen=True)
class ServerConfig:
    upload_root: str
    folder: str = DEFAULT_FOLDER
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    tls: bool = False
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    qr: bool = True
    max_content_length: Optional[int] = None

    @property
    def url_prefix(self):
        """Listing path, e.g. ``/files``"""
        return "/" + PurePath(self.folder).as_posix().strip("/")

    @property
    def scheme(self):
        return "https" if self.tls else "http"


def _check_readable(label, path):
    if not os.path.isfile(path):
        raise StartupConfigError(f"{label} file not found: {path}")
    if not os.access(path, os.R_OK):
        raise StartupConfigError(f"{label} file is not readable: {path}")


def build_config(port=DEFAULT_PORT, folder=DEFAULT_FOLDER, tls=False,
                 cert_file=None, key_file=None, qr=True, host=DEFAULT_HOST,
                 base_dir=None, max_content_length=None):
    """Validate startup options and return an immutable ServerConfig.

    The upload folder is resolved against ``base_dir`` (the working
    directory by default) and created if it does not exist. TLS needs both
    a certificate and a key; there is no fallback to plaintext.
    """
    if not folder or PurePath(folder).as_posix().strip("/") in ("", ".", ".."):
        raise StartupConfigError(f"Invalid upload folder: {folder!r}")

    if tls:
        missing = [name for name, value in (("certificate", cert_file), ("key", key_file)) if not value]
        if missing:
            raise StartupConfigError(
                f"TLS requested but no {' or '.join(missing)} file was given (use --cert and --key)"
            )
        _check_readable("Certificate", cert_file)
        _check_readable("Key", key_file)
    elif cert_file or key_file:
        logger.warning("Certificate/key given without --tls; serving plain HTTP")
        cert_file = key_file = None

    base = Path(base_dir) if base_dir else Path.cwd()
    upload_root = (base / folder).resolve()
    try:
        upload_root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StartupConfigError(f"Cannot create upload folder {upload_root}: {e}") from e
    if not upload_root.is_dir():
        raise StartupConfigError(f"Upload folder is not a directory: {upload_root}")

    return ServerConfig(
        upload_root=str(upload_root),
        folder=folder,
        host=host,
        port=port,
        tls=bool(tls),
        cert_file=cert_file,
        key_file=key_file,
        qr=qr,
        max_content_length=max_content_length,
    )


def make_ssl_context(config):
    """Load the certificate chain for a TLS config, or return None for plain HTTP."""
    if not config.tls:
        return None
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    try:
        context.load_cert_chain(certfile=config.cert_file, keyfile=config.key_file)
    except (ssl.SSLError, OSError) as e:
        raise StartupConfigError(f"Error loading certificate/key: {e}") from e
    return context
