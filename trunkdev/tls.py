"""TLS settings for the development server."""

from __future__ import annotations

import ssl
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class TlsConfig:
    """Either a certificate (and key) on disk or a ready SSL context."""

    cert_path: Optional[Path] = None
    key_path: Optional[Path] = None
    context: Optional[ssl.SSLContext] = None

    def __post_init__(self) -> None:
        if self.context is None and self.cert_path is None:
            raise ValueError("a TLS configuration needs a certificate or an SSL context")
        if self.context is not None and (self.cert_path is not None or self.key_path is not None):
            raise ValueError("give either certificate files or an SSL context, not both")

    def ssl_context(self) -> ssl.SSLContext:
        """The server-side SSL context for this configuration."""
        if self.context is not None:
            return self.context
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(self.cert_path, self.key_path)
        return context