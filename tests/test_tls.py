import ssl

import pytest

from trunkdev.tls import TlsConfig


def test_prepared_context_is_returned():
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    assert TlsConfig(context=context).ssl_context() is context


def test_missing_certificate_file(tmp_path):
    config = TlsConfig(cert_path=tmp_path / "cert.pem", key_path=tmp_path / "key.pem")
    with pytest.raises(FileNotFoundError):
        config.ssl_context()


def test_invalid_certificate(tmp_path):
    cert = tmp_path / "cert.pem"
    key = tmp_path / "key.pem"
    cert.write_text("not a certificate", encoding="utf-8")
    key.write_text("not a key", encoding="utf-8")
    with pytest.raises(ssl.SSLError):
        TlsConfig(cert_path=cert, key_path=key).ssl_context()


def test_needs_something():
    with pytest.raises(ValueError):
        TlsConfig()


def test_rejects_both(tmp_path):
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    with pytest.raises(ValueError):
        TlsConfig(cert_path=tmp_path / "cert.pem", context=context)