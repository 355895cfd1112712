"""Self-signed listener certificate: create, check against the SNI host, pin."""

import ipaddress
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

import cryptography.x509 as x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509 import NameOID

from .errors import CertificateFailed

LOGGER = logging.getLogger("tunnel_router.certs")

CERT_DAYS = 3650


@dataclass(frozen=True)
class CertInfo:
    cert_path: Path
    key_path: Path
    # colon-separated uppercase hex, as `openssl x509 -fingerprint -sha256` prints it
    fingerprint: str


def _san_entry(host: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(host))
    except ValueError:
        return x509.DNSName(host)


def san_covers(cert: x509.Certificate, host: str) -> bool:
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return False
    try:
        return ipaddress.ip_address(host) in san.get_values_for_type(x509.IPAddress)
    except ValueError:
        return host.lower() in (name.lower() for name in san.get_values_for_type(x509.DNSName))


def fingerprint(cert: x509.Certificate) -> str:
    return ":".join(f"{b:02X}" for b in cert.fingerprint(hashes.SHA256()))


def _write_secure(path: Path, data: bytes) -> None:
    tmp = path.with_name(path.name + ".tmp")
    fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)
    os.replace(tmp, path)


def generate_cert(cert_path: Path, key_path: Path, host: str) -> x509.Certificate:
    """Write a fresh key and a self-signed certificate whose SAN is ``host``."""
    keyobj = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, host)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(keyobj.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=CERT_DAYS))
        .add_extension(x509.SubjectAlternativeName([_san_entry(host)]), critical=False)
        .sign(keyobj, hashes.SHA256())
    )
    cert_path = Path(cert_path)
    key_path = Path(key_path)
    cert_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    _write_secure(key_path, keyobj.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ))
    _write_secure(cert_path, cert.public_bytes(serialization.Encoding.PEM))
    return cert


def _load(cert_path: Path, key_path: Path, host: str):
    """Return ``(cert, "")`` when the pair on disk is usable, else ``(None, reason)``."""
    if not cert_path.exists() or not key_path.exists():
        return None, "no certificate yet"
    try:
        cert = x509.load_pem_x509_certificate(cert_path.read_bytes())
        serialization.load_pem_private_key(key_path.read_bytes(), password=None)
    except (OSError, ValueError, TypeError) as exc:
        return None, f"unreadable certificate ({exc})"
    if not san_covers(cert, host):
        return None, f"cert SAN does not include {host}"
    return cert, ""


def ensure_self_signed(cert_path: Path, key_path: Path, host: str) -> CertInfo:
    cert_path = Path(cert_path)
    key_path = Path(key_path)
    cert, reason = _load(cert_path, key_path, host)
    if cert is None:
        LOGGER.info("[tls] %s; generating self-signed cert with SAN=%s", reason, host)
        try:
            cert = generate_cert(cert_path, key_path, host)
        except OSError as exc:
            raise CertificateFailed(f"cannot write certificate: {exc}") from exc
    info = CertInfo(cert_path, key_path, fingerprint(cert))
    LOGGER.info("[tls] cert %s sha256=%s", cert_path, info.fingerprint)
    return info
