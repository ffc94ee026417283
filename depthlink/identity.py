"""Device identity loading.

A device authenticates with an X.509 certificate + private key. The identity store
is a container that may hold several certificates; exactly one must be selected:

- iterate candidates in container order
- pick the first candidate that carries a private key
- drop every other key-bearing candidate (no references retained)
- keep key-less certificates as the chain presented during mutual TLS

Supported containers:
- PKCS#12 (.pfx/.p12): primary cert+key first, then additional certificates
- PEM bundle (.pem/.crt): certificates in file order, each paired with a private
  key from the same file whose public key matches
"""

from __future__ import annotations

import contextlib
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

logger = logging.getLogger(__name__)

_PEM_SUFFIXES = (".pem", ".crt", ".cer")
_PEM_KEY_RE = re.compile(
    rb"-----BEGIN (?:ENCRYPTED |RSA |EC )?PRIVATE KEY-----.+?-----END (?:ENCRYPTED |RSA |EC )?PRIVATE KEY-----",
    flags=re.DOTALL,
)


class IdentityError(RuntimeError):
    """Raised when the identity store cannot be read."""


class IdentityNotFound(IdentityError):
    """Raised when no certificate in the identity store carries a private key."""


@dataclass(frozen=True)
class Identity:
    certificate: x509.Certificate
    private_key: Any
    chain: Tuple[x509.Certificate, ...] = ()

    @property
    def thumbprint(self) -> str:
        return certificate_thumbprint(self.certificate)

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()

    @property
    def common_name(self) -> str:
        attrs = self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        if not attrs:
            return ""
        return str(attrs[0].value)


def certificate_thumbprint(cert: x509.Certificate) -> str:
    """Upper-case SHA-1 hex fingerprint (the conventional certificate thumbprint)."""

    return cert.fingerprint(hashes.SHA1()).hex().upper()


def _public_key_bytes(key: Any) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _pkcs12_candidates(data: bytes, password: Optional[bytes]) -> List[Tuple[x509.Certificate, Any]]:
    try:
        bundle = pkcs12.load_pkcs12(data, password)
    except ValueError as e:
        raise IdentityError(f"could not decrypt identity store (bad passphrase or corrupt container): {e}") from e

    candidates: List[Tuple[x509.Certificate, Any]] = []
    if bundle.cert is not None:
        candidates.append((bundle.cert.certificate, bundle.key))
    for extra in bundle.additional_certs:
        candidates.append((extra.certificate, None))
    return candidates


def _pem_candidates(data: bytes, password: Optional[bytes]) -> List[Tuple[x509.Certificate, Any]]:
    try:
        certs = x509.load_pem_x509_certificates(data)
    except ValueError as e:
        raise IdentityError(f"identity store contains no readable certificates: {e}") from e

    keys = []
    for block in _PEM_KEY_RE.findall(data):
        try:
            keys.append(serialization.load_pem_private_key(block, password=password))
        except (ValueError, TypeError) as e:
            raise IdentityError(f"could not load private key from identity store: {e}") from e

    by_public = {_public_key_bytes(k.public_key()): k for k in keys}
    return [(c, by_public.get(_public_key_bytes(c.public_key()))) for c in certs]


def load_identity(path: str, passphrase: str = "") -> Identity:
    """Load the device identity from an identity store.

    Raises IdentityNotFound if no candidate carries a private key.
    """

    p = Path(path)
    try:
        data = p.read_bytes()
    except FileNotFoundError as e:
        raise IdentityError(f"identity store not found at {path}") from e
    except OSError as e:
        raise IdentityError(f"identity store unreadable at {path}: {e}") from e

    password = passphrase.encode("utf-8") if passphrase else None

    if p.suffix.lower() in _PEM_SUFFIXES:
        candidates = _pem_candidates(data, password)
    else:
        candidates = _pkcs12_candidates(data, password)

    selected: Optional[Tuple[x509.Certificate, Any]] = None
    chain: List[x509.Certificate] = []

    for cert, key in candidates:
        logger.info(
            "Found certificate %s %s; private_key=%s",
            certificate_thumbprint(cert),
            cert.subject.rfc4514_string(),
            key is not None,
        )
        if selected is None and key is not None:
            selected = (cert, key)
        elif key is None:
            chain.append(cert)
        # Any further key-bearing candidate is dropped here.

    candidates.clear()

    if selected is None:
        raise IdentityNotFound(f"{path} did not contain any certificate with a private key.")

    identity = Identity(certificate=selected[0], private_key=selected[1], chain=tuple(chain))
    logger.info(
        "Using certificate %s %s",
        identity.thumbprint,
        identity.subject,
        extra={"thumbprint": identity.thumbprint},
    )
    return identity


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())


@contextlib.contextmanager
def materialize_identity(identity: Identity) -> Iterator[Tuple[str, str]]:
    """Write the identity to private PEM files for the lifetime of the context.

    Yields (cert_path, key_path). The certificate file holds the leaf followed by
    the chain. Files live in a 0700 temp dir and are removed on exit.
    """

    tmp_dir = tempfile.mkdtemp(prefix="depthlink_identity_")
    try:
        root = Path(tmp_dir)
        cert_path = root / "device_cert.pem"
        key_path = root / "device_key.pem"

        cert_pem = identity.certificate.public_bytes(serialization.Encoding.PEM)
        for c in identity.chain:
            cert_pem += c.public_bytes(serialization.Encoding.PEM)

        key_pem = identity.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

        _write_private(cert_path, cert_pem)
        _write_private(key_path, key_pem)

        yield str(cert_path), str(key_path)
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)
