from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from conftest import make_cert
from depthlink.identity import (
    IdentityError,
    IdentityNotFound,
    certificate_thumbprint,
    load_identity,
    materialize_identity,
)


def _pem_cert(cert) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def _pem_key(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def test_pkcs12_selects_key_bearing_certificate(tmp_path: Path) -> None:
    cert, key = make_cert("station-gauge-01")
    ca, _ = make_cert("fleet-intermediate")

    data = pkcs12.serialize_key_and_certificates(
        b"device",
        key,
        cert,
        [ca],
        serialization.BestAvailableEncryption(b"1234"),
    )
    path = tmp_path / "device.pfx"
    path.write_bytes(data)

    identity = load_identity(str(path), "1234")

    assert identity.thumbprint == certificate_thumbprint(cert)
    assert identity.common_name == "station-gauge-01"
    assert [certificate_thumbprint(c) for c in identity.chain] == [certificate_thumbprint(ca)]


def test_pkcs12_without_private_key_raises_identity_not_found(tmp_path: Path) -> None:
    ca1, _ = make_cert("root-a")
    ca2, _ = make_cert("root-b")

    data = pkcs12.serialize_key_and_certificates(
        None,
        None,
        None,
        [ca1, ca2],
        serialization.BestAvailableEncryption(b"1234"),
    )
    path = tmp_path / "certs_only.pfx"
    path.write_bytes(data)

    with pytest.raises(IdentityNotFound):
        load_identity(str(path), "1234")


def test_pkcs12_wrong_passphrase_raises_identity_error(tmp_path: Path) -> None:
    cert, key = make_cert("station-gauge-01")
    data = pkcs12.serialize_key_and_certificates(
        b"device", key, cert, None, serialization.BestAvailableEncryption(b"1234")
    )
    path = tmp_path / "device.p12"
    path.write_bytes(data)

    with pytest.raises(IdentityError) as ei:
        load_identity(str(path), "wrong")
    assert not isinstance(ei.value, IdentityNotFound)


def test_pem_bundle_picks_first_certificate_with_key(tmp_path: Path) -> None:
    chain_cert, _ = make_cert("fleet-intermediate")
    first, first_key = make_cert("station-gauge-01")
    second, second_key = make_cert("station-gauge-02")

    path = tmp_path / "bundle.pem"
    path.write_bytes(
        _pem_cert(chain_cert)
        + _pem_cert(first)
        + _pem_cert(second)
        # Key order in the file does not matter; certificate order does.
        + _pem_key(second_key)
        + _pem_key(first_key)
    )

    for _ in range(3):
        identity = load_identity(str(path))
        assert identity.thumbprint == certificate_thumbprint(first)
        assert [c.subject for c in identity.chain] == [chain_cert.subject]


def test_pem_bundle_without_keys_raises_identity_not_found(tmp_path: Path) -> None:
    cert, _ = make_cert("station-gauge-01")
    path = tmp_path / "certs.pem"
    path.write_bytes(_pem_cert(cert))

    with pytest.raises(IdentityNotFound):
        load_identity(str(path))


def test_missing_identity_store_raises_identity_error(tmp_path: Path) -> None:
    with pytest.raises(IdentityError):
        load_identity(str(tmp_path / "nope.pfx"), "1234")


def test_materialize_identity_writes_private_files_and_cleans_up(device_identity) -> None:
    with materialize_identity(device_identity) as (cert_path, key_path):
        assert Path(cert_path).read_bytes().startswith(b"-----BEGIN CERTIFICATE-----")
        assert b"PRIVATE KEY" in Path(key_path).read_bytes()
        mode = stat.S_IMODE(os.stat(key_path).st_mode)
        assert mode == 0o600

    assert not Path(cert_path).exists()
    assert not Path(key_path).exists()
