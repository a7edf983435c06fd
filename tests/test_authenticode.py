from __future__ import annotations

import hashlib
from datetime import datetime, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, pkcs7
from cryptography.x509.oid import NameOID

from pe_builder import CODE_RX, PEBuilder, win_certificate
from petriage.authenticode import (
    ANALYSIS_ERROR,
    EXPIRED,
    NO_SIGNATURE,
    NOT_YET_VALID,
    VALID,
    extract_authenticode,
)
from petriage.pe import DIR_SECURITY, parse_headers

NOT_BEFORE = datetime(2020, 1, 1, tzinfo=timezone.utc)
NOT_AFTER = datetime(2030, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(scope="module")
def cert() -> x509.Certificate:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Petriage Test Signer")])
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(1234)
        .not_valid_before(NOT_BEFORE)
        .not_valid_after(NOT_AFTER)
        .sign(key, hashes.SHA256())
    )


def _signed(overlay: bytes):
    b = PEBuilder().add_section(".text", 0x1000, b"\xC3" * 16, CODE_RX)
    b.set_directory(DIR_SECURITY, b.overlay_offset(), len(overlay))
    b.overlay = overlay
    data = b.build()
    return parse_headers(data), data


def test_zero_size_directory_means_no_signature():
    data = PEBuilder().build()
    result = extract_authenticode(parse_headers(data), data)
    assert result.has_signature is False
    assert result.is_valid is False
    assert result.validation_error == NO_SIGNATURE
    assert result.to_dict()["certificate_chain"] == []


def test_valid_signer(cert):
    h, data = _signed(win_certificate(pkcs7.serialize_certificates([cert], Encoding.DER)))
    result = extract_authenticode(h, data, now=datetime(2025, 6, 1, tzinfo=timezone.utc))

    assert result.has_signature and result.is_valid
    assert result.validation_error == VALID
    d = result.to_dict()
    assert d["subject"] == "CN=Petriage Test Signer"
    assert d["issuer"] == "CN=Petriage Test Signer"
    assert d["serial_number"] == "1234"
    assert d["public_key_algorithm"] == "EC"
    assert d["sha256_thumbprint"] == hashlib.sha256(cert.public_bytes(Encoding.DER)).hexdigest()
    assert d["sha1_thumbprint"] == hashlib.sha1(cert.public_bytes(Encoding.DER)).hexdigest()
    assert len(d["certificate_chain"]) == 1


@pytest.mark.parametrize(
    "now, expected",
    [
        (datetime(2031, 1, 1, tzinfo=timezone.utc), EXPIRED),
        (datetime(2019, 1, 1, tzinfo=timezone.utc), NOT_YET_VALID),
    ],
)
def test_validity_window(cert, now, expected):
    h, data = _signed(win_certificate(pkcs7.serialize_certificates([cert], Encoding.DER)))
    result = extract_authenticode(h, data, now=now)
    assert result.has_signature is True
    assert result.is_valid is False
    assert result.validation_error == expected
    assert result.signer is not None


def test_non_pkcs_certificate_type(cert):
    h, data = _signed(win_certificate(cert.public_bytes(Encoding.DER), cert_type=0x0001))
    result = extract_authenticode(h, data)
    assert result.has_signature is True
    assert result.is_valid is False
    assert result.validation_error.startswith("Unsupported certificate type")


def test_garbage_signed_data():
    h, data = _signed(win_certificate(b"\x30\x03\x02\x01" + b"\xff" * 28))
    result = extract_authenticode(h, data)
    assert result.has_signature is True
    assert result.is_valid is False
    assert result.chain == []


def test_table_outside_file():
    b = PEBuilder()
    b.set_directory(DIR_SECURITY, b.overlay_offset() + 0x1000, 0x100)
    data = b.build()
    result = extract_authenticode(parse_headers(data), data)
    assert result.has_signature is True
    assert result.is_valid is False


def test_content_info_without_signed_data():
    # id-data ContentInfo wrapping an empty OCTET STRING
    blob = bytes.fromhex("300f06092a864886f70d010701a0020400")
    h, data = _signed(win_certificate(blob))
    result = extract_authenticode(h, data)
    assert result.has_signature is True
    assert result.is_valid is False
    assert result.validation_error.startswith(ANALYSIS_ERROR)
    assert result.chain == []
