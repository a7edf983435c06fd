from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed448, ed25519, rsa
from cryptography.hazmat.primitives.serialization import Encoding, pkcs7

from petriage.byteview import u16, u32
from petriage.pe import DIR_SECURITY, PeHeaders

logger = logging.getLogger(__name__)

WIN_CERTIFICATE_HEADER_SIZE = 8
WIN_CERT_TYPE_PKCS_SIGNED_DATA = 0x0002

NO_SIGNATURE = "No Authenticode signature found"
NO_CERTIFICATES = "No certificates found in signature"
VALID = "Valid signature"
EXPIRED = "Certificate expired"
NOT_YET_VALID = "Certificate not yet valid"
ANALYSIS_ERROR = "Analysis error"


@dataclass(frozen=True)
class CertificateRecord:
    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    public_key_algorithm: str
    der_bytes: bytes

    def thumbprint(self, algorithm: str = "sha256") -> str:
        return hashlib.new(algorithm, self.der_bytes).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "issuer": self.issuer,
            "serial_number": self.serial_number,
            "not_before": self.not_before.isoformat(),
            "not_after": self.not_after.isoformat(),
            "public_key_algorithm": self.public_key_algorithm,
            "sha1_thumbprint": self.thumbprint("sha1"),
            "sha256_thumbprint": self.thumbprint("sha256"),
            "der_base64": base64.b64encode(self.der_bytes).decode("ascii"),
        }


@dataclass
class AuthenticodeResult:
    has_signature: bool = False
    is_valid: bool = False
    validation_error: str = NO_SIGNATURE
    chain: List[CertificateRecord] = field(default_factory=list)

    @property
    def signer(self) -> Optional[CertificateRecord]:
        return self.chain[0] if self.chain else None

    def to_dict(self) -> Dict[str, Any]:
        signer = self.signer
        return {
            "has_signature": self.has_signature,
            "is_valid": self.is_valid,
            "validation_error": self.validation_error,
            "subject": signer.subject if signer else "",
            "issuer": signer.issuer if signer else "",
            "serial_number": signer.serial_number if signer else "",
            "not_before": signer.not_before.isoformat() if signer else "",
            "not_after": signer.not_after.isoformat() if signer else "",
            "public_key_algorithm": signer.public_key_algorithm if signer else "",
            "sha1_thumbprint": signer.thumbprint("sha1") if signer else "",
            "sha256_thumbprint": signer.thumbprint("sha256") if signer else "",
            "certificate_chain": [c.to_dict() for c in self.chain],
        }


def _public_key_algorithm(cert: x509.Certificate) -> str:
    try:
        key = cert.public_key()
    except (ValueError, TypeError, UnsupportedAlgorithm):
        return "UNKNOWN"
    if isinstance(key, rsa.RSAPublicKey):
        return "RSA"
    if isinstance(key, ec.EllipticCurvePublicKey):
        return "EC"
    if isinstance(key, dsa.DSAPublicKey):
        return "DSA"
    if isinstance(key, ed25519.Ed25519PublicKey):
        return "Ed25519"
    if isinstance(key, ed448.Ed448PublicKey):
        return "Ed448"
    return "UNKNOWN"


def certificate_record(cert: x509.Certificate) -> CertificateRecord:
    return CertificateRecord(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        serial_number=str(cert.serial_number),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        public_key_algorithm=_public_key_algorithm(cert),
        der_bytes=cert.public_bytes(Encoding.DER),
    )


def _invalid(message: str) -> AuthenticodeResult:
    return AuthenticodeResult(has_signature=True, is_valid=False, validation_error=message)


def extract_authenticode(headers: PeHeaders, data: bytes, *, now: Optional[datetime] = None) -> AuthenticodeResult:
    """
    Linear pipeline over the certificate table; every step may stop at a
    no-signature or invalid-signature result, nothing is raised.
    Only the signer's validity window is checked, not the chain of trust.
    """
    # The security directory holds a file offset, not an RVA.
    cert_off, cert_size = headers.directory(data, DIR_SECURITY)
    if cert_off == 0 or cert_size == 0:
        return AuthenticodeResult()

    if cert_off + cert_size > len(data) or cert_size < WIN_CERTIFICATE_HEADER_SIZE:
        return _invalid("Certificate table lies outside the file")

    length = u32(data, cert_off)
    revision = u16(data, cert_off + 4)
    cert_type = u16(data, cert_off + 6)
    if cert_type != WIN_CERT_TYPE_PKCS_SIGNED_DATA:
        return _invalid(f"Unsupported certificate type 0x{cert_type:04X}")
    if length <= WIN_CERTIFICATE_HEADER_SIZE or length > cert_size:
        return _invalid(f"Invalid WIN_CERTIFICATE length {length}")
    logger.debug("WIN_CERTIFICATE at 0x%x length=%d revision=0x%x", cert_off, length, revision)

    blob = data[cert_off + WIN_CERTIFICATE_HEADER_SIZE : cert_off + length]
    try:
        certs = pkcs7.load_der_pkcs7_certificates(blob)
    except (ValueError, UnsupportedAlgorithm) as e:
        return _invalid(f"{ANALYSIS_ERROR}: {e}")
    if not certs:
        return _invalid(NO_CERTIFICATES)

    chain = [certificate_record(c) for c in certs]
    signer = chain[0]
    now = now or datetime.now(timezone.utc)

    result = AuthenticodeResult(has_signature=True, chain=chain)
    if now < signer.not_before:
        result.validation_error = NOT_YET_VALID
    elif now > signer.not_after:
        result.validation_error = EXPIRED
    else:
        result.is_valid = True
        result.validation_error = VALID
    return result
