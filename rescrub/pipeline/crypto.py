"""
Signature schemes and certificate-chain validation for evidence records.

Two scheme families are supported: Ed25519 and GOST R 34.10-2012 (256 and
512 bit keys, Streebog digests). The scheme is chosen by the algorithm the
certificate declares. Anything the validator cannot positively confirm is a
failure; there are no warnings.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

import gostcrypto
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from pydantic import BaseModel

from rescrub.config import Settings, settings
from rescrub.exceptions import SignatureValidationFailure

logger = logging.getLogger(__name__)

ED25519 = "ed25519"
GOST_256 = "gost-r-34.10-2012-256"
GOST_512 = "gost-r-34.10-2012-512"

MAX_CHAIN_DEPTH = 8


# ---------------------------------------------------------------------------
# Schemes
# ---------------------------------------------------------------------------

class SignatureScheme(ABC):
    algorithm: str = "abstract"

    @abstractmethod
    def sign(self, private_key: bytes, data: bytes) -> bytes:
        ...

    @abstractmethod
    def verify(self, public_key: bytes, data: bytes, signature: bytes) -> bool:
        """False for a wrong or malformed signature, never raises."""

    @abstractmethod
    def public_key(self, private_key: bytes) -> bytes:
        ...


class Ed25519Scheme(SignatureScheme):
    algorithm = ED25519

    def sign(self, private_key: bytes, data: bytes) -> bytes:
        return Ed25519PrivateKey.from_private_bytes(private_key).sign(data)

    def verify(self, public_key: bytes, data: bytes, signature: bytes) -> bool:
        try:
            Ed25519PublicKey.from_public_bytes(public_key).verify(signature, data)
        except (InvalidSignature, ValueError):
            return False
        return True

    def public_key(self, private_key: bytes) -> bytes:
        key = Ed25519PrivateKey.from_private_bytes(private_key).public_key()
        return key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )


class GostScheme(SignatureScheme):
    """GOST R 34.10-2012 over a Streebog digest of the data."""

    # bits -> (signature mode, curve parameter set, digest)
    PARAMETERS = {
        256: (
            gostcrypto.gostsignature.MODE_256,
            "id-tc26-gost-3410-2012-256-paramSetB",
            "streebog256",
        ),
        512: (
            gostcrypto.gostsignature.MODE_512,
            "id-tc26-gost-3410-12-512-paramSetA",
            "streebog512",
        ),
    }

    def __init__(self, bits: int = 256):
        if bits not in self.PARAMETERS:
            raise ValueError(f"Unsupported GOST key size: {bits}")
        self.bits = bits
        self.algorithm = GOST_256 if bits == 256 else GOST_512
        mode, curve_name, self.digest_name = self.PARAMETERS[bits]
        self._signer = gostcrypto.gostsignature.new(
            mode, gostcrypto.gostsignature.CURVES_R_1323565_1_024_2019[curve_name]
        )
        # private key is one coordinate wide, public key and signature two
        self.private_key_size = bits // 8
        self.signature_size = bits // 4

    def digest(self, data: bytes) -> bytearray:
        return gostcrypto.gosthash.new(self.digest_name, data=bytearray(data)).digest()

    def sign(self, private_key: bytes, data: bytes) -> bytes:
        if len(private_key) != self.private_key_size:
            raise ValueError(f"{self.algorithm} private key must be {self.private_key_size} bytes")
        return bytes(self._signer.sign(bytearray(private_key), self.digest(data)))

    def verify(self, public_key: bytes, data: bytes, signature: bytes) -> bool:
        if len(public_key) != self.signature_size or len(signature) != self.signature_size:
            return False
        try:
            return bool(self._signer.verify(bytearray(public_key), self.digest(data), bytearray(signature)))
        except (gostcrypto.gostsignature.GOSTSignatureError, ValueError):
            return False

    def public_key(self, private_key: bytes) -> bytes:
        if len(private_key) != self.private_key_size:
            raise ValueError(f"{self.algorithm} private key must be {self.private_key_size} bytes")
        return bytes(self._signer.public_key_generate(bytearray(private_key)))


SCHEMES: dict[str, SignatureScheme] = {
    ED25519: Ed25519Scheme(),
    GOST_256: GostScheme(256),
    GOST_512: GostScheme(512),
}


def get_scheme(algorithm: str) -> SignatureScheme:
    try:
        return SCHEMES[algorithm.lower()]
    except KeyError:
        raise SignatureValidationFailure(f"Unsupported signature algorithm: {algorithm}") from None


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------

class Certificate(BaseModel):
    """Minimal certificate: a public key bound to a subject by an issuer signature."""
    serial: str
    subject: str
    issuer: str
    algorithm: str
    public_key: str  # hex
    not_before: datetime
    not_after: datetime
    signature: Optional[str] = None  # hex, issuer signature over tbs_bytes()

    def tbs_bytes(self) -> bytes:
        body = self.model_dump(mode="json", exclude={"signature"})
        return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    def is_valid_at(self, moment: datetime) -> bool:
        return self.not_before <= moment <= self.not_after

    def same_key(self, other: "Certificate") -> bool:
        return (
            self.subject == other.subject
            and self.algorithm.lower() == other.algorithm.lower()
            and self.public_key.lower() == other.public_key.lower()
        )


def issue_certificate(
    subject: str,
    public_key: bytes,
    algorithm: str,
    serial: str,
    not_before: datetime,
    not_after: datetime,
    issuer: Optional[Certificate] = None,
    issuer_private_key: Optional[bytes] = None,
    signing_key: Optional[bytes] = None,
) -> Certificate:
    """Issue a certificate; without ``issuer`` it is self-signed with ``signing_key``."""
    cert = Certificate(
        serial=serial,
        subject=subject,
        issuer=issuer.subject if issuer else subject,
        algorithm=algorithm,
        public_key=public_key.hex(),
        not_before=not_before,
        not_after=not_after,
    )
    key = issuer_private_key if issuer else signing_key
    if key is None:
        raise ValueError("A private key is required to sign the certificate")
    scheme = get_scheme(issuer.algorithm if issuer else algorithm)
    cert.signature = scheme.sign(key, cert.tbs_bytes()).hex()
    return cert


def load_certificates(path: str) -> list[Certificate]:
    """Read a JSON file holding one certificate object or a list of them."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = [raw]
    return [Certificate(**item) for item in raw]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationResult(BaseModel):
    valid: bool
    algorithm: Optional[str] = None
    certificate_chain_ok: bool = False
    reason: Optional[str] = None


class CryptoValidator:
    def __init__(self, trusted_roots: Iterable[Certificate] = ()):
        self.trusted_roots = list(trusted_roots)

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "CryptoValidator":
        roots = load_certificates(cfg.TRUSTED_ROOTS_PATH) if cfg.TRUSTED_ROOTS_PATH else []
        return cls(roots)

    def _trusted(self, cert: Certificate) -> bool:
        return any(cert.same_key(root) for root in self.trusted_roots)

    def _find_issuer(self, cert: Certificate, intermediates: list[Certificate]) -> Optional[Certificate]:
        for candidate in self.trusted_roots + intermediates:
            if candidate.subject == cert.issuer and not candidate.same_key(cert):
                return candidate
        return None

    def _check_chain(
        self, cert: Certificate, intermediates: list[Certificate], moment: datetime
    ) -> Optional[str]:
        """Walk issuer links up to a trusted root; returns an error or None."""
        current = cert
        for _ in range(MAX_CHAIN_DEPTH):
            if not current.is_valid_at(moment):
                return f"Certificate {current.subject} (serial {current.serial}) is not valid at {moment.isoformat()}"
            if self._trusted(current):
                return None
            issuer = self._find_issuer(current, intermediates)
            if issuer is None:
                return f"No trusted path for certificate {current.subject}"
            if not current.signature:
                return f"Certificate {current.subject} carries no issuer signature"
            try:
                scheme = get_scheme(issuer.algorithm)
                ok = scheme.verify(
                    bytes.fromhex(issuer.public_key),
                    current.tbs_bytes(),
                    bytes.fromhex(current.signature),
                )
            except (SignatureValidationFailure, ValueError) as exc:
                return f"Cannot verify certificate {current.subject}: {exc}"
            if not ok:
                return f"Issuer signature on certificate {current.subject} is invalid"
            current = issuer
        return "Certificate chain is too long"

    def validate_signature(
        self,
        record,
        certificate: Certificate,
        intermediates: Iterable[Certificate] = (),
        at: Optional[datetime] = None,
    ) -> ValidationResult:
        """Check the record's signature over its content hash against ``certificate``.

        ``record`` is anything with ``content_hash``, ``signature`` and
        ``signature_algorithm`` attributes (schema or ORM row).
        """
        moment = at or datetime.utcnow()
        algorithm = (certificate.algorithm or "").lower()

        if not record.signature:
            return ValidationResult(valid=False, algorithm=algorithm, reason="Record is not signed")
        if algorithm not in SCHEMES:
            return ValidationResult(
                valid=False, algorithm=algorithm, reason=f"Unsupported signature algorithm: {algorithm}"
            )
        if (record.signature_algorithm or "").lower() != algorithm:
            return ValidationResult(
                valid=False,
                algorithm=algorithm,
                reason=f"Algorithm mismatch: record {record.signature_algorithm}, certificate {algorithm}",
            )

        chain_error = self._check_chain(certificate, list(intermediates), moment)
        if chain_error:
            return ValidationResult(valid=False, algorithm=algorithm, reason=chain_error)

        try:
            data = bytes.fromhex(record.content_hash)
            signature = bytes.fromhex(record.signature)
            public_key = bytes.fromhex(certificate.public_key)
        except ValueError:
            return ValidationResult(
                valid=False, algorithm=algorithm, certificate_chain_ok=True, reason="Malformed signature encoding"
            )

        if not SCHEMES[algorithm].verify(public_key, data, signature):
            return ValidationResult(
                valid=False, algorithm=algorithm, certificate_chain_ok=True, reason="Signature does not verify"
            )
        return ValidationResult(valid=True, algorithm=algorithm, certificate_chain_ok=True)

    def require_valid(
        self,
        record,
        certificate: Certificate,
        intermediates: Iterable[Certificate] = (),
        at: Optional[datetime] = None,
    ) -> ValidationResult:
        result = self.validate_signature(record, certificate, intermediates, at)
        if not result.valid:
            logger.warning("Signature validation failed for %s: %s", getattr(record, "id", "?"), result.reason)
            raise SignatureValidationFailure(result.reason)
        return result


# ---------------------------------------------------------------------------
# Evidence signing
# ---------------------------------------------------------------------------

class EvidenceSigner:
    """Signs evidence digests with the service key."""

    def __init__(self, scheme: SignatureScheme, private_key: bytes, certificate: Optional[Certificate] = None):
        self.scheme = scheme
        self.private_key = private_key
        self.certificate = certificate

    @property
    def algorithm(self) -> str:
        return self.scheme.algorithm

    def sign_digest(self, content_hash: str) -> str:
        return self.scheme.sign(self.private_key, bytes.fromhex(content_hash)).hex()

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> Optional["EvidenceSigner"]:
        if not cfg.EVIDENCE_SIGNING_KEY:
            return None
        scheme = get_scheme(cfg.EVIDENCE_SIGNING_ALGORITHM)
        certificate = None
        if cfg.EVIDENCE_SIGNER_CERTIFICATE_PATH:
            certificate = load_certificates(cfg.EVIDENCE_SIGNER_CERTIFICATE_PATH)[0]
        return cls(scheme, bytes.fromhex(cfg.EVIDENCE_SIGNING_KEY), certificate)
