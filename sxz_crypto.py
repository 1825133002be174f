#!/usr/bin/env python3
"""Key and certificate helpers for signed XAR archives.

The packer itself signs through ``openssl``; this module is used to
cross-check signature sizes, verify packed archives and generate a
development certificate chain. It requires `cryptography`.

Usage:
    python sxz_crypto.py devchain certs/    # key.pem, leaf/intermediate/root.cer, sxz.json
"""

from __future__ import annotations

import argparse
import datetime
import json
import sys
from pathlib import Path
from typing import List, NamedTuple, Optional, Sequence

SUPPORTED_DIGESTS = {"sha1", "sha256", "sha384", "sha512"}

DEV_KEY_FILE = "key.pem"
DEV_LEAF_FILE = "leaf.cer"
DEV_INTERMEDIATE_FILE = "intermediate.cer"
DEV_ROOT_FILE = "root.cer"
DEV_OPTIONS_FILE = "sxz.json"


def _load_crypto():
    try:
        from cryptography import x509
        from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
        from cryptography.hazmat.primitives import hashes, serialization
        from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
    except Exception as exc:  # pragma: no cover - depends on optional dependency
        raise RuntimeError(
            "cryptography is required for signature operations. "
            "Install with: pip install cryptography"
        ) from exc
    return x509, hashes, serialization, ec, ed25519, padding, rsa, InvalidSignature, UnsupportedAlgorithm


def _hash_for(digest: str):
    _x509, hashes, *_rest = _load_crypto()
    if digest not in SUPPORTED_DIGESTS:
        raise ValueError(f"Unsupported digest algorithm: {digest}")
    return {
        "sha1": hashes.SHA1,
        "sha256": hashes.SHA256,
        "sha384": hashes.SHA384,
        "sha512": hashes.SHA512,
    }[digest]()


# =============================================================================
# Loading
# =============================================================================


def load_private_key(path: Path, passphrase: Optional[str] = None) -> object:
    _x509, _hashes, serialization, *_rest = _load_crypto()
    password = passphrase.encode("utf-8") if passphrase else None
    data = Path(path).read_bytes()
    if b"-----BEGIN" in data:
        return serialization.load_pem_private_key(data, password=password)
    return serialization.load_der_private_key(data, password=password)


def load_certificate_bytes(data: bytes) -> object:
    """Load a certificate in PEM or DER encoding."""
    x509, *_rest = _load_crypto()
    if b"-----BEGIN CERTIFICATE" in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def load_certificate(path: Path) -> object:
    return load_certificate_bytes(Path(path).read_bytes())


# =============================================================================
# Signature size
# =============================================================================


def expected_signature_size(key_path: Path) -> Optional[int]:
    """Signature length implied by the key, or None when it is not fixed.

    RSA signatures are always as long as the modulus. ECDSA signatures are
    DER encoded and vary in length, so no size can be computed for them.
    """
    _x509, _hashes, _ser, _ec, ed25519, _padding, rsa, _invalid, unsupported = _load_crypto()
    try:
        key = load_private_key(key_path)
    except (ValueError, TypeError, OSError, unsupported):
        return None
    if isinstance(key, rsa.RSAPrivateKey):
        return (key.key_size + 7) // 8
    if isinstance(key, ed25519.Ed25519PrivateKey):
        return 64
    return None


# =============================================================================
# Sign / verify
# =============================================================================


def sign_data(private_key: object, data: bytes, digest: str = "sha1") -> bytes:
    """Sign like ``openssl dgst -<digest> -sign``."""
    _x509, _hashes, _ser, ec, ed25519, padding, rsa, _invalid, _unsupported = _load_crypto()
    algorithm = _hash_for(digest)
    if isinstance(private_key, rsa.RSAPrivateKey):
        return private_key.sign(data, padding.PKCS1v15(), algorithm)
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        return private_key.sign(data, ec.ECDSA(algorithm))
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        return private_key.sign(data)
    raise ValueError("Unsupported private key type")


def verify_signature(public_key: object, signature: bytes, data: bytes, digest: str = "sha1") -> bool:
    _x509, _hashes, _ser, ec, ed25519, padding, rsa, invalid, _unsupported = _load_crypto()
    algorithm = _hash_for(digest)
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, data, padding.PKCS1v15(), algorithm)
            return True
        if isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, data, ec.ECDSA(algorithm))
            return True
        if isinstance(public_key, ed25519.Ed25519PublicKey):
            public_key.verify(signature, data)
            return True
    except invalid:
        return False
    return False


def check_chain(certificates: Sequence[object]) -> List[str]:
    """Return problems found walking a leaf-first certificate chain."""
    *_rest, invalid, _unsupported = _load_crypto()
    problems: List[str] = []
    for index, cert in enumerate(certificates):
        is_last = index == len(certificates) - 1
        issuer = cert if is_last else certificates[index + 1]
        label = "root" if is_last else f"certificate {index}"
        if cert.issuer != issuer.subject:
            problems.append(
                f"{label} issuer {cert.issuer.rfc4514_string()} does not match "
                f"{issuer.subject.rfc4514_string()}"
            )
            continue
        try:
            cert.verify_directly_issued_by(issuer)
        except (ValueError, TypeError, invalid) as exc:
            problems.append(f"{label} is not signed by its issuer: {exc or type(exc).__name__}")
    return problems


# =============================================================================
# Development chain
# =============================================================================


class DevChain(NamedTuple):
    private_key: Path
    leaf: Path
    intermediate: Path
    root: Path
    options: Path


def _issue(subject_cn: str, public_key, issuer_name, issuer_key, ca: bool, days: int):
    x509, hashes, *_rest = _load_crypto()
    from cryptography.x509.oid import NameOID

    now = datetime.datetime.now(datetime.timezone.utc)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject_cn)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name or subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    return builder.sign(issuer_key, hashes.SHA256())


def generate_dev_chain(
    out_dir: Path,
    key_size: int = 2048,
    common_name: str = "Safari Developer: sxz test",
    days: int = 365,
) -> DevChain:
    """Write a private key and a self-signed leaf/intermediate/root chain."""
    _x509, _hashes, serialization, _ec, _ed, _padding, rsa, *_rest = _load_crypto()
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    root_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    intermediate_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    leaf_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

    root = _issue("sxz Test Root CA", root_key.public_key(), None, root_key, True, days)
    intermediate = _issue(
        "sxz Test Developer Relations CA",
        intermediate_key.public_key(),
        root.subject,
        root_key,
        True,
        days,
    )
    leaf = _issue(common_name, leaf_key.public_key(), intermediate.subject, intermediate_key, False, days)

    chain = DevChain(
        private_key=out_dir / DEV_KEY_FILE,
        leaf=out_dir / DEV_LEAF_FILE,
        intermediate=out_dir / DEV_INTERMEDIATE_FILE,
        root=out_dir / DEV_ROOT_FILE,
        options=out_dir / DEV_OPTIONS_FILE,
    )
    chain.private_key.write_bytes(
        leaf_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    for path, cert in ((chain.leaf, leaf), (chain.intermediate, intermediate), (chain.root, root)):
        path.write_bytes(cert.public_bytes(serialization.Encoding.DER))

    chain.options.write_text(
        json.dumps(
            {
                "privateKey": DEV_KEY_FILE,
                "extensionCer": DEV_LEAF_FILE,
                "appleDevCer": DEV_INTERMEDIATE_FILE,
                "appleRootCer": DEV_ROOT_FILE,
            },
            indent=2,
        )
        + "\n",
        encoding="utf-8",
    )
    return chain


def main(argv: Optional[List[str]] = None, prog: Optional[str] = None) -> int:
    parser = argparse.ArgumentParser(
        prog=prog,
        description="Generate a development key and certificate chain for sxz pack"
    )
    parser.add_argument("out_dir", type=Path, help="Directory for the key, certificates and sxz.json")
    parser.add_argument("--key-size", type=int, default=2048, help="RSA key size (default: 2048)")
    parser.add_argument("--common-name", default="Safari Developer: sxz test", help="Leaf certificate CN")
    parser.add_argument("--days", type=int, default=365, help="Validity in days (default: 365)")
    args = parser.parse_args(argv)

    try:
        chain = generate_dev_chain(
            args.out_dir, key_size=args.key_size, common_name=args.common_name, days=args.days
        )
    except (RuntimeError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Options written to {chain.options}", file=sys.stderr)
    print(chain.options)
    return 0


if __name__ == "__main__":
    sys.exit(main())
