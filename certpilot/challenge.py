# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""DNS-01 challenge value calculation (RFC 8555 section 8.4).

This is the only place the TXT digest is computed. The value has to match what
the CA derives from the account key bit for bit; a thumbprint built from a
different representation of the key fails validation without any useful
error from the CA.

- jwk_thumbprint(key) -> RFC 7638 thumbprint, base64url without padding
- compute_dns01_value(token, thumbprint) -> TXT record value
"""
from typing import Optional, Union
import base64
import hashlib
import json

from cryptography.hazmat.primitives.asymmetric import ec, rsa

# RFC 7638 section 3.2: only the required members take part in the hash
REQUIRED_MEMBERS = {
    "RSA": ("e", "kty", "n"),
    "EC": ("crv", "kty", "x", "y"),
}

_CURVES = {
    "secp256r1": ("P-256", 32),
    "secp384r1": ("P-384", 48),
    "secp521r1": ("P-521", 66),
}


def b64url(data: bytes) -> str:
    """Base64url encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _int_to_b64url(value: int, length: Optional[int] = None) -> str:
    if length is None:
        length = max(1, (value.bit_length() + 7) // 8)
    return b64url(value.to_bytes(length, "big"))


def public_jwk(key) -> dict:
    """Return the public JWK members for an RSA or EC key (private or public)."""
    if isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        key = key.public_key()
    if isinstance(key, rsa.RSAPublicKey):
        numbers = key.public_numbers()
        return {"kty": "RSA", "n": _int_to_b64url(numbers.n), "e": _int_to_b64url(numbers.e)}
    if isinstance(key, ec.EllipticCurvePublicKey):
        try:
            crv, size = _CURVES[key.curve.name]
        except KeyError:
            raise ValueError(f"Unsupported curve for JWK: {key.curve.name}")
        numbers = key.public_numbers()
        return {"kty": "EC", "crv": crv,
                "x": _int_to_b64url(numbers.x, size),
                "y": _int_to_b64url(numbers.y, size)}
    raise ValueError(f"Unsupported key type for JWK: {type(key).__name__}")


def jwk_thumbprint(key: Union[dict, object]) -> str:
    """Compute the RFC 7638 SHA-256 thumbprint of a JWK dict or a key object."""
    jwk = key if isinstance(key, dict) else public_jwk(key)
    members = REQUIRED_MEMBERS.get(jwk.get("kty"))
    if members is None:
        raise ValueError(f"Unsupported JWK key type: {jwk.get('kty')!r}")
    missing = [m for m in members if not jwk.get(m)]
    if missing:
        raise ValueError(f"JWK is missing required members: {', '.join(missing)}")
    canonical = json.dumps({m: jwk[m] for m in members}, sort_keys=True, separators=(",", ":"))
    return b64url(hashlib.sha256(canonical.encode("utf-8")).digest())


def key_authorization(token: str, thumbprint: str) -> str:
    if not token:
        raise ValueError("ACME challenge token must not be empty")
    if not thumbprint:
        raise ValueError("Account key thumbprint must not be empty")
    return f"{token}.{thumbprint}"


def compute_dns01_value(token: str, thumbprint: str) -> str:
    """Return base64url(SHA-256(token + "." + thumbprint)) without padding."""
    digest = hashlib.sha256(key_authorization(token, thumbprint).encode("ascii")).digest()
    return b64url(digest)
