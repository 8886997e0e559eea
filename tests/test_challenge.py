# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
import josepy as jose
import pytest
from acme import challenges
from cryptography.hazmat.primitives.asymmetric import ec

from certpilot.challenge import compute_dns01_value, jwk_thumbprint, key_authorization, public_jwk

from conftest import rsa_key

# RFC 7638 section 3.1
RFC7638_JWK = {
    "kty": "RSA",
    "n": "0vx7agoebGcQSuuPiLJXZptN9nndrQmbXEps2aiAFbWhM78LhWx4cbbfAAtVT86zwu1RK7aPFFxuhDR1L6tSoc_BJECPebWK"
         "RXjBZCiFV4n3oknjhMstn64tZ_2W-5JsGY4Hc5n9yBXArwl93lqt7_RN5w6Cf0h4QyQ5v-65YGjQR0_FDW2QvzqY368QQMicAt"
         "aSqzs8KJZgnYb9c7d0zgdAZHzu6qMQvRL5hajrn1n91CbOpbISD08qNLyrdkt-bFTWhAI4vMQFh6WeZu0fM4lFd2NcRwr3XPks"
         "INHaQ-G_xBniIqbw0Ls1jF44-csFCur-kEgU8awapJzKnqDKgw",
    "e": "AQAB",
    "alg": "RS256",
    "kid": "2011-04-29",
}


def test_thumbprint_matches_rfc7638_example():
    assert jwk_thumbprint(RFC7638_JWK) == "NzbLsXh8uDCcd-6MNwXF4W_7noWXFZAfHkxZsRGC9Xs"


def test_thumbprint_of_key_matches_josepy():
    key = rsa_key("account")
    expected = jose.b64encode(jose.JWKRSA(key=key.public_key()).thumbprint()).decode("ascii")
    assert jwk_thumbprint(key) == expected
    assert jwk_thumbprint(key.public_key()) == expected


def test_ec_jwk_uses_fixed_width_coordinates():
    key = ec.generate_private_key(ec.SECP256R1())
    jwk = public_jwk(key)
    assert jwk["kty"] == "EC" and jwk["crv"] == "P-256"
    # 32 byte coordinates encode to 43 characters without padding
    assert len(jwk["x"]) == 43 and len(jwk["y"]) == 43
    assert jwk_thumbprint(key) == jwk_thumbprint(jwk)


def test_thumbprint_rejects_incomplete_jwk():
    with pytest.raises(ValueError):
        jwk_thumbprint({"kty": "RSA", "e": "AQAB"})
    with pytest.raises(ValueError):
        jwk_thumbprint({"kty": "oct", "k": "abc"})


def test_dns01_value_matches_acme_library():
    key = rsa_key("account")
    chall = challenges.DNS01(token=b"\x17" * 32)
    expected = chall.validation(jose.JWKRSA(key=key))
    assert compute_dns01_value(chall.encode("token"), jwk_thumbprint(key)) == expected


def test_dns01_value_known_vector():
    # RFC 8555 section 8.1 token with the RFC 7638 thumbprint
    thumbprint = jwk_thumbprint(RFC7638_JWK)
    value = compute_dns01_value("evaGxfADs6pSRb2LAv9IZf17Dt3juxGJ-PCt92wr-oA", thumbprint)
    assert value == "ZTRx1Ckl1-tM05o5zaizTTA0yUy5AGereMgSNWC6Ll8"


def test_dns01_value_is_deterministic_and_unpadded():
    a = compute_dns01_value("evaGxfADs6pSRb2LAv9IZf17Dt3juxGJ-PCt92wr-oA", "thumb")
    b = compute_dns01_value("evaGxfADs6pSRb2LAv9IZf17Dt3juxGJ-PCt92wr-oA", "thumb")
    assert a == b
    assert len(a) == 43
    assert "=" not in a and "+" not in a and "/" not in a


def test_dns01_value_depends_on_both_inputs():
    base = compute_dns01_value("token", "thumb")
    assert compute_dns01_value("token2", "thumb") != base
    assert compute_dns01_value("token", "thumb2") != base


@pytest.mark.parametrize("token,thumbprint", [("", "thumb"), ("token", ""), (None, "thumb")])
def test_empty_inputs_are_rejected(token, thumbprint):
    with pytest.raises(ValueError):
        compute_dns01_value(token, thumbprint)


def test_key_authorization_joins_with_dot():
    assert key_authorization("tok", "thumb") == "tok.thumb"
