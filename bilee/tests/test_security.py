import hashlib
import hmac

import pytest

from bilee.app.security import HmacSignatureScheme, build_signature_scheme


def test_hmac_signature_roundtrip():
    scheme = HmacSignatureScheme("s3cret")
    body = b'{"session_id":"s1"}'
    sig = scheme.sign(body)
    assert sig == hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
    assert scheme.verify(body, sig) is True
    assert scheme.verify(body + b" ", sig) is False


def test_hmac_signature_accepts_prefixed_header_form():
    scheme = HmacSignatureScheme("s3cret")
    body = b"{}"
    assert scheme.verify(body, "sha256=" + scheme.sign(body)) is True
    assert scheme.verify(body, "sha256=") is False
    assert scheme.verify(body, "") is False


def test_empty_secret_fails_closed():
    with pytest.raises(ValueError):
        HmacSignatureScheme("")
    with pytest.raises(ValueError):
        build_signature_scheme("hmac-sha256", None)


def test_build_signature_scheme_selects_digest():
    scheme = build_signature_scheme("HMAC-SHA512", "k")
    assert scheme.name == "hmac-sha512"
    assert scheme.sign(b"x") == hmac.new(b"k", b"x", hashlib.sha512).hexdigest()
    with pytest.raises(ValueError):
        build_signature_scheme("md5", "k")
