import hashlib
import hmac
from typing import Optional


class SignatureScheme:
    """How a PSP signs its webhook bodies. Subclasses verify a raw body against a presented signature."""

    name = "abstract"

    def verify(self, body: bytes, signature: str) -> bool:
        raise NotImplementedError


class HmacSignatureScheme(SignatureScheme):
    def __init__(self, secret: str, digestmod=hashlib.sha256, name: str = "hmac-sha256"):
        if not secret:
            # Fail closed: an empty key would make every forged body "valid".
            raise ValueError("webhook secret is not configured")
        self._secret = secret.encode("utf-8")
        self._digestmod = digestmod
        self.name = name

    def sign(self, body: bytes) -> str:
        return hmac.new(self._secret, body or b"", self._digestmod).hexdigest()

    def verify(self, body: bytes, signature: str) -> bool:
        presented = (signature or "").strip()
        # Accept the common `sha256=<hex>` header form as well as a bare hex digest.
        if "=" in presented:
            presented = presented.split("=", 1)[1].strip()
        if not presented:
            return False
        return hmac.compare_digest(presented.lower(), self.sign(body))


_SCHEMES = {
    "hmac-sha256": hashlib.sha256,
    "hmac-sha512": hashlib.sha512,
}


def build_signature_scheme(name: str, secret: Optional[str]) -> SignatureScheme:
    key = (name or "hmac-sha256").strip().lower()
    digestmod = _SCHEMES.get(key)
    if digestmod is None:
        raise ValueError(f"unsupported webhook signature scheme: {name}")
    return HmacSignatureScheme(secret or "", digestmod=digestmod, name=key)
