import base64
import binascii

from Crypto.Hash import SHA256
from Crypto.PublicKey import RSA
from Crypto.Signature import PKCS1_v1_5

DEFAULT_KEY_SIZE = 2048


class CryptoError(Exception):
    """Raised for malformed key material or signature bytes, never for a mismatch."""


def generate_key_pair(key_size: int = DEFAULT_KEY_SIZE) -> tuple[str, str]:
    """Returns a new `(public_key_pem, private_key_pem)` RSA key pair."""
    k = RSA.generate(key_size)
    privkey_pem = k.export_key("PEM", pkcs=8).decode("utf-8")
    pubkey_pem = k.publickey().export_key("PEM").decode("utf-8")
    return pubkey_pem, privkey_pem


def _import_key(pem: str) -> RSA.RsaKey:
    try:
        return RSA.import_key(pem)
    except (ValueError, IndexError, TypeError) as exc:
        raise CryptoError(f"Invalid PEM: {exc}") from exc


def sign(data: bytes, private_key_pem: str) -> str:
    """Signs with RSA-SHA256 (PKCS#1 v1.5), returns the base64 signature."""
    privkey = _import_key(private_key_pem)
    if not privkey.has_private():
        raise CryptoError("Not a private key")

    digest = SHA256.new()
    digest.update(data)
    signature = PKCS1_v1_5.new(privkey).sign(digest)
    return base64.b64encode(signature).decode("utf-8")


def verify(data: bytes, signature: str, public_key_pem: str) -> bool:
    pubkey = _import_key(public_key_pem)
    try:
        raw_signature = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CryptoError(f"Invalid signature encoding: {exc}") from exc

    digest = SHA256.new()
    digest.update(data)
    return PKCS1_v1_5.new(pubkey).verify(digest, raw_signature)
