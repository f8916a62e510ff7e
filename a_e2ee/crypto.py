# a_e2ee/crypto.py
"""
Key agreement and message-body encryption.

Wire formats match the web client (WebCrypto):
  - public key: raw uncompressed P-256 point, base64
  - private key: PKCS#8 DER, base64 (device store only)
  - body: AES-256-GCM, key = raw ECDH shared secret, 96-bit random nonce,
    ciphertext||tag base64
"""
from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, PublicFormat

logger = logging.getLogger(__name__)

CURVE = ec.SECP256R1()
NONCE_BYTES = 12
PRIVATE_KEY_PREFIX = "e2ee_priv_"


class E2EEError(Exception):
    pass


class MissingKeyMaterial(E2EEError):
    pass


class DecryptionFailed(E2EEError):
    pass


@dataclass(frozen=True)
class KeyPair:
    public_key: str
    private_key: str


@dataclass(frozen=True)
class EncryptedPayload:
    ciphertext: str
    iv: str


def _b64e(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _b64d(text: str) -> bytes:
    return base64.b64decode(text, validate=True)


# ---------------- keys ----------------

def generate_key_pair() -> KeyPair:
    private = ec.generate_private_key(CURVE)
    public_raw = private.public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    private_der = private.private_bytes(Encoding.DER, PrivateFormat.PKCS8, NoEncryption())
    return KeyPair(public_key=_b64e(public_raw), private_key=_b64e(private_der))


def load_private_key(private_b64: str) -> ec.EllipticCurvePrivateKey:
    key = serialization.load_der_private_key(_b64d(private_b64), password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ValueError("not an EC private key")
    return key


def load_public_key(public_b64: str) -> ec.EllipticCurvePublicKey:
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, _b64d(public_b64))
    except (ValueError, binascii.Error) as e:
        raise E2EEError("invalid peer public key") from e


def public_key_for(private_b64: str) -> str:
    raw = load_private_key(private_b64).public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    return _b64e(raw)


def derive_shared_key(
    my_private_key: Union[str, ec.EllipticCurvePrivateKey],
    their_public_b64: str,
) -> bytes:
    """Both parties compute the same 256-bit key from their own private half."""
    if isinstance(my_private_key, str):
        my_private_key = load_private_key(my_private_key)
    return my_private_key.exchange(ec.ECDH(), load_public_key(their_public_b64))


# ---------------- device custody ----------------

def private_key_key(uid: str) -> str:
    return f"{PRIVATE_KEY_PREFIX}{uid}"


def get_local_private_key(device, uid: str) -> Optional[ec.EllipticCurvePrivateKey]:
    stored = device.get(private_key_key(uid)) if uid else None
    if not stored:
        return None
    try:
        return load_private_key(stored)
    except (ValueError, TypeError, binascii.Error):
        logger.warning("stored private key for %s could not be imported", uid)
        return None


def has_local_key(device, uid: str) -> bool:
    return get_local_private_key(device, uid) is not None


# ---------------- bodies ----------------

def encrypt_text(device, uid: str, plaintext: str, their_public_b64: str) -> EncryptedPayload:
    private = get_local_private_key(device, uid)
    if private is None:
        raise MissingKeyMaterial("No E2EE keys found on this device. Enable E2EE first.")
    key = derive_shared_key(private, their_public_b64)
    iv = os.urandom(NONCE_BYTES)
    ciphertext = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return EncryptedPayload(ciphertext=_b64e(ciphertext), iv=_b64e(iv))


def decrypt_text(device, uid: str, ciphertext_b64: str, iv_b64: str, their_public_b64: str) -> str:
    """
    Raises MissingKeyMaterial without a local key, DecryptionFailed when the
    tag does not verify (tampering, corruption, or keys reset since sending).
    """
    private = get_local_private_key(device, uid)
    if private is None:
        raise MissingKeyMaterial("No E2EE private key available")
    try:
        key = derive_shared_key(private, their_public_b64)
        plaintext = AESGCM(key).decrypt(_b64d(iv_b64), _b64d(ciphertext_b64), None)
        return plaintext.decode("utf-8")
    except (InvalidTag, ValueError, TypeError, binascii.Error, E2EEError) as e:
        raise DecryptionFailed("message could not be decrypted") from e
