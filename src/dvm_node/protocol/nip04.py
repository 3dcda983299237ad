"""Encrypted job payloads: secp256k1 ECDH shared secret + AES-256-CBC.

Ciphertext format is ``base64(ciphertext) + "?iv=" + base64(iv)``; public keys are
32-byte x-only hex strings.
"""

from __future__ import annotations

import base64
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes


class EncryptionError(RuntimeError):
    pass


def _private_key(secret_key_hex: str) -> ec.EllipticCurvePrivateKey:
    try:
        secret = int(secret_key_hex, 16)
    except ValueError as exc:
        raise EncryptionError("secret key must be hex") from exc
    if len(secret_key_hex) != 64 or secret <= 0:
        raise EncryptionError("secret key must be 32 bytes of hex")
    return ec.derive_private_key(secret, ec.SECP256K1())


def _public_key(public_key_hex: str) -> ec.EllipticCurvePublicKey:
    try:
        raw = bytes.fromhex(public_key_hex)
    except ValueError as exc:
        raise EncryptionError("public key must be hex") from exc
    if len(raw) != 32:
        raise EncryptionError("public key must be 32 bytes (x-only)")
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), b"\x02" + raw)
    except ValueError as exc:
        raise EncryptionError("public key is not a valid curve point") from exc


def derive_public_key(secret_key_hex: str) -> str:
    key = _private_key(secret_key_hex)
    return format(key.public_key().public_numbers().x, "064x")


def shared_secret(secret_key_hex: str, public_key_hex: str) -> bytes:
    return _private_key(secret_key_hex).exchange(ec.ECDH(), _public_key(public_key_hex))


def encrypt(secret_key_hex: str, public_key_hex: str, plaintext: str) -> str:
    key = shared_secret(secret_key_hex, public_key_hex)
    iv = os.urandom(16)
    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return f"{base64.b64encode(ciphertext).decode('ascii')}?iv={base64.b64encode(iv).decode('ascii')}"


def decrypt(secret_key_hex: str, public_key_hex: str, payload: str) -> str:
    body, separator, iv_part = payload.partition("?iv=")
    if not separator:
        raise EncryptionError("encrypted payload is missing the iv")
    try:
        ciphertext = base64.b64decode(body, validate=True)
        iv = base64.b64decode(iv_part, validate=True)
    except ValueError as exc:
        raise EncryptionError("encrypted payload is not valid base64") from exc
    if len(iv) != 16:
        raise EncryptionError("iv must be 16 bytes")

    key = shared_secret(secret_key_hex, public_key_hex)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    try:
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
        return plaintext.decode("utf-8")
    except ValueError as exc:
        raise EncryptionError("failed to decrypt payload") from exc
