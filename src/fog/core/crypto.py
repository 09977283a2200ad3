"""Secret encryption at rest: AES-256-GCM keyed by a local master key."""

import os
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from fog.errors import StoreError

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


class DecryptError(StoreError):
    """Raised when a stored secret fails authentication."""

    def __init__(self, key: str = ""):
        self.key = key
        super().__init__("credential unreadable — re-run setup")


def load_or_create_master_key(path: Path) -> bytes:
    """Read the master key, creating it with mode 0600 on first use."""
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        key = path.read_bytes()
        if len(key) != KEY_SIZE:
            raise StoreError(f"master key at {path} is {len(key)} bytes, expected {KEY_SIZE}")
        return key

    key = AESGCM.generate_key(bit_length=KEY_SIZE * 8)
    with os.fdopen(fd, "wb") as f:
        f.write(key)
    return key


def encrypt(master_key: bytes, name: str, plaintext: str) -> bytes:
    """Encrypt a secret bound to its key name. Layout: nonce || tag || ciphertext."""
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(master_key).encrypt(nonce, plaintext.encode("utf-8"), name.encode("utf-8"))
    return nonce + sealed[-TAG_SIZE:] + sealed[:-TAG_SIZE]


def decrypt(master_key: bytes, name: str, blob: bytes) -> str:
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise DecryptError(name)
    nonce = blob[:NONCE_SIZE]
    tag = blob[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
    sealed = blob[NONCE_SIZE + TAG_SIZE:] + tag
    try:
        plaintext = AESGCM(master_key).decrypt(nonce, sealed, name.encode("utf-8"))
    except InvalidTag as e:
        raise DecryptError(name) from e
    return plaintext.decode("utf-8")
