"""
vaasubmit Hashing

All digests use SHA-256. Attestation bodies are hashed twice: the guardian
signatures cover the hash of the hash of the canonical body encoding.
"""

import hashlib
from typing import Union


def sha256_bytes(data: Union[bytes, str]) -> bytes:
    """Compute SHA-256 and return the raw 32-byte digest."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).digest()


def sha256_hash(data: Union[bytes, str]) -> str:
    """
    Compute SHA-256 with a printable prefix.

    Returns:
        Hash string in format "sha256:abcdef..."
    """
    if isinstance(data, str):
        data = data.encode('utf-8')

    digest = hashlib.sha256(data).hexdigest().lower()
    return f"sha256:{digest}"


def attestation_digest(body: bytes) -> bytes:
    """
    Compute the digest guardians sign for an attestation body.

    digest = SHA-256(SHA-256(body))
    """
    return sha256_bytes(sha256_bytes(body))


def instruction_discriminator(name: str, namespace: str = "global") -> bytes:
    """First 8 bytes of SHA-256("<namespace>:<name>")."""
    return sha256_bytes(f"{namespace}:{name}")[:8]

