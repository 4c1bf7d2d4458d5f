"""Unpadded base64 and canonical JSON helpers"""

import base64
import json
from typing import Any

from cryptography.hazmat.primitives import serialization


def encode_base64(data: bytes) -> str:
    """Unpadded base64, as used for Matrix keys and signatures"""
    return base64.b64encode(data).decode().rstrip("=")


def decode_base64(data: str) -> bytes:
    return base64.b64decode(data + "=" * (-len(data) % 4))


def canonical_json(obj: dict[str, Any]) -> str:
    """Canonical JSON of an object without its signatures and unsigned data"""
    stripped = {k: v for k, v in obj.items() if k not in ("signatures", "unsigned")}
    return json.dumps(
        stripped, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def raw_private_bytes(key) -> bytes:
    """Raw 32-byte form of an Ed25519 private key"""
    return key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )


def raw_public_bytes(key) -> bytes:
    """Raw public key bytes of an Ed25519 private key"""
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
