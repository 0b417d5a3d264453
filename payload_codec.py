"""
Payload Codec
=============
Two encodings travel between the service and the verification page:

  * the **bundle** (``m`` query parameter): base64 of the JSON
    ``{"metadata": {...}, "userId": "..."}``.  Not secret.
  * the **proof** (variant 1 only): AES-GCM ciphertext of the JSON
    ``{"token", "ekey", "code", "confident"}``, base64 encoded.

Key/IV reuse
------------
The deployed page imports the 32 raw ``tokenKey`` bytes as an AES-256
key *and* passes the same 32 bytes as the GCM IV.  GCM accepts IVs of
any length (non-96-bit IVs go through GHASH), so the full 32 bytes are
used here as the nonce, unsliced, which keeps ciphertexts byte-identical
with WebCrypto.  A nonce derived from the key is a known weakness; it is
tolerable only because each key encrypts exactly one message before
the challenge is consumed or expires.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import ValidationError

from errors import BundleDecodeError, ProofDecryptionError, ProofSchemaError
from models import TOKEN_KEY_BYTES, ProofPayload, VerificationBundle, VerificationMetadata


# ──────────────────────────────────────────────
# Bundle (m=...)
# ──────────────────────────────────────────────

def encode_bundle(metadata: VerificationMetadata, user_id: str) -> str:
    """Serialise ``{metadata, userId}`` to JSON and base64 it."""
    bundle = VerificationBundle(metadata=metadata, user_id=user_id)
    raw = json.dumps(bundle.model_dump(by_alias=True), separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_bundle(encoded: str) -> VerificationBundle:
    """
    Reverse of :func:`encode_bundle`.

    Raises
    ------
    BundleDecodeError
        On bad base64, bad JSON, or any schema violation.  No partial
        result is ever returned.
    """
    try:
        raw = base64.b64decode(encoded, validate=True)
        data = json.loads(raw.decode("utf-8"))
        return VerificationBundle.model_validate(data)
    except (binascii.Error, ValueError, ValidationError) as exc:
        # json.JSONDecodeError and UnicodeDecodeError are ValueErrors.
        raise BundleDecodeError("malformed bundle") from exc


# ──────────────────────────────────────────────
# Proof (variant 1)
# ──────────────────────────────────────────────

def _key_material(token_key: str) -> bytes:
    try:
        key = base64.b64decode(token_key, validate=True)
    except binascii.Error as exc:
        raise ProofDecryptionError("token key is not base64") from exc
    if len(key) != TOKEN_KEY_BYTES:
        raise ProofDecryptionError("token key must be 32 bytes")
    return key


def encrypt_proof(proof: ProofPayload | dict[str, Any], token_key: str) -> str:
    """
    Encrypt a proof payload the same way the verification page does.

    Returns base64 of ``ciphertext || tag``.
    """
    if isinstance(proof, ProofPayload):
        proof = proof.model_dump()
    key = _key_material(token_key)
    plaintext = json.dumps(proof, separators=(",", ":")).encode("utf-8")
    # Same bytes for key and nonce; see module docstring.
    ciphertext = AESGCM(key).encrypt(key, plaintext, None)
    return base64.b64encode(ciphertext).decode("ascii")


def decrypt_proof(encrypted: str, token_key: str) -> ProofPayload:
    """
    Decrypt and validate a proof payload.

    *token_key* must come from the stored Challenge, never from the
    request.

    Raises
    ------
    ProofDecryptionError
        The ciphertext is not base64 or does not authenticate.
    ProofSchemaError
        The plaintext is not a JSON object matching :class:`ProofPayload`.
    """
    key = _key_material(token_key)
    try:
        ciphertext = base64.b64decode(encrypted, validate=True)
    except binascii.Error as exc:
        raise ProofDecryptionError("proof is not base64") from exc

    try:
        plaintext = AESGCM(key).decrypt(key, ciphertext, None)
    except (InvalidTag, ValueError) as exc:
        raise ProofDecryptionError("proof did not authenticate") from exc

    try:
        return ProofPayload.model_validate(json.loads(plaintext.decode("utf-8")))
    except (ValueError, ValidationError) as exc:
        raise ProofSchemaError("proof plaintext is invalid") from exc
