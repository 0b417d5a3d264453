"""
Redemption error taxonomy.

Callers only ever see a generic rejection; the class of the error is
kept for server-side logs.
"""

from __future__ import annotations


class VerificationError(Exception):
    """Base class for anything that rejects a redemption."""

    kind = "verification_error"


class MalformedRequest(VerificationError):
    """The request or bundle failed to parse or validate."""

    kind = "malformed_request"


class AuthenticationFailure(VerificationError):
    """The request parsed but does not prove a valid completion."""

    kind = "authentication_failure"


class InternalError(VerificationError):
    """A collaborator (store, captcha API, directory API) failed."""

    kind = "internal_error"


class BundleDecodeError(MalformedRequest):
    pass


class ProofDecryptionError(AuthenticationFailure):
    """Ciphertext did not authenticate under the stored key."""


class ProofSchemaError(AuthenticationFailure):
    """Ciphertext authenticated but the plaintext is not a valid proof."""
