from __future__ import annotations

import base64
import secrets
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictStr

PAYLOAD_VERSION_TYPE_ENCRYPTED = 1
PAYLOAD_VERSION_TYPE_NO_PROOF = 2

TOKEN_KEY_BYTES = 32
CODE_BYTES = 32


class VerificationMetadata(BaseModel):
    """Versioning tags plus the per-challenge key, echoed back verbatim by the client."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    payload_version_type: Annotated[int, Field(ge=1, le=2, strict=True)] = Field(
        alias="payloadVersionType"
    )
    payload_version: Annotated[int, Field(ge=0, le=9, strict=True)] = Field(alias="payloadVersion")
    payload_version_seed: Annotated[int, Field(ge=0, le=999_999, strict=True)] = Field(
        alias="payloadVersionSeed"
    )
    token_key: Annotated[str, Field(min_length=1, strict=True)] = Field(alias="tokenKey")

    @classmethod
    def generate(cls) -> "VerificationMetadata":
        return cls(
            payload_version_type=PAYLOAD_VERSION_TYPE_ENCRYPTED,
            payload_version=secrets.randbelow(10),
            payload_version_seed=secrets.randbelow(1_000_000),
            token_key=base64.b64encode(secrets.token_bytes(TOKEN_KEY_BYTES)).decode("ascii"),
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class VerificationBundle(BaseModel):
    """What travels in the ``m`` query parameter: metadata plus the subject."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    metadata: VerificationMetadata
    user_id: Annotated[str, Field(min_length=1, strict=True)] = Field(alias="userId")


class ProofPayload(BaseModel):
    """Plaintext of the encrypted attestation produced by the verification page."""

    model_config = ConfigDict(frozen=True)

    token: StrictStr
    ekey: StrictStr
    code: StrictStr
    confident: Annotated[float, Field(ge=0.0, le=1.0, strict=True)]


class Challenge(BaseModel):
    """
    Server-held record for one user's outstanding verification.

    Stored as JSON under the user's key with a TTL; never mutated once
    written.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    code: Annotated[str, Field(min_length=1, strict=True)]
    user_id: Annotated[str, Field(min_length=1, strict=True)] = Field(alias="userId")
    metadata: VerificationMetadata

    @classmethod
    def issue(cls, user_id: str) -> "Challenge":
        return cls(
            code=secrets.token_urlsafe(CODE_BYTES),
            user_id=user_id,
            metadata=VerificationMetadata.generate(),
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Challenge":
        return cls.model_validate_json(raw)


class RedemptionRequest(BaseModel):
    """
    Body of ``POST /api/verify``.

    The deployed verification page posts positional keys ``_0`` to ``_3``;
    the descriptive names are accepted too.
    """

    model_config = ConfigDict(frozen=True)

    payload: StrictStr = Field(validation_alias=AliasChoices("_0", "payload"))
    metadata: VerificationMetadata = Field(validation_alias=AliasChoices("_1", "metadata"))
    user_id: Annotated[str, Field(min_length=1, strict=True)] = Field(
        validation_alias=AliasChoices("_2", "user_id", "userId")
    )
    site_key: StrictStr = Field(validation_alias=AliasChoices("_3", "site_key", "siteKey"))
