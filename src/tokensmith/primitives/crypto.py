"""Cryptographic capabilities consumed by the token pipeline.

The pipeline only talks to the ``CryptoProvider`` protocol. ``DefaultCrypto``
is the implementation used when the application does not supply its own:
base64url handling, SHA256 hashing and PKCE (RFC 7636) parameter generation
from the standard library, unverified JWT claim extraction through PyJWT.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import secrets
import string
from dataclasses import dataclass, field
from typing import Any, Protocol

import jwt

from tokensmith.models.errors import InvalidTokenError


@dataclass(frozen=True)
class PKCEParameters:
    """PKCE (Proof Key for Code Exchange) parameters (RFC 7636)."""

    code_verifier: str = field()
    code_challenge: str = field()
    code_challenge_method: str = field(default="S256")

    def __post_init__(self) -> None:
        if not (43 <= len(self.code_verifier) <= 128):
            raise ValueError("code_verifier must be 43-128 characters")
        if not (43 <= len(self.code_challenge) <= 128):
            raise ValueError("code_challenge must be 43-128 characters")
        if self.code_challenge_method != "S256":
            raise ValueError("Only S256 code challenge method is supported")


class CryptoProvider(Protocol):
    """Capability interface for the crypto primitives the pipeline needs."""

    def base64_encode(self, value: str) -> str: ...

    def base64_decode(self, value: str) -> str: ...

    def extract_token_claims(self, raw_token: str) -> dict[str, Any]: ...

    def hash_string(self, value: str) -> str: ...

    def generate_pkce_codes(self) -> PKCEParameters: ...


class DefaultCrypto:
    """Default implementation of ``CryptoProvider``."""

    def base64_encode(self, value: str) -> str:
        """Encode as unpadded base64url."""
        return base64.urlsafe_b64encode(value.encode("utf-8")).decode("ascii").rstrip("=")

    def base64_decode(self, value: str) -> str:
        """Decode base64 or base64url, with or without padding.

        Raises:
            InvalidTokenError: If the input is not valid base64 or not UTF-8
        """
        normalized = value.replace("-", "+").replace("_", "/")
        normalized += "=" * (-len(normalized) % 4)
        try:
            return base64.b64decode(normalized, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            raise InvalidTokenError(f"Invalid base64 input: {e}") from e

    def extract_token_claims(self, raw_token: str) -> dict[str, Any]:
        """Extract the payload claims of a JWT without verifying its signature.

        Raises:
            InvalidTokenError: If the token is not a JWS compact serialization
                with a JSON object payload
        """
        try:
            claims = jwt.decode(
                raw_token,
                options={"verify_signature": False, "verify_aud": False, "verify_exp": False},
            )
        except jwt.PyJWTError as e:
            raise InvalidTokenError(
                f"Token could not be decoded: {e}", token_kind="id_token"
            ) from e
        if not isinstance(claims, dict):
            raise InvalidTokenError(
                "Token payload is not a JSON object", token_kind="id_token"
            )
        return claims

    def hash_string(self, value: str) -> str:
        """Base64url-encoded SHA256 digest of ``value``."""
        digest = hashlib.sha256(value.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")

    def generate_pkce_codes(self) -> PKCEParameters:
        code_verifier = self._generate_code_verifier()
        return PKCEParameters(
            code_verifier=code_verifier,
            code_challenge=self._generate_code_challenge(code_verifier),
            code_challenge_method="S256",
        )

    def _generate_code_verifier(self) -> str:
        """Generate a 128-character verifier from the RFC 7636 unreserved set."""
        alphabet = string.ascii_letters + string.digits + "-._~"
        return "".join(secrets.choice(alphabet) for _ in range(128))

    def _generate_code_challenge(self, code_verifier: str) -> str:
        """BASE64URL-ENCODE(SHA256(ASCII(code_verifier)))"""
        digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
