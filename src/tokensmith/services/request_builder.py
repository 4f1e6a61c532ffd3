"""Token endpoint request construction.

Turns a typed grant request plus the client configuration into the
``application/x-www-form-urlencoded`` body, URL and headers of the token
request. Pure: no I/O, no clock.

Values are percent-encoded with ``%20`` for spaces and every reserved
character (``+``, ``&``, ``=``, ``/`` ...) escaped, so a secret can never
smuggle in an extra parameter.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from urllib.parse import quote, urlencode

from tokensmith.config import ClientConfig
from tokensmith.models.errors import ClientConfigurationError
from tokensmith.models.requests import (
    BaseTokenRequest,
    ClientCredentialsGrantRequest,
    GrantRequest,
)
from tokensmith.primitives.crypto import CryptoProvider, DefaultCrypto
from tokensmith.primitives.scopes import ScopeSet

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded;charset=utf-8"

RESERVED_PARAMETERS = frozenset(
    {
        "client_id",
        "client_secret",
        "client_assertion",
        "client_assertion_type",
        "grant_type",
        "scope",
        "username",
        "password",
        "refresh_token",
        "code",
        "redirect_uri",
        "code_verifier",
        "claims",
        "client_info",
        "response_type",
        "token_type",
        "req_cnf",
        "client-request-id",
        "x-client-sku",
        "x-client-ver",
        "x-client-os",
        "x-client-cpu",
        "x-app-name",
        "x-app-ver",
        "x-ms-lib-capability",
    }
)


def encode_form(params: Mapping[str, str]) -> str:
    """Percent-encode ``params`` as a form body (space -> %20, never +)."""
    return urlencode(params, quote_via=quote, safe="")


def merge_claims(claims: str | None, capabilities: tuple[str, ...] = ()) -> str | None:
    """Combine a claims request with client capabilities.

    Returns None when the result is an empty object, so ``"{}"`` never
    reaches the wire.

    Raises:
        ClientConfigurationError: If ``claims`` is not a JSON object, or its
            ``access_token`` member is not one when capabilities are merged
    """
    if claims:
        try:
            parsed = json.loads(claims)
        except ValueError as e:
            raise ClientConfigurationError(
                f"claims is not valid JSON: {e}", field="claims"
            ) from e
        if not isinstance(parsed, dict):
            raise ClientConfigurationError("claims must be a JSON object", field="claims")
    else:
        parsed = {}

    if capabilities:
        if not isinstance(parsed.setdefault("access_token", {}), dict):
            raise ClientConfigurationError(
                "claims access_token member must be a JSON object", field="claims"
            )
        parsed["access_token"].update(xms_cc={"values": list(capabilities)})
        return json.dumps(parsed, separators=(",", ":"))

    return claims if parsed else None


class TokenRequestBuilder:
    """Builds token endpoint requests for every supported grant."""

    def __init__(self, config: ClientConfig, crypto: CryptoProvider | None = None):
        self.config = config
        self.crypto = crypto or DefaultCrypto()

    def request_scopes(self, request: BaseTokenRequest) -> ScopeSet:
        """Scopes to send: the caller's, plus the OIDC defaults for user grants."""
        scopes = ScopeSet(request.scopes)
        if isinstance(request, GrantRequest) and not request.adds_oidc_scopes:
            return scopes
        return scopes.with_oidc_defaults()

    def build_parameters(self, request: GrantRequest) -> dict[str, str]:
        """Validate ``request`` and assemble its ordered body parameters.

        Raises:
            ClientConfigurationError: If grant-specific fields are missing
        """
        request.validate(self.config)

        params: dict[str, str] = {
            "client_id": self.config.client_id,
            "grant_type": request.grant_type.value,
            "scope": self.request_scopes(request).to_string(),
        }
        params.update(request.grant_parameters())

        if self.config.client_secret:
            params["client_secret"] = self.config.client_secret
        if not isinstance(request, ClientCredentialsGrantRequest):
            params["client_info"] = "1"

        params["client-request-id"] = request.correlation_id
        params.update(self.config.telemetry.to_parameters())

        claims = merge_claims(request.claims, self.config.client_capabilities)
        if claims:
            params["claims"] = claims

        if request.is_pop:
            params["token_type"] = "pop"
            params["req_cnf"] = self.crypto.base64_encode(
                json.dumps({"kid": request.key_id}, separators=(",", ":"))
            )

        params.update(self._extra_parameters(request.extra_body_parameters, params))

        logger.debug(
            f"Built {request.grant_type.value} request: client_id={params['client_id']}, "
            f"scope={params['scope']}, correlation_id={request.correlation_id}, "
            f"claims={'yes' if claims else 'no'}"
        )
        return params

    def build_body(self, request: GrantRequest) -> str:
        return encode_form(self.build_parameters(request))

    def build_url(self, token_endpoint: str, request: GrantRequest) -> str:
        """Token endpoint with the caller's query parameters appended."""
        extras = self._extra_parameters(request.token_query_parameters, {})
        if not extras:
            return token_endpoint
        separator = "&" if "?" in token_endpoint else "?"
        return f"{token_endpoint}{separator}{encode_form(extras)}"

    def build_headers(self, request: GrantRequest) -> dict[str, str]:
        return {
            "Content-Type": FORM_CONTENT_TYPE,
            "Accept": "application/json",
            "client-request-id": request.correlation_id,
            "return-client-request-id": "true",
        }

    def _extra_parameters(
        self, extras: Mapping[str, str], existing: Mapping[str, str]
    ) -> dict[str, str]:
        """Caller-supplied parameters minus empty values and reserved names."""
        accepted: dict[str, str] = {}
        for name, value in extras.items():
            if value is None or value == "":
                continue
            if name.lower() in RESERVED_PARAMETERS or name in existing:
                logger.warning(f"Ignoring caller parameter {name!r}: reserved name")
                continue
            accepted[name] = str(value)
        return accepted
