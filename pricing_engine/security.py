from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any

from pricing_engine.errors import MalformedEnvelopeError

REQUIRED_CONTEXT_FIELDS = ("accessToken", "apiVersion", "orgId", "domainUrl", "userId")


def redact_sensitive(value: object) -> object:
    sensitive_keys = {
        "authorization",
        "token",
        "secret",
        "password",
        "api_key",
        "apikey",
        "access_token",
        "accesstoken",
        "x-client-context",
    }
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            key_lower = str(key).lower()
            if key_lower in sensitive_keys:
                redacted[str(key)] = "***REDACTED***"
            else:
                redacted[str(key)] = redact_sensitive(item)
        return redacted
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    if isinstance(value, str):
        if len(value) >= 24 and value.lower().startswith("bearer "):
            return "***REDACTED***"
    return value


def _as_text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list, bool)):
        return ""
    return str(value).strip()


@dataclass(frozen=True)
class SecurityContext:
    """Caller credentials needed to talk to the record store on their behalf."""

    access_token: str
    api_version: str
    org_id: str
    domain_url: str
    user_id: str
    namespace: str = ""
    username: str = ""
    request_id: str = ""

    @classmethod
    def from_payload(cls, payload: object) -> SecurityContext:
        """Build from the envelope's ``securityContext`` object.

        Fails closed: any missing or blank required field raises
        ``MalformedEnvelopeError`` instead of returning a partial context.
        """
        if not isinstance(payload, Mapping):
            raise MalformedEnvelopeError("securityContext is missing", code="SECURITY_CONTEXT_MISSING")
        missing = [name for name in REQUIRED_CONTEXT_FIELDS if not _as_text(payload.get(name))]
        if missing:
            raise MalformedEnvelopeError(
                f"securityContext missing required fields: {', '.join(missing)}",
                code="SECURITY_CONTEXT_INCOMPLETE",
            )
        domain_url = _as_text(payload.get("domainUrl")).rstrip("/")
        if not domain_url.startswith(("https://", "http://")):
            raise MalformedEnvelopeError(
                "securityContext.domainUrl must be an absolute URL",
                code="SECURITY_CONTEXT_INCOMPLETE",
            )
        return cls(
            access_token=_as_text(payload.get("accessToken")),
            api_version=_as_text(payload.get("apiVersion")).lstrip("v"),
            org_id=_as_text(payload.get("orgId")),
            domain_url=domain_url,
            user_id=_as_text(payload.get("userId")),
            namespace=_as_text(payload.get("namespace")),
            username=_as_text(payload.get("username")),
            request_id=_as_text(payload.get("requestId")),
        )

    @classmethod
    def from_client_context_header(cls, raw: str) -> SecurityContext:
        """Decode the base64 JSON ``x-client-context`` header sent by the platform."""
        try:
            padded = raw.strip() + "=" * ((4 - len(raw.strip()) % 4) % 4)
            decoded = json.loads(base64.b64decode(padded.encode("ascii")).decode("utf-8"))
        except (binascii.Error, UnicodeError, ValueError) as exc:
            raise MalformedEnvelopeError(
                "x-client-context header is not base64 encoded JSON",
                code="SECURITY_CONTEXT_MISSING",
            ) from exc
        if not isinstance(decoded, dict):
            raise MalformedEnvelopeError("x-client-context must be a JSON object", code="SECURITY_CONTEXT_MISSING")
        user = decoded.get("userContext") if isinstance(decoded.get("userContext"), dict) else {}
        return cls.from_payload(
            {
                "accessToken": decoded.get("accessToken"),
                "apiVersion": decoded.get("apiVersion"),
                "orgId": decoded.get("orgId"),
                "domainUrl": decoded.get("orgDomainUrl"),
                "namespace": decoded.get("namespace"),
                "userId": user.get("userId"),
                "username": user.get("username"),
                "requestId": decoded.get("requestId"),
            }
        )

    def to_payload(self) -> dict[str, str]:
        return {
            "accessToken": self.access_token,
            "apiVersion": self.api_version,
            "orgId": self.org_id,
            "domainUrl": self.domain_url,
            "userId": self.user_id,
            "namespace": self.namespace,
            "username": self.username,
            "requestId": self.request_id,
        }

    def describe(self) -> dict[str, str]:
        data = asdict(self)
        data.pop("access_token")
        return data
