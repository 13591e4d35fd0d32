"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, minimal logic). Dataclasses own the
domain shape; the token service and providers do the work. The only logic
here is the payload mapping, which keeps the JWT wire format in one place.

Wire format (JWT payload):
  standard: iss, aud, iat, exp, nbf, jti
  user:        {id, name, picture, email, ip, attributes, role}
  handshake:   {state, from, id}
  sess, noava, ptk

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from auth.errors import Malformed


@dataclass
class User:
    """Identity embedded in a session token.

    id has the form "<provider>_<sha1 hex>". The prefix before the first "_"
    must name a registered provider for the token to be accepted, which lets
    an operator revoke a provider without rotating the signing secret.
    """

    id: str
    name: str = ""
    picture: str = ""
    email: str = ""
    ip: str = ""
    role: str = ""
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def provider(self) -> str:
        return self.id.split("_", 1)[0]

    @property
    def is_admin(self) -> bool:
        return bool(self.attributes.get("admin", False))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "name": self.name}
        for key in ("picture", "email", "ip", "role"):
            value = getattr(self, key)
            if value:
                data[key] = value
        if self.attributes:
            data["attributes"] = dict(self.attributes)
        return data

    @classmethod
    def from_dict(cls, data: Any) -> User:
        if not isinstance(data, dict) or not isinstance(data.get("id"), str):
            raise Malformed("user claim must be an object with a string id")
        attributes = data.get("attributes") or {}
        if not isinstance(attributes, dict):
            raise Malformed("user attributes must be an object")
        return cls(
            id=data["id"],
            name=str(data.get("name") or ""),
            picture=str(data.get("picture") or ""),
            email=str(data.get("email") or ""),
            ip=str(data.get("ip") or ""),
            role=str(data.get("role") or ""),
            attributes=dict(attributes),
        )


@dataclass
class Handshake:
    """Marker for in-flight handshake tokens (OAuth state or confirmation link).

    A token that carries a Handshake is never a session credential.
    """

    state: str = ""
    from_url: str = ""
    id: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"state": self.state, "from": self.from_url, "id": self.id}

    @classmethod
    def from_dict(cls, data: Any) -> Handshake:
        if not isinstance(data, dict):
            raise Malformed("handshake claim must be an object")
        return cls(
            state=str(data.get("state") or ""),
            from_url=str(data.get("from") or ""),
            id=str(data.get("id") or ""),
        )


@dataclass
class Claims:
    """Decoded payload of a signed token.

    Timestamps are integer unix seconds; 0 means "unset". TokenService.issue()
    fills in iat/exp/iss/jti when they are unset.

    provider_token is only populated for providers that support remote
    revocation, so logout can revoke the upstream session.
    """

    user: User | None = None
    handshake: Handshake | None = None
    issuer: str = ""
    audience: str = ""
    id: str = ""
    issued_at: int = 0
    expires_at: int = 0
    not_before: int = 0
    session_only: bool = False
    no_ava: bool = False
    provider_token: str = ""

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        standard = {
            "iss": self.issuer,
            "aud": self.audience,
            "jti": self.id,
            "iat": self.issued_at,
            "exp": self.expires_at,
            "nbf": self.not_before,
        }
        payload.update({k: v for k, v in standard.items() if v})
        if self.user is not None:
            payload["user"] = self.user.to_dict()
        if self.handshake is not None:
            payload["handshake"] = self.handshake.to_dict()
        if self.session_only:
            payload["sess"] = True
        if self.no_ava:
            payload["noava"] = True
        if self.provider_token:
            payload["ptk"] = self.provider_token
        return payload

    @classmethod
    def from_payload(cls, payload: Any) -> Claims:
        if not isinstance(payload, dict):
            raise Malformed("token payload must be an object")
        try:
            audience = payload.get("aud") or ""
            if isinstance(audience, list):
                audience = audience[0] if audience else ""
            return cls(
                user=User.from_dict(payload["user"]) if payload.get("user") is not None else None,
                handshake=Handshake.from_dict(payload["handshake"]) if payload.get("handshake") is not None else None,
                issuer=str(payload.get("iss") or ""),
                audience=str(audience),
                id=str(payload.get("jti") or ""),
                issued_at=int(payload.get("iat") or 0),
                expires_at=int(payload.get("exp") or 0),
                not_before=int(payload.get("nbf") or 0),
                session_only=bool(payload.get("sess", False)),
                no_ava=bool(payload.get("noava", False)),
                provider_token=str(payload.get("ptk") or ""),
            )
        except (TypeError, ValueError) as exc:
            raise Malformed(f"invalid claim value: {exc}") from exc
