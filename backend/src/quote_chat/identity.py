from __future__ import annotations

from dataclasses import dataclass

from .errors import IdentityError
from .models import ParticipantRole

KNOWN_ROLES: frozenset[str] = frozenset({"client", "shipper"})


@dataclass(frozen=True)
class ParticipantIdentity:
    role: str
    user_id: str | None

    @property
    def is_structured(self) -> bool:
        return self.user_id is not None

    @property
    def has_known_role(self) -> bool:
        return self.role in KNOWN_ROLES

    def __str__(self) -> str:
        if self.user_id is None:
            return self.role
        return f"{self.role}:{self.user_id}"


def encode_identity(role: ParticipantRole | str, user_id: str) -> str:
    if role not in KNOWN_ROLES:
        raise IdentityError(f"unrecognized participant role: {role!r}")
    if not user_id:
        raise IdentityError("user id is required to build an identity")
    return f"{role}:{user_id}"


def decode_identity(identity: str) -> ParticipantIdentity:
    # Bot and system authors come through without a colon; keep them as a
    # bare role so callers can still record who spoke.
    role, sep, user_id = identity.partition(":")
    if not sep:
        return ParticipantIdentity(role=identity, user_id=None)
    return ParticipantIdentity(role=role, user_id=user_id)


def parse_identity(identity: str) -> ParticipantIdentity:
    parsed = decode_identity(identity)
    if not parsed.is_structured:
        raise IdentityError(f"identity has no user id: {identity!r}")
    if not parsed.has_known_role:
        raise IdentityError(f"unrecognized participant role: {parsed.role!r}")
    if not parsed.user_id:
        raise IdentityError(f"identity has an empty user id: {identity!r}")
    return parsed
