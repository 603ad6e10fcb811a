"""Verified identity handed in by the credential-verification layer."""

from __future__ import annotations

from dataclasses import dataclass

from taskrelay.exceptions import UnauthenticatedError


@dataclass(frozen=True)
class VerifiedIdentity:
    """
    Caller identity after credential verification.

    Attributes:
        subject_id: Stable subject identifier; owns tasks and notifications.
    """

    subject_id: str


def require_identity(identity: VerifiedIdentity | None) -> VerifiedIdentity:
    """
    Return the identity, or raise if it is missing or has an empty subject.

    Missing and invalid credentials are the same outcome to the caller.

    Raises:
        UnauthenticatedError: If there is no usable identity
    """
    if identity is None or not identity.subject_id or not identity.subject_id.strip():
        raise UnauthenticatedError()
    return identity


__all__ = [
    "VerifiedIdentity",
    "require_identity",
]
