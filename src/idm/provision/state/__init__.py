"""Desired-state document model."""

from .models import (
    ClaimMap,
    DesiredState,
    EntityKind,
    Group,
    OAuth2System,
    Person,
    Systems,
)

__all__ = [
    "ClaimMap",
    "DesiredState",
    "EntityKind",
    "Group",
    "OAuth2System",
    "Person",
    "Systems",
]
