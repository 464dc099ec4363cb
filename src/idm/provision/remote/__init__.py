"""Remote identity provider access: admin API client and state reader."""

from .client import IdmAdminClient
from .reader import (
    CurrentState,
    RemoteClaimMap,
    RemoteGroup,
    RemoteOAuth2,
    RemotePerson,
    fetch_current_state,
)

__all__ = [
    "IdmAdminClient",
    "CurrentState",
    "RemoteClaimMap",
    "RemoteGroup",
    "RemoteOAuth2",
    "RemotePerson",
    "fetch_current_state",
]
