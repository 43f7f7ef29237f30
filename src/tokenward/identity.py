"""Identity resolution — who the current request acts for."""

from __future__ import annotations

from abc import ABC, abstractmethod

from tokenward.errors import PermissionFailure
from tokenward.models import Actor


class IdentityProvider(ABC):
    """Resolves the authenticated actor of the current request."""

    @abstractmethod
    def current_actor(self) -> Actor:
        """Return the actor or raise :class:`PermissionFailure` when unauthenticated."""


class StaticIdentityProvider(IdentityProvider):
    """Always answers with the same actor (or nobody). For tests and scripts."""

    def __init__(self, actor: Actor | None = None) -> None:
        self._actor = actor

    def current_actor(self) -> Actor:
        if self._actor is None:
            msg = "No authenticated actor"
            raise PermissionFailure(msg, user_message="You must be signed in to chat.")
        return self._actor
