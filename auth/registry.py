"""
auth/registry.py -- Provider registry.

Holds every configured identity provider, in registration order. The registry
is built once at startup, then frozen: after freeze() it is a read-only tuple
that concurrent requests read without locking.

Duplicate names are rejected by default. allow_duplicates=True keeps the
permissive behaviour some deployments rely on: the duplicate is appended,
resolve() returns the earliest registration, and every entry counts for the
provider-prefix check.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import TYPE_CHECKING

from auth.errors import DuplicateProvider, ProviderNotFound

if TYPE_CHECKING:
    from auth.providers import Provider

logger = logging.getLogger("authgate.auth.registry")


class ProviderRegistry:
    """Ordered, name-keyed collection of providers.

    Usage:
        registry = ProviderRegistry()
        registry.register(make_preset("github", params, cid, csecret))
        registry.freeze()
        provider = registry.resolve("github")
    """

    def __init__(self, allow_duplicates: bool = False) -> None:
        self.allow_duplicates = allow_duplicates
        self._providers: tuple[Provider, ...] = ()
        self._frozen = False

    def register(self, provider: Provider) -> None:
        if self._frozen:
            raise RuntimeError(f"registry is frozen, can't register {provider.name!r}")
        if provider.name in self.names():
            if not self.allow_duplicates:
                raise DuplicateProvider(f"provider {provider.name} already registered", provider=provider.name)
            logger.warning("provider %s registered twice, first registration handles requests", provider.name)
        self._providers = (*self._providers, provider)
        logger.info("provider %s registered", provider.name)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def resolve(self, name: str) -> Provider:
        for provider in self._providers:
            if provider.name == name:
                return provider
        raise ProviderNotFound(f"provider {name} not found", provider=name)

    def names(self) -> list[str]:
        return [p.name for p in self._providers]

    def is_allowed(self, user_id: str) -> bool:
        """Return True if the provider prefix of user_id ("github_abc..." -> "github") is registered.

        Tokens issued by a provider that has since been removed still verify,
        so this check is what actually revokes them.
        """
        prefix = user_id.split("_", 1)[0]
        return any(p.name == prefix for p in self._providers)

    def __iter__(self) -> Iterator[Provider]:
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)
