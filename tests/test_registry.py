"""
tests/test_registry.py -- Unit tests for ProviderRegistry.

Covers:
  - registration order is preserved; resolve() and names()
  - duplicate names rejected by default, permitted with allow_duplicates
  - freeze() makes the registry read-only
  - is_allowed() checks the user id's provider prefix
"""

from __future__ import annotations

import pytest
from conftest import make_tokens
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from auth.errors import DuplicateProvider, ProviderNotFound
from auth.providers import Provider, ProviderParams
from auth.registry import ProviderRegistry


class _StubProvider(Provider):
    def __init__(self, name: str, tag: str = "") -> None:
        self.name = name
        self.tag = tag
        self.params = ProviderParams(tokens=make_tokens())

    async def login(self, request: Request) -> Response:
        return JSONResponse({"provider": self.name})

    async def logout(self, request: Request) -> Response:
        return JSONResponse({"message": "Logged out."})


def test_names_in_registration_order() -> None:
    registry = ProviderRegistry()
    for name in ("github", "dev", "email"):
        registry.register(_StubProvider(name))
    assert registry.names() == ["github", "dev", "email"]
    assert len(registry) == 3
    assert [p.name for p in registry] == ["github", "dev", "email"]


def test_resolve_unknown_raises_provider_not_found() -> None:
    registry = ProviderRegistry()
    registry.register(_StubProvider("github"))
    with pytest.raises(ProviderNotFound) as info:
        registry.resolve("gitlab")
    assert info.value.provider == "gitlab"
    assert info.value.status_code == 400


def test_duplicate_rejected_by_default() -> None:
    registry = ProviderRegistry()
    registry.register(_StubProvider("github"))
    with pytest.raises(DuplicateProvider):
        registry.register(_StubProvider("github"))
    assert registry.names() == ["github"]


def test_duplicate_allowed_resolves_first_registration() -> None:
    registry = ProviderRegistry(allow_duplicates=True)
    registry.register(_StubProvider("github", tag="first"))
    registry.register(_StubProvider("github", tag="second"))
    assert registry.names() == ["github", "github"]
    assert registry.resolve("github").tag == "first"


def test_frozen_registry_rejects_registration() -> None:
    registry = ProviderRegistry()
    registry.register(_StubProvider("github"))
    registry.freeze()
    assert registry.frozen
    with pytest.raises(RuntimeError):
        registry.register(_StubProvider("dev"))
    assert registry.resolve("github").name == "github"


class TestIsAllowed:
    def test_registered_prefix_allowed(self) -> None:
        registry = ProviderRegistry()
        registry.register(_StubProvider("github"))
        assert registry.is_allowed("github_" + "a" * 40)

    def test_removed_provider_prefix_rejected(self) -> None:
        registry = ProviderRegistry()
        registry.register(_StubProvider("github"))
        assert not registry.is_allowed("google_" + "a" * 40)

    def test_prefix_is_before_first_underscore(self) -> None:
        registry = ProviderRegistry()
        registry.register(_StubProvider("my"))
        assert registry.is_allowed("my_custom_" + "a" * 40)
        assert not registry.is_allowed("mycustom_" + "a" * 40)
