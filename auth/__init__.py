"""auth/ -- Token, provider, and authorizer core of authgate.

Entry point is auth.service: AuthOptions + AuthService (or build_service()
from core.config Settings). Everything else is usable on its own:
tokens (JWT codec and cookie transport), registry, oauth/apple/direct/dev
providers, refresh (single-flight cache), avatar (proxy + store),
dependencies (FastAPI Authenticator).

Layer rule: auth/ imports stdlib, third-party libraries, and core.config
(for Settings, in service.py only). It does NOT import from api/.
"""
