"""
auth/dev.py -- Local OAuth2 identity provider for development and tests.

A tiny authorization server that accepts any user name:

  GET  /login/oauth/authorize     -> login form, or with ?username=... a 302
                                     back to redirect_uri with code + state
  POST /login/oauth/access_token  -> {"access_token", "token_type", "expires_in"}
  GET  /user                      -> {"id", "name", "picture"} for a bearer token
  GET  /avatar?user=...           -> generated SVG picture

dev_provider() builds the matching OAuth2Provider preset ("dev"). In tests
the provider talks to the app in-process through httpx.ASGITransport;
DevAuthServer runs it on its own port for local development.

Never enable this in production: it authenticates anyone.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from typing import Any, Optional
from urllib.parse import urlencode

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from jinja2 import Template

from auth.models import User
from auth.oauth import OAuth2Provider
from auth.providers import ProviderParams
from auth.tokens import hash_id, rand_token

logger = logging.getLogger("authgate.auth.dev")

_LOGIN_FORM = Template(
    """<!DOCTYPE html>
<html>
<head><title>Dev OAuth2 login</title></head>
<body>
<h1>Dev OAuth2 login</h1>
<form action="/login/oauth/authorize" method="get">
  {% for key, value in hidden.items() %}
  <input type="hidden" name="{{ key }}" value="{{ value }}">
  {% endfor %}
  <label>User name <input type="text" name="username" autofocus></label>
  <button type="submit">Authorize</button>
</form>
</body>
</html>
""",
    autoescape=True,
)


class DevOAuthServer:
    """In-memory state and FastAPI app of the dev identity provider.

    Issued codes are single use; access tokens live for the process lifetime.
    """

    def __init__(self, url: str = "http://127.0.0.1:8084") -> None:
        self.url = url.rstrip("/")
        self._codes: dict[str, str] = {}
        self._tokens: dict[str, str] = {}
        self._lock = threading.Lock()
        self.app = self._build_app()

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="authgate dev oauth2 server", docs_url=None, redoc_url=None, openapi_url=None)

        @app.get("/login/oauth/authorize")
        async def authorize(request: Request) -> Response:
            q = request.query_params
            redirect_uri = q.get("redirect_uri", "")
            if not redirect_uri:
                return JSONResponse({"error": "invalid_request", "error_description": "no redirect_uri"}, 400)

            username = q.get("username", "").strip()
            if not username:
                hidden = {k: v for k, v in q.items() if k != "username"}
                return HTMLResponse(_LOGIN_FORM.render(hidden=hidden))

            code = rand_token()
            with self._lock:
                self._codes[code] = username
            sep = "&" if "?" in redirect_uri else "?"
            target = redirect_uri + sep + urlencode({"code": code, "state": q.get("state", "")})
            logger.debug("dev authorize for %s", username)
            return RedirectResponse(target, status_code=302)

        @app.post("/login/oauth/access_token")
        async def access_token(request: Request) -> Response:
            form = await request.form()
            code = str(form.get("code", ""))
            with self._lock:
                username = self._codes.pop(code, None)
                if username is None:
                    return JSONResponse({"error": "invalid_grant"}, status_code=400)
                token = rand_token()
                self._tokens[token] = username
            return JSONResponse({"access_token": token, "token_type": "bearer", "expires_in": 3600})

        @app.get("/user")
        async def user(request: Request) -> Response:
            header = request.headers.get("Authorization", "")
            token = header[7:] if header.lower().startswith("bearer ") else ""
            with self._lock:
                username = self._tokens.get(token)
            if username is None:
                return JSONResponse({"error": "invalid_token"}, status_code=401)
            return JSONResponse(
                {
                    "id": username,
                    "name": username,
                    "picture": f"{self.url}/avatar?{urlencode({'user': username})}",
                }
            )

        @app.get("/avatar")
        async def avatar(user: str = "") -> Response:
            return Response(_identicon(user), media_type="image/svg+xml")

        return app


def _identicon(seed: str) -> bytes:
    """5x5 mirrored block pattern coloured by the seed's hash."""
    digest = hashlib.sha256(seed.encode("utf-8")).digest()  # 3 colour bytes + 15 cells
    colour = "#%02x%02x%02x" % (digest[0], digest[1], digest[2])
    cells = []
    for row in range(5):
        for col in range(3):
            if digest[3 + row * 3 + col] % 2 == 0:
                for x in {col, 4 - col}:
                    cells.append(f'<rect x="{x * 20}" y="{row * 20}" width="20" height="20"/>')
    svg = (
        '<svg xmlns="http://www.w3.org/2000/svg" width="100" height="100" viewBox="0 0 100 100">'
        f'<rect width="100" height="100" fill="#f0f0f0"/><g fill="{colour}">{"".join(cells)}</g></svg>'
    )
    return svg.encode("utf-8")


def _map_dev(data: dict[str, Any]) -> User:
    return User(
        id="dev_" + hash_id(str(data.get("id", ""))),
        name=str(data.get("name", "")),
        picture=str(data.get("picture", "")),
    )


def dev_provider(
    params: ProviderParams,
    host: str = "127.0.0.1",
    port: int = 8084,
    client_kwargs: Optional[dict[str, Any]] = None,
) -> OAuth2Provider:
    """OAuth2Provider preset pointing at a DevOAuthServer on host:port."""
    base = f"http://{host}:{port}"
    return OAuth2Provider(
        "dev",
        params,
        "dev_client",
        "dev_secret",
        authorize_url=f"{base}/login/oauth/authorize",
        token_url=f"{base}/login/oauth/access_token",
        userinfo_url=f"{base}/user",
        map_user=_map_dev,
        client_kwargs=client_kwargs,
    )


class DevAuthServer:
    """Runs a DevOAuthServer with uvicorn on a background thread.

    uvicorn only installs signal handlers on the main thread, so this does
    not interfere with the host application's shutdown.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 8084) -> None:
        self.oauth = DevOAuthServer(f"http://{host}:{port}")
        self._server = uvicorn.Server(uvicorn.Config(self.oauth.app, host=host, port=port, log_level="warning"))
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._server.run, name="dev-oauth2", daemon=True)
        self._thread.start()
        logger.warning("dev oauth2 server started on %s -- it accepts any user", self.oauth.url)

    def stop(self) -> None:
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("dev oauth2 server stopped")
