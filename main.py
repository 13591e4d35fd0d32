#!/usr/bin/env python3
"""
authgate -- token-based authentication service.

Usage:
  python main.py serve
  python main.py serve --host 127.0.0.1 --port 8080 --reload
  python main.py dev-server --port 8084
  python main.py hash-password
  python main.py token --user github_0123abcd --name alice --admin

Environment variables (see core/config.py for the full list):
  SECRET_KEY         Signing key, at least 32 characters. Required unless DEBUG=true.
  APP_HOST/APP_PORT  Bind address for "serve".
  GITHUB_CLIENT_ID / GITHUB_CLIENT_SECRET (and the same for other providers)
"""

import argparse
import getpass
import json
import sys

from core.config import get_settings


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "asgi:app",
        host=args.host or settings.app_host,
        port=args.port or settings.app_port,
        reload=args.reload,
    )
    return 0


def _dev_server(args: argparse.Namespace) -> int:
    import uvicorn

    from auth.dev import DevOAuthServer

    server = DevOAuthServer(f"http://{args.host}:{args.port}")
    print(f"  [!] dev OAuth2 server on {server.url} authenticates ANY user name")
    uvicorn.run(server.app, host=args.host, port=args.port)
    return 0


def _hash_password(args: argparse.Namespace) -> int:
    from auth.passwords import hash_password

    plain = args.password or getpass.getpass("Password: ")
    if not plain:
        print("  [!] empty password", file=sys.stderr)
        return 1
    print(hash_password(plain))
    return 0


def _token(args: argparse.Namespace) -> int:
    """Mint a session token with the configured secret, for curl and API testing."""
    from auth.models import Claims, User
    from auth.service import AuthOptions, AuthService

    settings = get_settings()
    service = AuthService(AuthOptions.from_settings(settings, avatar_store=None, refresh_store=None))
    attributes = {"admin": True} if args.admin else {}
    user = User(id=args.user, name=args.name or args.user, role=args.role, attributes=attributes)
    claims, token = service.tokens.mint(
        Claims(user=user, audience=args.aud, expires_at=int(service.tokens.clock()) + args.ttl if args.ttl else 0)
    )
    if args.json:
        print(json.dumps({"token": token, "claims": claims.to_payload()}, indent=2))
    else:
        print(token)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="authgate",
        description="Token-based authentication with OAuth2, direct, and verification-link providers.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  DEBUG=true python main.py serve --reload
  python main.py dev-server
  DIRECT_PROVIDER_USERS="alice:$(python main.py hash-password -p secret)" python main.py serve
  curl -H "X-JWT: $(python main.py token --user dev_abc --name alice)" localhost:8000/api/v1/auth/me
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Run the API server with uvicorn")
    p_serve.add_argument("--host", default=None, help="Bind address (default: APP_HOST)")
    p_serve.add_argument("--port", type=int, default=None, help="Bind port (default: APP_PORT)")
    p_serve.add_argument("--reload", action="store_true", help="Reload on code changes")
    p_serve.set_defaults(func=_serve)

    p_dev = sub.add_parser("dev-server", help="Run only the local dev OAuth2 provider")
    p_dev.add_argument("--host", default="127.0.0.1")
    p_dev.add_argument("--port", type=int, default=8084)
    p_dev.set_defaults(func=_dev_server)

    p_hash = sub.add_parser("hash-password", help="Print a bcrypt hash for DIRECT_PROVIDER_USERS")
    p_hash.add_argument("-p", "--password", default=None, help="Password (prompted when omitted)")
    p_hash.set_defaults(func=_hash_password)

    p_token = sub.add_parser("token", help="Mint a session token signed with SECRET_KEY")
    p_token.add_argument("--user", required=True, metavar="ID", help="User id, e.g. github_<sha1>")
    p_token.add_argument("--name", default="", help="Display name (default: the id)")
    p_token.add_argument("--role", default="", help="Role for role-based routes")
    p_token.add_argument("--admin", action="store_true", help="Mark the user as admin")
    p_token.add_argument("--aud", default="", help="Audience (site)")
    p_token.add_argument("--ttl", type=int, default=0, help="Token lifetime in seconds (default: TOKEN_DURATION_SECONDS)")
    p_token.add_argument("--json", action="store_true", help="Print token and claims as JSON")
    p_token.set_defaults(func=_token)

    args = parser.parse_args()
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
