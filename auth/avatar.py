"""
auth/avatar.py -- Avatar proxy and its SQLAlchemy Core store.

After a successful handshake the provider's picture URL is fetched once,
stored locally, and replaced in the User record with a stable URL served by
this service:

    <base_url><avatar_route>/<sha1(user id)>.image

This keeps third-party tracking pixels out of the client and survives the
provider rotating its CDN URLs.

With a resize limit set, large raster images are scaled down with Pillow
before they are stored.

Pattern: Repository + Data Mapper for AvatarStore (bound parameters only, no
f-strings in SQL). AvatarProxy does the network side with httpx.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import io
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from PIL import Image
from sqlalchemy import Column, Integer, LargeBinary, MetaData, String, Table, create_engine, event
from sqlalchemy.engine import Engine
from starlette.concurrency import run_in_threadpool

from auth.models import User
from auth.tokens import hash_id

logger = logging.getLogger("authgate.auth.avatar")

_DEFAULT_DB_URL = "sqlite:///authgate_avatars.db"
_MAX_AVATAR_BYTES = 1 * 1024 * 1024  # 1 MB

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_avatars = Table(
    "avatars",
    _metadata,
    Column("id", String(64), primary_key=True),  # "<sha1>.image"
    Column("content_type", String(100), nullable=False),
    Column("data", LargeBinary, nullable=False),
    Column("size", Integer, nullable=False),
    Column("updated_at", String(32), nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so avatar reads don't block on writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AvatarStore:
    """Repository for avatar images.

    Usage:
        store = AvatarStore("sqlite:///:memory:")
        store.put("abc.image", b"...", "image/png")
        data, content_type = store.get("abc.image")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def put(self, avatar_id: str, data: bytes, content_type: str) -> None:
        """Insert or replace the image stored under avatar_id."""
        with self.engine.connect() as conn:
            conn.execute(_avatars.delete().where(_avatars.c.id == avatar_id))
            conn.execute(
                _avatars.insert().values(
                    id=avatar_id,
                    content_type=content_type,
                    data=data,
                    size=len(data),
                    updated_at=_now_iso(),
                )
            )
            conn.commit()

    def get(self, avatar_id: str) -> Optional[tuple[bytes, str]]:
        """Return (data, content_type) or None if not stored."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _avatars.select().with_only_columns(_avatars.c.data, _avatars.c.content_type).where(
                    _avatars.c.id == avatar_id
                )
            ).fetchone()
        if row is None:
            return None
        return bytes(row.data), row.content_type

    def remove(self, avatar_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_avatars.delete().where(_avatars.c.id == avatar_id))
            conn.commit()
        return result.rowcount > 0

    def list_ids(self) -> list[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(_avatars.select().with_only_columns(_avatars.c.id).order_by(_avatars.c.id)).fetchall()
        return [r.id for r in rows]

    def close(self) -> None:
        self.engine.dispose()


class AvatarProxy:
    """Fetches, stores, and serves user avatars.

    client_kwargs go to httpx.AsyncClient (e.g. a MockTransport in tests).
    resize_limit > 0 scales raster avatars down to fit a limit x limit box
    (aspect ratio kept) and stores them as PNG; 0 stores them as fetched.
    """

    def __init__(
        self,
        store: AvatarStore,
        url: str,
        route_path: str = "/avatar",
        http_timeout: float = 5.0,
        client_kwargs: Optional[dict[str, Any]] = None,
        resize_limit: int = 0,
    ) -> None:
        self.store = store
        self.url = url.rstrip("/")
        self.route_path = route_path
        self.http_timeout = http_timeout
        self.client_kwargs = dict(client_kwargs or {})
        self.resize_limit = resize_limit

    @staticmethod
    def avatar_id(user_id: str) -> str:
        return hash_id(user_id) + ".image"

    async def put(self, user: User) -> str:
        """Fetch user.picture, store it, and return the proxied URL.

        Raises on a network, content-type, size or decoding problem; the caller
        decides whether that is fatal (for logins it is not).
        """
        async with httpx.AsyncClient(timeout=self.http_timeout, follow_redirects=True, **self.client_kwargs) as client:
            resp = await client.get(user.picture)
            resp.raise_for_status()
        content_type = resp.headers.get("content-type", "").split(";")[0].strip()
        if not content_type.startswith("image/"):
            raise ValueError(f"avatar for {user.id} is not an image: {content_type!r}")
        if len(resp.content) > _MAX_AVATAR_BYTES:
            raise ValueError(f"avatar for {user.id} is too large ({len(resp.content)} bytes)")

        data = resp.content
        if self.resize_limit > 0 and content_type != "image/svg+xml":
            data, content_type = await run_in_threadpool(self._resize, data, content_type)

        avatar_id = self.avatar_id(user.id)
        await run_in_threadpool(self.store.put, avatar_id, data, content_type)
        logger.debug("avatar %s saved for %s", avatar_id, user.id)
        return f"{self.url}{self.route_path}/{avatar_id}"

    def _resize(self, data: bytes, content_type: str) -> tuple[bytes, str]:
        with Image.open(io.BytesIO(data)) as image:
            if max(image.size) <= self.resize_limit:
                return data, content_type
            image.thumbnail((self.resize_limit, self.resize_limit))
            if image.mode not in ("RGB", "RGBA", "L", "LA"):
                image = image.convert("RGBA")
            out = io.BytesIO()
            image.save(out, format="PNG")
        return out.getvalue(), "image/png"

    def load(self, avatar_id: str) -> Optional[tuple[bytes, str, str]]:
        """Return (data, content_type, etag) for the avatar route, or None."""
        found = self.store.get(avatar_id)
        if found is None:
            return None
        data, content_type = found
        etag = '"' + hashlib.sha1(data).hexdigest() + '"'  # noqa: S324 -- cache validator
        return data, content_type, etag
