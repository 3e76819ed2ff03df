"""Caller identity for HTTP requests.

With bearer tokens configured, ``Authorization: Bearer <token>`` is
required and mapped to a user id. Without tokens the service is in
single-host mode and trusts ``X-User-Id`` (default ``local``).
"""
from __future__ import annotations

import hmac
import re

from aiohttp import web

from agentweb.engine.errors import Unauthorized

DEFAULT_USER = "local"
_USER_ID_RE = re.compile(r"^[A-Za-z0-9_.@-]{1,64}$")


def resolve_user(request: web.Request, tokens: dict[str, str]) -> str:
    if tokens:
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token:
            raise Unauthorized("Missing bearer token")
        for known, user_id in tokens.items():
            if hmac.compare_digest(known.encode(), token.strip().encode()):
                return user_id
        raise Unauthorized("Invalid bearer token")
    user_id = request.headers.get("X-User-Id", DEFAULT_USER).strip() or DEFAULT_USER
    if not _USER_ID_RE.match(user_id):
        raise Unauthorized("Invalid X-User-Id header")
    return user_id
