"""Caller identity for the job endpoints.

Sign-in is handled by an identity gateway in front of this service, which
forwards the authenticated user's id in a trusted header.
"""

from typing import Optional

from fastapi import Request

from errors import Unauthorized


class HeaderIdentityProvider:
    """Resolve the owner id from a header set by the identity gateway."""

    def __init__(self, header: str = "X-Owner-Id") -> None:
        self.header = header

    def resolve(self, request: Request) -> Optional[str]:
        value = request.headers.get(self.header, "").strip()
        return value or None


async def optional_owner(request: Request) -> Optional[str]:
    return request.app.state.identity.resolve(request)


async def require_owner(request: Request) -> str:
    owner_id = request.app.state.identity.resolve(request)
    if not owner_id:
        raise Unauthorized("Unauthorized")
    return owner_id
