"""Bearer-credential check for control-surface requests."""

import logging
from typing import Iterable

from fastapi import Request

from lanlink.config import AUTHORIZED_TOKENS
from lanlink.errors import Unauthorized

logger = logging.getLogger(__name__)


class TokenAuthority:
    """Process-wide set of authorized device tokens."""

    def __init__(self, tokens: Iterable[str] = AUTHORIZED_TOKENS) -> None:
        self._tokens = set(tokens)

    def authorize(self, token: str) -> None:
        self._tokens.add(token)

    def revoke(self, token: str) -> None:
        self._tokens.discard(token)

    def check(self, header: str | None) -> None:
        """Fail closed on a missing or unknown credential."""
        if not header:
            raise Unauthorized("Missing credential")
        token = header.strip()
        scheme, _, rest = token.partition(" ")
        if scheme.lower() == "bearer" and rest:
            token = rest.strip()
        if token not in self._tokens:
            logger.warning("Rejected request with unknown credential")
            raise Unauthorized("Invalid credential")


authority = TokenAuthority()


async def require_auth(request: Request) -> None:
    """FastAPI dependency guarding every mutating route."""
    authority.check(request.headers.get("authorization"))
