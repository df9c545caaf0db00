"""
Resolves the acting account for a request.

Tokens are issued by the external identity provider; this side only maps a
verified bearer token to an account id. The ``X-User-Id`` header is honoured
only when header auth is switched on for local demos.
"""

import logging
from typing import Optional

from ledger.errors import UnauthenticatedError

logger = logging.getLogger(__name__)


class IdentityProvider:
    def __init__(
        self,
        tokens: Optional[dict[str, str]] = None,
        allow_header_auth: bool = False,
        admin_accounts: frozenset[str] = frozenset(),
    ):
        self.tokens = dict(tokens or {})
        self.allow_header_auth = allow_header_auth
        self.admin_accounts = admin_accounts

    def resolve(self, authorization: Optional[str] = None, user_header: Optional[str] = None) -> str:
        if authorization:
            scheme, _, token = authorization.partition(" ")
            if scheme.lower() != "bearer" or not token.strip():
                raise UnauthenticatedError("Unauthorized - Invalid token")
            account_id = self.tokens.get(token.strip())
            if account_id is None:
                logger.info("Rejected unknown bearer token")
                raise UnauthenticatedError("Unauthorized - Invalid token")
            return account_id
        if self.allow_header_auth and user_header and user_header.strip():
            return user_header.strip()
        raise UnauthenticatedError("Unauthorized - No token provided")

    def is_admin(self, account_id: str) -> bool:
        return account_id in self.admin_accounts
