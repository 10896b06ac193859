#!/usr/bin/env python3
"""
API key authentication for admin-only endpoints.

Keys come from API_KEYS / ADMIN_API_KEYS ("key:user,key:user"). Keys listed in
ADMIN_API_KEYS authenticate as administrators.
"""

import hmac
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from config import config, get_logger

logger = get_logger("accounts")


@dataclass(frozen=True)
class Account:
    user_id: str
    is_admin: bool = False


class AccountService(Protocol):
    async def authenticate(self, api_key: Optional[str]) -> Optional[Account]:
        ...


class ApiKeyAccountService:
    """Looks API keys up in static key maps."""

    def __init__(self, api_keys: Optional[Dict[str, str]] = None, admin_api_keys: Optional[Dict[str, str]] = None):
        self.api_keys = dict(config.API_KEYS if api_keys is None else api_keys)
        self.admin_api_keys = dict(config.ADMIN_API_KEYS if admin_api_keys is None else admin_api_keys)
        if not self.api_keys and not self.admin_api_keys:
            logger.warning("No API keys configured; admin endpoints will reject every request")

    @staticmethod
    def _match(api_key: str, keys: Dict[str, str]) -> Optional[str]:
        for known, user in keys.items():
            if hmac.compare_digest(known.encode(), api_key.encode()):
                return user
        return None

    async def authenticate(self, api_key: Optional[str]) -> Optional[Account]:
        """The account for ``api_key``, or None when it is missing or unknown."""
        if not api_key:
            return None
        user = self._match(api_key, self.admin_api_keys)
        if user is not None:
            return Account(user_id=user, is_admin=True)
        user = self._match(api_key, self.api_keys)
        if user is not None:
            return Account(user_id=user, is_admin=False)
        return None
