"""
connect_consent.py — which scopes a user has already granted to a client.

One record per (user, client). A request is covered when every requested
scope appears in the granted set (exact, case-sensitive match). Grants do
not expire; there is no revocation path.
"""

import logging
import time

from connect_logging import audit
from connect_models import UserConsent
from connect_store import Store

logger = logging.getLogger("connect-oauth")


class ConsentLedger:
    def __init__(self, store: Store):
        self.store = store

    async def _latest(self, user_id: int, client_id: int) -> UserConsent | None:
        records = await self.store.consents.find(
            lambda uc: uc.user_id == user_id and uc.client_id == client_id)
        if not records:
            return None
        return max(records, key=lambda uc: uc.granted_at)

    async def has_consent(self, user_id: int, client_id: int, scopes: list[str]) -> bool:
        consent = await self._latest(user_id, client_id)
        if consent is None:
            return False
        granted = set(consent.scopes.split())
        return all(scope in granted for scope in scopes)

    async def grant_consent(self, user_id: int, client_id: int,
                            scopes: list[str]) -> UserConsent:
        """Record (or overwrite) the user's grant for this client."""
        scope_string = " ".join(scopes)
        now = time.time()
        async with self.store.unit_of_work():
            consent = await self._latest(user_id, client_id)
            if consent is None:
                consent = await self.store.consents.add(UserConsent(
                    user_id=user_id,
                    client_id=client_id,
                    scopes=scope_string,
                    granted_at=now,
                ))
            else:
                consent.scopes = scope_string
                consent.granted_at = now
                await self.store.consents.update(consent)

        audit("consent_granted", user_id=user_id, client_id=client_id, scopes=scope_string)
        logger.info("consent granted: user=%s client=%s scopes=%s",
                    user_id, client_id, scope_string)
        return consent
