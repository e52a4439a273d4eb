"""
connect_store.py — persistence contracts for the Connect engine, plus an
in-memory implementation for development and tests.

The engine only talks to ``Store``. Writes made inside ``unit_of_work()``
are staged per request (carried in a ContextVar, so concurrent asyncio
tasks never see each other's pending rows) and applied on a clean exit.
``compare_and_set`` is the atomic conditional update that single-use codes
and refresh rotation depend on; it takes effect immediately and is undone
if the surrounding unit of work fails.
"""

import itertools
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from contextvars import ContextVar
from dataclasses import replace
from typing import Any, Generic, TypeVar

from connect_models import (
    AuthorizationCode,
    Client,
    ClientScope,
    Scope,
    Token,
    User,
    UserConsent,
)

logger = logging.getLogger("connect-store")

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------

class Repository(ABC, Generic[T]):
    """Keyed record access for one entity kind."""

    @abstractmethod
    async def get(self, entity_id: int) -> T | None:
        """Fetch a record by primary key.

        Args:
            entity_id: Store-assigned primary key.

        Returns:
            A copy of the record, or None if absent.
        """

    @abstractmethod
    async def find(self, predicate: Callable[[T], bool]) -> list[T]:
        """Return copies of every record matching ``predicate``."""

    async def first(self, predicate: Callable[[T], bool]) -> T | None:
        rows = await self.find(predicate)
        return rows[0] if rows else None

    @abstractmethod
    async def add(self, entity: T) -> T:
        """Insert a record, assigning its primary key.

        Inside a unit of work the row becomes visible on commit.
        """

    @abstractmethod
    async def update(self, entity: T) -> None:
        """Overwrite an existing record with ``entity``."""

    @abstractmethod
    async def delete_where(self, predicate: Callable[[T], bool]) -> int:
        """Remove every record matching ``predicate``.

        Inside a unit of work the removal happens on commit.

        Returns:
            The number of records matched.
        """

    @abstractmethod
    async def compare_and_set(
        self, entity_id: int, field_name: str, expected: Any, value: Any,
    ) -> bool:
        """Atomically set ``field_name`` to ``value`` if it equals ``expected``.

        Returns:
            True if this call changed the record, False if the record is
            missing or the field held a different value.
        """


class Store(ABC):
    """Aggregate of repositories plus the unit-of-work boundary."""

    clients: Repository[Client]
    scopes: Repository[Scope]
    client_scopes: Repository[ClientScope]
    users: Repository[User]
    authorization_codes: Repository[AuthorizationCode]
    tokens: Repository[Token]
    consents: Repository[UserConsent]

    @abstractmethod
    async def get_client_scopes(self, client_id: int) -> list[Scope]:
        """Scopes a client is allowed to request (by client primary key)."""

    @abstractmethod
    def unit_of_work(self) -> AbstractAsyncContextManager[None]:
        """Commit staged writes on clean exit, discard them on error."""


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class _Batch:
    def __init__(self) -> None:
        self.writes: list[Callable[[], None]] = []
        self.undo: list[Callable[[], None]] = []


_current_batch: ContextVar[_Batch | None] = ContextVar("connect_store_batch", default=None)


class MemoryRepository(Repository[T]):
    """Dict-backed repository. Not shared across processes."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._rows: dict[int, T] = {}
        self._ids = itertools.count(1)

    async def get(self, entity_id: int) -> T | None:
        row = self._rows.get(entity_id)
        return replace(row) if row is not None else None

    async def find(self, predicate: Callable[[T], bool]) -> list[T]:
        return [replace(row) for row in self._rows.values() if predicate(row)]

    async def add(self, entity: T) -> T:
        entity.id = next(self._ids)
        self._write(entity)
        return entity

    async def update(self, entity: T) -> None:
        if entity.id not in self._rows:
            raise KeyError(f"{self.name}: no record with id {entity.id}")
        self._write(entity)

    async def delete_where(self, predicate: Callable[[T], bool]) -> int:
        doomed = [entity_id for entity_id, row in self._rows.items() if predicate(row)]

        def apply() -> None:
            for entity_id in doomed:
                self._rows.pop(entity_id, None)

        self._stage(apply)
        return len(doomed)

    async def compare_and_set(
        self, entity_id: int, field_name: str, expected: Any, value: Any,
    ) -> bool:
        row = self._rows.get(entity_id)
        if row is None or getattr(row, field_name) != expected:
            return False
        setattr(row, field_name, value)
        batch = _current_batch.get()
        if batch is not None:
            batch.undo.append(lambda: setattr(row, field_name, expected))
        return True

    def _write(self, entity: T) -> None:
        snapshot = replace(entity)

        def apply() -> None:
            self._rows[snapshot.id] = snapshot

        self._stage(apply)

    @staticmethod
    def _stage(apply: Callable[[], None]) -> None:
        batch = _current_batch.get()
        if batch is None:
            apply()
        else:
            batch.writes.append(apply)


class MemoryStore(Store):
    """In-memory store.

    Warning:
        State lives in the process. Restarting the server drops every
        code, token and consent record. Expired codes and refresh records
        are swept when new ones are written; revoked refresh records stay
        until they expire.
    """

    def __init__(self) -> None:
        self.clients = MemoryRepository[Client]("clients")
        self.scopes = MemoryRepository[Scope]("scopes")
        self.client_scopes = MemoryRepository[ClientScope]("client_scopes")
        self.users = MemoryRepository[User]("users")
        self.authorization_codes = MemoryRepository[AuthorizationCode]("authorization_codes")
        self.tokens = MemoryRepository[Token]("tokens")
        self.consents = MemoryRepository[UserConsent]("consents")

    async def get_client_scopes(self, client_id: int) -> list[Scope]:
        links = await self.client_scopes.find(lambda cs: cs.client_id == client_id)
        scope_ids = {link.scope_id for link in links}
        return await self.scopes.find(lambda s: s.id in scope_ids and not s.is_deleted)

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[None]:
        if _current_batch.get() is not None:
            # Nested: join the outer unit of work.
            yield
            return
        batch = _Batch()
        token = _current_batch.set(batch)
        try:
            yield
        except BaseException:
            for undo in reversed(batch.undo):
                undo()
            logger.warning("unit of work rolled back (%d staged writes discarded)",
                           len(batch.writes))
            raise
        else:
            for apply in batch.writes:
                apply()
        finally:
            _current_batch.reset(token)

    def unit_of_work(self) -> AbstractAsyncContextManager[None]:
        return self._unit_of_work()
