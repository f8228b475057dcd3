"""Object store over the hwmgr database.

Provides the CRUD surface the allocation core is written against:

- ``get`` / ``list`` addressed by ``(namespace, name)``
- ``create`` / ``update`` with compare-and-swap on ``resource_version``
- ``create_or_update`` with owner-reference linking
- ``update_status`` with automatic retry on conflict
- idempotent ``delete`` that cascades to owned objects

Every call is bounded by a timeout. Timeouts and database failures
surface as ``StoreUnavailableError``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from hwmgr.db.engine import get_session
from hwmgr.db.models import OWNED_MODELS, StoredObject
from hwmgr.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
)
from hwmgr.logging import get_logger

logger = get_logger(__name__)

M = TypeVar("M", bound=StoredObject)
T = TypeVar("T")

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

# Metadata columns never overwritten by an update
_META_FIELDS = {"name", "namespace", "resource_version", "created_at"}


class WriteMode(str, Enum):
    """How ``create_or_update`` treats an object that already exists."""

    CREATE = "Create"
    UPDATE = "Update"
    PATCH = "Patch"


async def retry_on_conflict(
    fn: Callable[[], Awaitable[T]],
    attempts: int,
    what: str,
) -> T:
    """Run ``fn`` until it stops raising ``ConflictError``.

    ``fn`` must re-read whatever state it writes, so each attempt works
    from the latest resource version.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except ConflictError as e:
            logger.info("write_conflict", target=what, attempt=attempt, error=str(e))
    raise StoreUnavailableError(
        f"gave up writing {what} after {attempts} conflicting attempts"
    )


class ObjectStore:
    """Namespaced, versioned object store backed by SQLModel tables.

    Args:
        namespace: Namespace used when a call does not name one.
        session_factory: Async context manager factory yielding a session
            that commits on exit.
        timeout: Upper bound in seconds for each store call.
        conflict_retries: Attempts made by ``update_status``.
    """

    def __init__(
        self,
        namespace: str,
        session_factory: SessionFactory = get_session,
        timeout: float = 10.0,
        conflict_retries: int = 5,
    ) -> None:
        self.namespace = namespace
        self.timeout = timeout
        self.conflict_retries = conflict_retries
        self._session_factory = session_factory

    async def _bounded(self, call: Awaitable[T], action: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except TimeoutError as e:
            raise StoreUnavailableError(
                f"{action} timed out after {self.timeout}s"
            ) from e
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"{action} failed: {e}") from e

    async def get(self, model: type[M], name: str, namespace: str | None = None) -> M:
        """Fetch one object, raising ``NotFoundError`` if absent."""
        namespace = namespace or self.namespace

        async def _get() -> M | None:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(model).where(
                        model.name == name,
                        model.namespace == namespace,
                    )
                )
                return result.scalar_one_or_none()

        obj = await self._bounded(_get(), f"get {model.kind} {namespace}/{name}")
        if obj is None:
            raise NotFoundError(f"{model.kind} {namespace}/{name} not found")
        return obj

    async def list(
        self,
        model: type[M],
        namespace: str | None = None,
        **filters: Any,
    ) -> list[M]:
        """List objects in a namespace, optionally filtered by column values."""
        namespace = namespace or self.namespace

        async def _list() -> list[M]:
            async with self._session_factory() as session:
                query = select(model).where(model.namespace == namespace)
                for column, value in filters.items():
                    query = query.where(getattr(model, column) == value)
                query = query.order_by(model.created_at, model.name)
                result = await session.execute(query)
                return list(result.scalars().all())

        return await self._bounded(_list(), f"list {model.kind}")

    async def create(self, obj: M) -> M:
        """Persist a new object, raising ``AlreadyExistsError`` on a name clash."""
        obj.resource_version = 1

        async def _create() -> None:
            async with self._session_factory() as session:
                session.add(obj)

        try:
            await self._bounded(_create(), f"create {obj.kind} {obj.name}")
        except IntegrityError as e:
            raise AlreadyExistsError(
                f"{obj.kind} {obj.namespace}/{obj.name} already exists"
            ) from e
        logger.debug("object_created", kind=obj.kind, name=obj.name, namespace=obj.namespace)
        return obj

    async def update(self, obj: M) -> M:
        """Write ``obj`` if its resource version is still current.

        Raises:
            ConflictError: Another writer bumped the resource version.
            NotFoundError: The object no longer exists.
        """
        model = type(obj)
        values = obj.model_dump(exclude=_META_FIELDS)

        async def _update() -> None:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(model)
                    .where(
                        model.name == obj.name,
                        model.namespace == obj.namespace,
                        model.resource_version == obj.resource_version,
                    )
                    .values(**values, resource_version=obj.resource_version + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return
                current = await session.execute(
                    select(model.resource_version).where(
                        model.name == obj.name,
                        model.namespace == obj.namespace,
                    )
                )
                version = current.scalar_one_or_none()
                if version is None:
                    raise NotFoundError(f"{model.kind} {obj.namespace}/{obj.name} not found")
                raise ConflictError(
                    f"{model.kind} {obj.namespace}/{obj.name} was modified "
                    f"(have version {obj.resource_version}, store has {version})"
                )

        await self._bounded(_update(), f"update {model.kind} {obj.name}")
        obj.resource_version += 1
        return obj

    async def create_or_update(
        self,
        obj: M,
        owner: StoredObject | None = None,
        mode: WriteMode = WriteMode.UPDATE,
    ) -> M:
        """Create ``obj`` or write it over the existing object.

        The owner reference is only set when the owner lives in the same
        namespace; cross-namespace ownership is not allowed.
        """
        if owner is not None and owner.namespace == obj.namespace:
            obj.owner_kind = owner.kind
            obj.owner_name = owner.name

        try:
            existing = await self.get(type(obj), obj.name, obj.namespace)
        except NotFoundError:
            logger.info(
                "object_not_found_creating",
                kind=obj.kind,
                name=obj.name,
                namespace=obj.namespace,
            )
            return await self.create(obj)

        if mode is WriteMode.CREATE:
            raise AlreadyExistsError(f"{obj.kind} {obj.namespace}/{obj.name} already exists")

        if mode is WriteMode.PATCH:
            logger.info("object_present_patching", kind=obj.kind, name=obj.name)
            changes = obj.model_dump(exclude_unset=True, exclude=_META_FIELDS)
            for field_name, value in changes.items():
                setattr(existing, field_name, value)
            return await self.update(existing)

        logger.info("object_present_updating", kind=obj.kind, name=obj.name)
        obj.resource_version = existing.resource_version
        obj.created_at = existing.created_at
        return await self.update(obj)

    async def update_status(self, obj: M) -> M:
        """Write only the status fields of ``obj``, retrying on conflict.

        Each attempt re-reads the object and re-applies the status, so
        concurrent spec edits are never overwritten.
        """
        model = type(obj)

        async def _attempt() -> M:
            latest = await self.get(model, obj.name, obj.namespace)
            for field_name in model.status_fields:
                setattr(latest, field_name, getattr(obj, field_name))
            return await self.update(latest)

        updated = await retry_on_conflict(
            _attempt, self.conflict_retries, f"{model.kind} {obj.name} status"
        )
        obj.resource_version = updated.resource_version
        return obj

    async def delete(self, model: type[M], name: str, namespace: str | None = None) -> bool:
        """Delete an object and everything it owns.

        Returns:
            False if the object did not exist; deleting is still a success.
        """
        namespace = namespace or self.namespace

        async def _delete() -> bool:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(model)
                    .where(model.name == name, model.namespace == namespace)
                    .execution_options(synchronize_session=False)
                )
                for owned in OWNED_MODELS:
                    await session.execute(
                        delete(owned)
                        .where(
                            owned.namespace == namespace,
                            owned.owner_kind == model.kind,
                            owned.owner_name == name,
                        )
                        .execution_options(synchronize_session=False)
                    )
                return result.rowcount > 0

        deleted = await self._bounded(_delete(), f"delete {model.kind} {name}")
        if deleted:
            logger.debug("object_deleted", kind=model.kind, name=name, namespace=namespace)
        return deleted
