"""
Credential store: one durable blob holding the serialized session list.
Reads and deletes never fail the caller (errors are logged, value treated as absent).
A write that loses an insert race against another process is ignored: later writes win anyway.
"""
import asyncio
import logging
from typing import Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from auth_session.config import ACCOUNT_ID, LEGACY_SERVICE_ID, SERVICE_ID
from auth_session.database import SessionLocal
from auth_session.models import Credential

logger = logging.getLogger(__name__)


class CredentialStore:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        service_id: str = SERVICE_ID,
        legacy_service_id: str = LEGACY_SERVICE_ID,
        account: str = ACCOUNT_ID,
    ):
        self._session_factory = session_factory
        self.service_id = service_id
        self.legacy_service_id = legacy_service_id
        self.account = account
        # Blocking DB work runs in a worker thread, one call at a time
        self._lock = asyncio.Lock()

    async def _run(self, fn, *args):
        async with self._lock:
            return await asyncio.to_thread(fn, *args)

    async def get(self) -> str | None:
        try:
            return await self._run(self._read, self.service_id)
        except SQLAlchemyError as e:
            logger.error("Getting token failed: %s", e)
            return None

    async def set(self, value: str) -> None:
        """Write the blob. Raises on storage errors other than a concurrent-insert race."""
        await self._run(self._write, self.service_id, value)

    async def delete(self) -> None:
        try:
            await self._run(self._remove, self.service_id)
        except SQLAlchemyError as e:
            logger.error("Deleting token failed: %s", e)

    async def migrate_legacy(self) -> str | None:
        """
        One-time move of a blob written under the legacy service id.
        Best effort: returns the migrated value, or None if there was nothing (or it failed).
        """
        try:
            old_value = await self._run(self._read, self.legacy_service_id)
            if old_value:
                await self._run(self._write, self.service_id, old_value)
                await self._run(self._remove, self.legacy_service_id)
                logger.info("Migrated stored sessions from %s", self.legacy_service_id)
            return old_value
        except SQLAlchemyError as e:
            logger.debug("Legacy credential migration failed: %s", e)
            return None

    def _read(self, service_id: str) -> str | None:
        db = self._session_factory()
        try:
            row = (
                db.query(Credential)
                .filter(Credential.service_id == service_id, Credential.account == self.account)
                .first()
            )
            return row.value if row else None
        finally:
            db.close()

    def _write(self, service_id: str, value: str) -> None:
        db = self._session_factory()
        try:
            row = (
                db.query(Credential)
                .filter(Credential.service_id == service_id, Credential.account == self.account)
                .first()
            )
            if row:
                row.value = value
            else:
                db.add(Credential(service_id=service_id, account=self.account, value=value))
            db.commit()
        except IntegrityError as e:
            # Another writer inserted the row between our read and insert
            db.rollback()
            logger.warning("Setting token raced with another writer; ignoring: %s", e)
        finally:
            db.close()

    def _remove(self, service_id: str) -> None:
        db = self._session_factory()
        try:
            db.query(Credential).filter(
                Credential.service_id == service_id, Credential.account == self.account
            ).delete()
            db.commit()
        finally:
            db.close()
