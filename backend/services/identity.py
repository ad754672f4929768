"""
Deposit Reconciliation Core - Identity Resolver

Maps an identity from the chat layer (e.g. a Telegram id) to the internal
user id that owns the wallet. Unmapped identities pass through unchanged.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from database.ledger_models import UserMappingDB

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Pass-through resolver"""

    async def resolve(self, external_id: str) -> str:
        return external_id

    async def external_id_for(self, user_id: str) -> str:
        return user_id


class MappingIdentityResolver(IdentityResolver):
    """Resolver backed by the user_mappings table"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def resolve(self, external_id: str) -> str:
        async with self.session_factory() as session:
            result = await session.execute(
                select(UserMappingDB.user_id).where(UserMappingDB.external_id == external_id)
            )
            user_id = result.scalar_one_or_none()
        return user_id or external_id

    async def external_id_for(self, user_id: str) -> str:
        async with self.session_factory() as session:
            result = await session.execute(
                select(UserMappingDB.external_id)
                .where(UserMappingDB.user_id == user_id)
                .order_by(UserMappingDB.created_at.asc())
                .limit(1)
            )
            external_id = result.scalar_one_or_none()
        return external_id or user_id

    async def link(self, external_id: str, user_id: str) -> UserMappingDB:
        """Create the mapping, or return the existing one for external_id"""
        async with self.session_factory() as session:
            existing = await self._get(session, external_id)
            if existing:
                return existing

            mapping = UserMappingDB(external_id=external_id, user_id=user_id)
            session.add(mapping)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._get(session, external_id)
                if existing is None:
                    raise
                return existing

            logger.info(f"Mapped external id {external_id} to user {user_id}")
            return mapping

    @staticmethod
    async def _get(session, external_id: str) -> Optional[UserMappingDB]:
        result = await session.execute(
            select(UserMappingDB).where(UserMappingDB.external_id == external_id)
        )
        return result.scalar_one_or_none()
