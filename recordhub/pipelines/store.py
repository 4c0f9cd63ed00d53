"""SQLAlchemy-backed entity store used by the ingestion worker."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from recordhub import models
from recordhub.pipelines.resolution import EntityCreationError

logger = logging.getLogger(__name__)


class SqlEntityStore:
    """Implements the resolution engine's store over one ``AsyncSession``.

    Every insert runs inside a SAVEPOINT so a rejected row leaves the rest of
    the open chunk intact; :meth:`commit` is called by the batch runner once
    per chunk.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _first_id(self, column, key_column, key: str) -> int | None:
        result = await self.session.execute(select(column).where(key_column == key).limit(1))
        return result.scalar_one_or_none()

    async def _insert(self, obj: models.Base) -> int:
        try:
            async with self.session.begin_nested():
                self.session.add(obj)
                await self.session.flush()
        except SQLAlchemyError as e:
            raise EntityCreationError(str(e)) from e
        return obj.id

    async def find_agent(self, name: str) -> int | None:
        return await self._first_id(models.Agent.id, models.Agent.name, name)

    async def create_agent(self, name: str) -> int:
        return await self._insert(models.Agent(name=name))

    async def find_customer(self, email: str) -> int | None:
        return await self._first_id(models.Customer.id, models.Customer.email, email)

    async def create_customer(self, **fields: Any) -> int:
        return await self._insert(models.Customer(**fields))

    async def find_account(self, account_name: str) -> int | None:
        return await self._first_id(models.Account.id, models.Account.account_name, account_name)

    async def create_account(self, account_name: str, customer_id: int, account_type: str) -> int:
        return await self._insert(
            models.Account(account_name=account_name, customer_id=customer_id, account_type=account_type)
        )

    async def find_category(self, category_name: str) -> int | None:
        return await self._first_id(
            models.PolicyCategory.id, models.PolicyCategory.category_name, category_name
        )

    async def create_category(self, category_name: str) -> int:
        return await self._insert(models.PolicyCategory(category_name=category_name))

    async def find_carrier(self, name: str) -> int | None:
        return await self._first_id(models.Carrier.id, models.Carrier.name, name)

    async def create_carrier(self, name: str) -> int:
        return await self._insert(models.Carrier(name=name))

    async def policy_exists(self, policy_number: str) -> bool:
        found = await self._first_id(models.Policy.id, models.Policy.policy_number, policy_number)
        return found is not None

    async def create_policy(self, **fields: Any) -> int:
        return await self._insert(models.Policy(**fields))

    async def commit(self) -> None:
        await self.session.commit()
