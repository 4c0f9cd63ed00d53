"""Entity resolution for uploaded policy rows.

Each row is resolved in dependency order (agent, customer, account, category,
carrier, policy). Natural keys are looked up first in the per-run
:class:`RunContext`, then in the store, and only created when both miss.

The first problem found in a row (missing upstream entity, duplicate policy
number, rejected insert) is recorded as a single :class:`RowError` and the
remainder of that row is skipped; later rows are unaffected.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Protocol

from recordhub.models import AccountType
from recordhub.pipelines.normalization import (
    PolicyRow,
    map_gender,
    map_policy_mode,
    map_policy_type,
    map_user_type,
    normalize_email,
    parse_date,
    parse_flag,
    parse_number,
)

logger = logging.getLogger(__name__)


class EntityCreationError(Exception):
    """Raised by a store when an insert is rejected."""
    pass


class RowRejected(Exception):
    """Internal signal: stop resolving the current row."""
    pass


@dataclass
class RowError:
    """Structured row-level error."""
    row_number: int
    message: str
    policy_number: str | None = None

    def __str__(self) -> str:
        if self.policy_number:
            return f"Row {self.row_number} (policy {self.policy_number}): {self.message}"
        return f"Row {self.row_number}: {self.message}"


@dataclass
class IngestionSummary:
    """Created-entity counters plus flat list of row errors."""
    agents_created: int = 0
    users_created: int = 0
    accounts_created: int = 0
    categories_created: int = 0
    carriers_created: int = 0
    policies_created: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Wire format used by the worker message and the HTTP response."""
        return {
            "agentsCreated": self.agents_created,
            "usersCreated": self.users_created,
            "accountsCreated": self.accounts_created,
            "categoriesCreated": self.categories_created,
            "carriersCreated": self.carriers_created,
            "policiesCreated": self.policies_created,
            "errors": list(self.errors),
        }

    def as_log_fields(self) -> dict[str, Any]:
        data = asdict(self)
        data["errors"] = len(self.errors)
        return data


@dataclass
class RunContext:
    """Lookup maps and counters for exactly one ingestion run."""
    agents: dict[str, int] = field(default_factory=dict)
    customers: dict[str, int] = field(default_factory=dict)
    accounts: dict[str, int] = field(default_factory=dict)
    categories: dict[str, int] = field(default_factory=dict)
    carriers: dict[str, int] = field(default_factory=dict)
    policy_numbers: set[str] = field(default_factory=set)
    summary: IngestionSummary = field(default_factory=IngestionSummary)


class EntityStore(Protocol):
    """Persistence operations the engine needs; ids are surrogate keys."""

    async def find_agent(self, name: str) -> int | None: ...

    async def create_agent(self, name: str) -> int: ...

    async def find_customer(self, email: str) -> int | None: ...

    async def create_customer(self, **fields: Any) -> int: ...

    async def find_account(self, account_name: str) -> int | None: ...

    async def create_account(self, account_name: str, customer_id: int, account_type: str) -> int: ...

    async def find_category(self, category_name: str) -> int | None: ...

    async def create_category(self, category_name: str) -> int: ...

    async def find_carrier(self, name: str) -> int | None: ...

    async def create_carrier(self, name: str) -> int: ...

    async def policy_exists(self, policy_number: str) -> bool: ...

    async def create_policy(self, **fields: Any) -> int: ...

    async def commit(self) -> None: ...


class ResolutionEngine:
    """Resolves one row at a time against a store."""

    def __init__(self, store: EntityStore):
        self.store = store

    async def process_row(self, row: PolicyRow, ctx: RunContext) -> bool:
        """Resolve every entity in ``row``.

        Returns:
            True if the row produced a policy, False if it was rejected.
        """
        try:
            agent_id = await self.resolve_agent(row, ctx)
            customer_id = await self.resolve_customer(row, ctx, agent_id)
            await self.resolve_account(row, ctx, customer_id)
            category_id = await self.resolve_category(row, ctx)
            carrier_id = await self.resolve_carrier(row, ctx)
            await self.resolve_policy(
                row,
                ctx,
                customer_id=customer_id,
                agent_id=agent_id,
                category_id=category_id,
                carrier_id=carrier_id,
            )
        except RowRejected as e:
            error = RowError(row_number=row.row_number, message=str(e), policy_number=row.policy_number)
            logger.warning(f"Skipping row: {error}")
            ctx.summary.errors.append(str(error))
            return False
        return True

    async def _resolve(
        self,
        key: str,
        lookup: dict[str, int],
        find: Callable[[str], Awaitable[int | None]],
        create: Callable[[], Awaitable[int]],
        *,
        label: str,
        counter: str,
        ctx: RunContext,
    ) -> int:
        if key in lookup:
            return lookup[key]

        existing = await find(key)
        if existing is not None:
            lookup[key] = existing
            return existing

        try:
            new_id = await create()
        except EntityCreationError as e:
            logger.error(f"Error creating {label.lower()} {key}: {e}")
            raise RowRejected(f"{label} creation failed: {key}") from e

        lookup[key] = new_id
        setattr(ctx.summary, counter, getattr(ctx.summary, counter) + 1)
        return new_id

    async def resolve_agent(self, row: PolicyRow, ctx: RunContext) -> int | None:
        name = row.agent
        if not name:
            return None
        return await self._resolve(
            name,
            ctx.agents,
            self.store.find_agent,
            lambda: self.store.create_agent(name),
            label="Agent",
            counter="agents_created",
            ctx=ctx,
        )

    async def resolve_customer(self, row: PolicyRow, ctx: RunContext, agent_id: int | None) -> int | None:
        email = normalize_email(row.email)
        if not email:
            return None
        if email in ctx.customers:
            return ctx.customers[email]
        if agent_id is None:
            raise RowRejected(f"Agent not found for customer: {email}")

        return await self._resolve(
            email,
            ctx.customers,
            self.store.find_customer,
            lambda: self.store.create_customer(
                first_name=row.first_name or "",
                last_name=row.last_name,
                email=email,
                phone=row.phone_number,
                gender=map_gender(row.gender).value,
                date_of_birth=parse_date(row.date_of_birth),
                address=row.address,
                state=row.state,
                zip_code=row.zip_code,
                user_type=map_user_type(row.user_type).value,
                agent_id=agent_id,
            ),
            label="Customer",
            counter="users_created",
            ctx=ctx,
        )

    async def resolve_account(self, row: PolicyRow, ctx: RunContext, customer_id: int | None) -> int | None:
        account_name = row.account_name
        if not account_name:
            return None
        if account_name in ctx.accounts:
            return ctx.accounts[account_name]
        if customer_id is None:
            raise RowRejected(f"Customer not found for account: {account_name}")

        return await self._resolve(
            account_name,
            ctx.accounts,
            self.store.find_account,
            lambda: self.store.create_account(account_name, customer_id, AccountType.PERSONAL.value),
            label="Account",
            counter="accounts_created",
            ctx=ctx,
        )

    async def resolve_category(self, row: PolicyRow, ctx: RunContext) -> int | None:
        category_name = row.category_name
        if not category_name:
            return None
        return await self._resolve(
            category_name,
            ctx.categories,
            self.store.find_category,
            lambda: self.store.create_category(category_name),
            label="Policy category",
            counter="categories_created",
            ctx=ctx,
        )

    async def resolve_carrier(self, row: PolicyRow, ctx: RunContext) -> int | None:
        company_name = row.company_name
        if not company_name:
            return None
        return await self._resolve(
            company_name,
            ctx.carriers,
            self.store.find_carrier,
            lambda: self.store.create_carrier(company_name),
            label="Carrier",
            counter="carriers_created",
            ctx=ctx,
        )

    async def resolve_policy(
        self,
        row: PolicyRow,
        ctx: RunContext,
        *,
        customer_id: int | None,
        agent_id: int | None,
        category_id: int | None,
        carrier_id: int | None,
    ) -> int:
        policy_number = row.policy_number
        if not policy_number:
            raise RowRejected("Missing policy number")

        references = {
            "customer": customer_id,
            "agent": agent_id,
            "category": category_id,
            "carrier": carrier_id,
        }
        missing = [name for name, value in references.items() if value is None]
        if missing:
            raise RowRejected(f"Missing references for policy: {policy_number} ({', '.join(missing)})")

        if policy_number in ctx.policy_numbers or await self.store.policy_exists(policy_number):
            raise RowRejected(f"Duplicate policy number: {policy_number}")

        start: date | None = parse_date(row.policy_start_date)
        end: date | None = parse_date(row.policy_end_date)
        if start is not None and end is not None and end <= start:
            raise RowRejected(f"Policy end date must be after start date: {policy_number}")

        try:
            policy_id = await self.store.create_policy(
                policy_number=policy_number,
                policy_start_date=start,
                policy_end_date=end,
                premium_amount=parse_number(row.premium_amount),
                premium_amount_written=parse_number(row.premium_amount_written),
                policy_type=map_policy_type(row.policy_type).value,
                policy_mode=map_policy_mode(row.policy_mode).value,
                producer=row.producer,
                csr=row.csr,
                has_active_client_policy=parse_flag(row.has_active_client_policy),
                customer_id=customer_id,
                agent_id=agent_id,
                category_id=category_id,
                carrier_id=carrier_id,
            )
        except EntityCreationError as e:
            logger.error(f"Error creating policy {policy_number}: {e}")
            raise RowRejected(f"Policy creation failed: {policy_number}") from e

        ctx.policy_numbers.add(policy_number)
        ctx.summary.policies_created += 1
        return policy_id
