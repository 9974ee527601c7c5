"""
Branch Token Allocator

Issues the display token shown to customers and kitchen staff for each
new order. Tokens cycle through the branch's inclusive range
[token_range_start, token_range_end]; the branch row stores the next
token to hand out.

Concurrency:
    The read-modify-write of Branch.current_token is serialized per branch:
    reserve() takes an in-process asyncio.Lock for the branch and must be
    held until the order-creation transaction commits, and allocate() locks
    the branch row (SELECT ... FOR UPDATE) for other processes. Branches
    never share a lock.

Tokens are only unique among orders issued within one pass of the range.
After a wrap a number can be reissued while an older order holding it is
still open; ranges must be sized above the expected number of open orders.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_orders.core.clock import Clock, ensure_utc, utcnow
from cafe_orders.core.exceptions import TransientStorageError, ValidationError
from cafe_orders.models import Branch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BranchTokenConfig:
    """Token configuration of one branch."""
    branch_id: str
    enabled: bool
    range_start: int
    range_end: int
    current_token: int


class BranchTokenAllocator:
    """
    Per-branch token counter.

    Example:
        >>> allocator = BranchTokenAllocator()
        >>> async with allocator.reserve(branch_id):
        ...     async with session.begin():
        ...         token = await allocator.allocate(session, branch_id)
        ...         session.add(order)
    """

    def __init__(self, daily_reset: bool = False, clock: Clock = utcnow):
        """
        Args:
            daily_reset: Restart the counter at range start on a new UTC day
            clock: Source of the current time
        """
        self.daily_reset = daily_reset
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, branch_id: str) -> asyncio.Lock:
        lock = self._locks.get(branch_id)
        if lock is None:
            lock = self._locks[branch_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def reserve(self, branch_id: str) -> AsyncIterator[None]:
        """Exclusive allocation scope for one branch."""
        async with self._lock_for(branch_id):
            yield

    def is_reserved(self, branch_id: str) -> bool:
        return self._lock_for(branch_id).locked()

    async def _load_branch(self, session: AsyncSession, branch_id: str) -> Branch:
        try:
            result = await session.execute(
                select(Branch).where(Branch.id == branch_id).with_for_update()
            )
        except OperationalError as e:
            raise TransientStorageError(
                f"Could not lock branch {branch_id} for token allocation",
                details={"branch_id": branch_id},
            ) from e

        branch = result.scalar_one_or_none()
        if branch is None:
            raise TransientStorageError(
                f"Branch {branch_id} could not be loaded for token allocation",
                details={"branch_id": branch_id},
            )
        return branch

    async def get_config(self, session: AsyncSession, branch_id: str) -> BranchTokenConfig:
        """Read the token configuration of a branch without modifying it."""
        branch = await session.get(Branch, branch_id)
        if branch is None:
            raise ValidationError(f"Branch {branch_id} not found", details={"branch_id": branch_id})
        return BranchTokenConfig(
            branch_id=branch.id,
            enabled=bool(branch.has_token_system),
            range_start=branch.token_range_start,
            range_end=branch.token_range_end,
            current_token=branch.current_token,
        )

    def _should_reset(self, branch: Branch) -> bool:
        if not self.daily_reset:
            return False
        last_reset = ensure_utc(branch.last_token_reset)
        if last_reset is None:
            return True
        return self._clock().date() > last_reset.date()

    async def allocate(self, session: AsyncSession, branch_id: str) -> Optional[int]:
        """
        Issue the next token of a branch.

        Must run inside the caller's transaction while reserve(branch_id)
        is held, so the counter update commits together with the order.

        Returns:
            The token number, or None if the branch has no token system

        Raises:
            TransientStorageError: Branch row could not be loaded or locked
            ValidationError: The branch range is misconfigured
        """
        branch = await self._load_branch(session, branch_id)

        if not branch.has_token_system:
            logger.debug(f"Branch {branch_id} has no token system, skipping token")
            return None

        start, end = branch.token_range_start, branch.token_range_end
        if start < 1 or start > end:
            raise ValidationError(
                f"Branch {branch_id} has an invalid token range [{start}, {end}]",
                details={"branch_id": branch_id, "range_start": start, "range_end": end},
            )

        if self._should_reset(branch):
            logger.info(f"Branch {branch_id}: daily token reset")
            branch.current_token = start
            branch.last_token_reset = self._clock()

        token = branch.current_token
        if token is None or token > end or token < start:
            token = start

        branch.current_token = token + 1
        await session.flush()

        logger.info(f"Branch {branch_id}: issued token #{token}")
        return token
