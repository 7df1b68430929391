import logging
from datetime import datetime

from bookstore.application.manage_return import load_return, release_on_order, save_return
from bookstore.domain.history import Actor, utcnow

logger = logging.getLogger(__name__)


class ExpireOverdueReturnsUseCase:
    """Daily sweep: cancels approved returns never shipped before their deadline."""

    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, limit: int = 100) -> int:
        now = utcnow()
        async with self._uow() as uow:
            overdue = await uow.returns.list_overdue(now, limit=limit)

        expired = 0
        for candidate in overdue:
            try:
                if await self._expire(candidate.code, now):
                    expired += 1
            except Exception as e:
                logger.error(f"Error expiring return {candidate.code}: {e}")

        if expired:
            logger.info(f"Expired {expired} overdue returns")
        return expired

    async def _expire(self, code: str, now: datetime) -> bool:
        system = Actor.system()
        async with self._uow() as uow:
            returned = await load_return(uow, code)
            if not returned.is_overdue(now):
                return False
            returned.cancel(system, "Shipping deadline expired")
            await release_on_order(uow, returned, system, f"Return {returned.code} expired")
            await save_return(
                uow, returned, "devolucion_expirada",
                f"Your return {returned.code} expired: the items were not shipped in time",
            )
            await uow.commit()
        logger.info(f"Return {returned.code} expired (deadline {returned.shipping_deadline:%Y-%m-%d})")
        return True
