"""Soft stock reservations held for the duration of one checkout attempt."""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, Sequence

from .models import StockReservation

logger = logging.getLogger(__name__)


class ReservationStore(ABC):
    """Where soft holds are recorded. Holds are never persisted to the order store."""

    @abstractmethod
    async def hold(self, reservations: Sequence[StockReservation]) -> None:
        """Record holds for the given products."""

    @abstractmethod
    async def release(self, reservations: Sequence[StockReservation]) -> None:
        """Release previously recorded holds. Releasing unknown holds is a no-op."""

    @abstractmethod
    async def held_quantity(self, product_id: str) -> int:
        """Units of ``product_id`` currently held across all attempts."""


class InMemoryReservationStore(ReservationStore):
    """Process-local reservation counts."""

    def __init__(self) -> None:
        self._held: Dict[str, int] = defaultdict(int)
        self._lock = asyncio.Lock()

    async def hold(self, reservations: Sequence[StockReservation]) -> None:
        async with self._lock:
            for reservation in reservations:
                self._held[reservation.product_id] += reservation.quantity

    async def release(self, reservations: Sequence[StockReservation]) -> None:
        async with self._lock:
            for reservation in reservations:
                remaining = self._held.get(reservation.product_id, 0) - reservation.quantity
                if remaining > 0:
                    self._held[reservation.product_id] = remaining
                else:
                    self._held.pop(reservation.product_id, None)
        logger.debug("Released %d stock reservations", len(reservations))

    async def held_quantity(self, product_id: str) -> int:
        return self._held.get(product_id, 0)
