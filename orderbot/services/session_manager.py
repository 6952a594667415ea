"""
Per-customer session and cart state machine.

States::

    IDLE -> DISAMBIGUATING -> PENDING_ITEM_CONFIRM -> CART_OPEN
         -> AWAITING_DELIVERY_CHOICE -> CLOSED | EXPIRED | CANCELLED

A session carries at most one pending item (disambiguation candidates, a
batch waiting for "si"/"no", or the delivery question) in a single slot, so
two pending states can never be active together.

All mutating operations are synchronous and must be called while holding the
customer's turn (``async with manager.turn(customer_id)``). The turn lock is
an ``asyncio.Lock`` per customer, which serves waiters in FIFO order.

Every mutation bumps ``generation`` and re-arms the customer's single expiry
task. The task takes the turn lock before expiring and gives up when the
generation moved on, so it never clobbers a newer turn.

A session that ends a turn empty and idle-like is dropped from the store. A
customer's lock is dropped once nobody holds or awaits it.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import StrEnum
from typing import AsyncIterator, Callable, Dict, List, Optional, Union

from ..models.catalog import Product
from ..models.orders import CartLine, DeliveryType
from .error_handling import CapacityError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_SECONDS = 15 * 60
DEFAULT_MAX_CANDIDATES = 10


class SessionState(StrEnum):
    IDLE = "IDLE"
    DISAMBIGUATING = "DISAMBIGUATING"
    PENDING_ITEM_CONFIRM = "PENDING_ITEM_CONFIRM"
    CART_OPEN = "CART_OPEN"
    AWAITING_DELIVERY_CHOICE = "AWAITING_DELIVERY_CHOICE"
    CLOSED = "CLOSED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


IDLE_LIKE_STATES = frozenset(
    {SessionState.IDLE, SessionState.CLOSED, SessionState.EXPIRED, SessionState.CANCELLED}
)


@dataclass
class Disambiguation:
    candidates: List[Product]
    quantity: int


@dataclass
class PendingConfirmation:
    lines: List[CartLine]


@dataclass
class PendingDelivery:
    requested_at: float


PendingSlot = Union[Disambiguation, PendingConfirmation, PendingDelivery]


@dataclass
class Session:
    customer_id: str
    state: SessionState = SessionState.IDLE
    lines: List[CartLine] = field(default_factory=list)
    pending: Optional[PendingSlot] = None
    expires_at: Optional[float] = None
    generation: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.lines and self.pending is None

    @property
    def resting_state(self) -> SessionState:
        return SessionState.CART_OPEN if self.lines else SessionState.IDLE

    @property
    def subtotal(self) -> int:
        return sum(line.subtotal for line in self.lines)

    @property
    def candidates(self) -> List[Product]:
        if isinstance(self.pending, Disambiguation):
            return list(self.pending.candidates)
        return []

    @property
    def pending_lines(self) -> List[CartLine]:
        if isinstance(self.pending, PendingConfirmation):
            return list(self.pending.lines)
        return []

    @property
    def pending_quantity(self) -> Optional[int]:
        if isinstance(self.pending, Disambiguation):
            return self.pending.quantity
        return None


class SessionManager:
    """Keyed store of customer sessions with FIFO turns and inactivity expiry."""

    def __init__(
        self,
        *,
        expiry_seconds: float = DEFAULT_EXPIRY_SECONDS,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
        clock: Callable[[], float] = time.monotonic,
        on_expire: Callable[[str], None] | None = None,
    ) -> None:
        self._expiry_seconds = expiry_seconds
        self._max_candidates = max_candidates
        self._clock = clock
        self._on_expire = on_expire
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._timers: Dict[str, asyncio.Task] = {}

    @property
    def expiry_seconds(self) -> float:
        return self._expiry_seconds

    def configure_expiry(self, minutes: float | None) -> None:
        if minutes and minutes > 0:
            self._expiry_seconds = minutes * 60

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------
    @asynccontextmanager
    async def turn(self, customer_id: str) -> AsyncIterator[Session]:
        """Serialize one customer's turn; yields a read-only snapshot of the session."""

        async with self._customer_lock(customer_id):
            session = self._sessions.get(customer_id)
            if session is not None and self._deadline_passed(session):
                self._expire_now(session)
            try:
                yield self.snapshot(customer_id)
            finally:
                self._discard_if_idle(customer_id)

    @asynccontextmanager
    async def _customer_lock(self, customer_id: str) -> AsyncIterator[None]:
        """Hold the customer's lock; the lock is dropped once nobody holds or awaits it."""

        lock = self._locks.setdefault(customer_id, asyncio.Lock())
        self._lock_users[customer_id] = self._lock_users.get(customer_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[customer_id] - 1
            if remaining:
                self._lock_users[customer_id] = remaining
            else:
                del self._lock_users[customer_id]
                self._locks.pop(customer_id, None)

    def snapshot(self, customer_id: str) -> Session:
        session = self._sessions.get(customer_id)
        if session is None:
            return Session(customer_id=customer_id)
        return copy.deepcopy(session)

    def state(self, customer_id: str) -> SessionState:
        session = self._sessions.get(customer_id)
        return session.state if session is not None else SessionState.IDLE

    def active_sessions(self) -> int:
        return sum(1 for session in self._sessions.values() if not session.is_empty)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def propose_products(self, customer_id: str, products: List[Product], quantity: int) -> Session:
        unique: Dict[str, Product] = {}
        for product in products:
            unique.setdefault(product.id, product)
        if not unique:
            raise NotFoundError("no products to propose", reason="product_not_found")
        quantity = max(1, quantity)

        session = self._ensure(customer_id)
        candidates = list(unique.values())
        if len(candidates) == 1:
            session.pending = PendingConfirmation(lines=[CartLine(product=candidates[0], quantity=quantity)])
            session.state = SessionState.PENDING_ITEM_CONFIRM
        else:
            session.pending = Disambiguation(candidates=candidates[: self._max_candidates], quantity=quantity)
            session.state = SessionState.DISAMBIGUATING
        self._touch(session)
        return copy.deepcopy(session)

    def pick_candidate(self, customer_id: str, index: int) -> CartLine:
        session = self._ensure(customer_id)
        if not isinstance(session.pending, Disambiguation):
            raise NotFoundError("no options to choose from", reason="nothing_pending")
        candidates = session.pending.candidates
        if index < 1 or index > len(candidates):
            raise NotFoundError(f"option {index} out of range", reason="invalid_option")
        line = CartLine(product=candidates[index - 1], quantity=session.pending.quantity)
        session.pending = PendingConfirmation(lines=[line])
        session.state = SessionState.PENDING_ITEM_CONFIRM
        self._touch(session)
        return line

    def cancel_disambiguation(self, customer_id: str) -> None:
        session = self._ensure(customer_id)
        if isinstance(session.pending, Disambiguation):
            session.pending = None
            session.state = session.resting_state
            self._touch(session)

    def confirm_pending(self, customer_id: str) -> List[CartLine]:
        """Move the pending batch into the cart, or reject all of it when any item is out of stock."""

        session = self._ensure(customer_id)
        if not isinstance(session.pending, PendingConfirmation):
            raise NotFoundError("nothing waiting for confirmation", reason="nothing_pending")
        batch = session.pending.lines
        session.pending = None
        out_of_stock = [line.product for line in batch if not line.product.in_stock]
        if out_of_stock:
            session.state = session.resting_state
            self._touch(session)
            raise CapacityError(
                "pending batch has products without stock",
                reason="out_of_stock",
                products=out_of_stock,
            )
        session.lines.extend(batch)
        session.state = SessionState.CART_OPEN
        self._touch(session)
        logger.info("Cart of %s now has %d line(s)", customer_id, len(session.lines))
        return list(batch)

    def reject_pending(self, customer_id: str) -> None:
        session = self._ensure(customer_id)
        if isinstance(session.pending, PendingConfirmation):
            session.pending = None
            session.state = session.resting_state
            self._touch(session)

    def request_checkout(self, customer_id: str, *, delivery_enabled: bool) -> List[CartLine]:
        """
        Start closing the cart.

        With delivery enabled the session waits for the "1"/"2" answer;
        otherwise it stays ``CART_OPEN`` and the caller finalizes right away
        and then calls ``mark_closed``.
        """
        session = self._ensure(customer_id)
        if not session.lines:
            raise NotFoundError("cart is empty", reason="empty_cart")
        if delivery_enabled:
            session.pending = PendingDelivery(requested_at=self._clock())
            session.state = SessionState.AWAITING_DELIVERY_CHOICE
        else:
            session.pending = None
            session.state = SessionState.CART_OPEN
        self._touch(session)
        return list(session.lines)

    def choose_delivery(self, customer_id: str, option: str) -> DeliveryType:
        session = self._ensure(customer_id)
        if not isinstance(session.pending, PendingDelivery):
            raise NotFoundError("no delivery question pending", reason="nothing_pending")
        option = (option or "").strip()
        if option == "1":
            delivery_type = DeliveryType.PICKUP
        elif option == "2":
            delivery_type = DeliveryType.DELIVERY
        else:
            raise ValidationError(f"invalid delivery option {option!r}", reason="invalid_delivery_option")
        # Finalizing happens next; a failed save must leave a retryable open cart.
        session.pending = None
        session.state = SessionState.CART_OPEN
        self._touch(session)
        return delivery_type

    def mark_closed(self, customer_id: str) -> None:
        session = self._ensure(customer_id)
        self._teardown(session, SessionState.CLOSED)

    def clear(self, customer_id: str) -> bool:
        """Drop the cart and anything pending. Returns False when there was nothing to drop."""

        session = self._sessions.get(customer_id)
        if session is None or session.is_empty:
            return False
        self._teardown(session, SessionState.CANCELLED)
        logger.info("Cart of %s cancelled", customer_id)
        return True

    def remove_line(self, customer_id: str, index: int) -> CartLine:
        session = self._ensure(customer_id)
        if not session.lines:
            raise NotFoundError("cart is empty", reason="empty_cart")
        if index < 1 or index > len(session.lines):
            raise NotFoundError(f"line {index} out of range", reason="invalid_index")
        removed = session.lines.pop(index - 1)
        if isinstance(session.pending, PendingDelivery):
            session.pending = None
        if session.pending is None:
            session.state = session.resting_state
        if session.is_empty:
            self._teardown(session, SessionState.IDLE)
        else:
            self._touch(session)
        return removed

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------
    def _deadline_passed(self, session: Session) -> bool:
        return (
            not session.is_empty
            and session.expires_at is not None
            and self._clock() >= session.expires_at
        )

    def _touch(self, session: Session) -> None:
        session.generation += 1
        session.expires_at = self._clock() + self._expiry_seconds
        self._cancel_timer(session.customer_id)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller): the deadline is still checked when the next turn starts.
            return
        self._timers[session.customer_id] = loop.create_task(
            self._expire_later(session.customer_id, session.generation, self._expiry_seconds),
            name=f"cart-expiry:{session.customer_id}",
        )

    async def _expire_later(self, customer_id: str, generation: int, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._customer_lock(customer_id):
            session = self._sessions.get(customer_id)
            if session is None or session.generation != generation or session.is_empty:
                return
            self._timers.pop(customer_id, None)
            self._expire_now(session)
            self._discard_if_idle(customer_id)

    def _expire_now(self, session: Session) -> None:
        logger.info(
            "Session of %s expired with %d line(s) in state %s",
            session.customer_id,
            len(session.lines),
            session.state,
        )
        self._teardown(session, SessionState.EXPIRED)
        if self._on_expire is not None:
            self._on_expire(session.customer_id)

    def _teardown(self, session: Session, final_state: SessionState) -> None:
        session.lines.clear()
        session.pending = None
        session.state = final_state
        session.expires_at = None
        session.generation += 1
        self._cancel_timer(session.customer_id)

    def _discard_if_idle(self, customer_id: str) -> None:
        session = self._sessions.get(customer_id)
        if session is not None and session.is_empty and session.state in IDLE_LIKE_STATES:
            del self._sessions[customer_id]
            self._cancel_timer(customer_id)

    def _cancel_timer(self, customer_id: str) -> None:
        task = self._timers.pop(customer_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def shutdown(self) -> None:
        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _ensure(self, customer_id: str) -> Session:
        session = self._sessions.get(customer_id)
        if session is None:
            session = Session(customer_id=customer_id)
            self._sessions[customer_id] = session
        elif session.state in IDLE_LIKE_STATES and session.is_empty:
            session.state = SessionState.IDLE
        return session
