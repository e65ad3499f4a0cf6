"""
Cart Synchronizer

Keeps the local copy of a table cart consistent with the server.

Protocol:
    - add_item: write, then a forced full reload (no local merge)
    - update_quantity / remove_item / clear: optimistic local apply, then
      the write; on failure the touched lines are restored from the
      snapshot taken just before the optimistic change
    - reload: at most once per min_reload_interval unless forced; writes
      still in flight are laid over the loaded cart so a reload never
      undoes a pending optimistic change

Operations on the same item key are serialized; different keys run
concurrently. Errors become CartResult values plus a Notice, they are
never raised to the caller.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from tableside.core.exceptions import (
    LocalValidationError,
    OrderingError,
    TableNotBoundError,
)
from tableside.models import Notice, NoticeLevel, Notifier
from tableside.schemas import AddCartItemRequest, Cart, CartItem
from tableside.services.api.base import BaseOrderingAPI

logger = logging.getLogger(__name__)


@dataclass
class CartResult:
    """
    Outcome of a cart operation.

    Attributes:
        success: Whether the operation reached the server successfully
        cart: Local cart after the operation (including any rollback)
        error_message: Error description if the operation failed
        error_code: Envelope / taxonomy code of the failure
        rolled_back: An optimistic change was reverted
        skipped: A reload was refused by the rate limit
    """
    success: bool
    cart: Optional[Cart] = None
    error_message: Optional[str] = None
    error_code: Optional[int] = None
    rolled_back: bool = False
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "cart": self.cart.to_wire() if self.cart is not None else None,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "rolled_back": self.rolled_back,
            "skipped": self.skipped,
        }


class CartSynchronizer:
    """
    Optimistic cart client for one table.

    Example:
        >>> sync = CartSynchronizer(api)
        >>> sync.bind("tenant-1", "table-4")
        >>> await sync.reload(force=True)
        >>> result = await sync.update_quantity(key, 3)
        >>> if not result.success:
        ...     print(result.error_message)  # local cart already rolled back
    """

    def __init__(
        self,
        api: BaseOrderingAPI,
        min_reload_interval: float = 2.0,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api = api
        self.min_reload_interval = min_reload_interval
        self.notifier = notifier
        self.clock = clock

        self.tenant_id: Optional[str] = None
        self.table_id: Optional[str] = None
        self.last_error: Optional[OrderingError] = None

        self._cart = Cart()
        self._last_reload_at: Optional[float] = None
        self._key_locks: dict[str, asyncio.Lock] = {}
        # item_key -> quantity (None = removal) of writes still in flight
        self._pending: dict[str, Optional[int]] = {}
        self._clear_pending = False

    def bind(self, tenant_id: str, table_id: str) -> None:
        if (tenant_id, table_id) != (self.tenant_id, self.table_id):
            self._cart = Cart()
            self._last_reload_at = None
        self.tenant_id = tenant_id
        self.table_id = table_id

    @property
    def cart(self) -> Cart:
        return self._cart

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _require_table(self) -> tuple[str, str]:
        if not self.tenant_id or not self.table_id:
            raise TableNotBoundError()
        return self.tenant_id, self.table_id

    def _lock_for(self, item_key: str) -> asyncio.Lock:
        lock = self._key_locks.get(item_key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[item_key] = lock
        return lock

    def _notify(self, level: NoticeLevel, title: str, message: str) -> None:
        if self.notifier is not None:
            self.notifier(Notice(level=level, title=title, message=message))

    def _fail(self, error: OrderingError, title: str, rolled_back: bool = False) -> CartResult:
        self.last_error = error
        logger.warning(f"Cart: {title} - {error.message}")
        self._notify(NoticeLevel.ERROR, title, error.message)
        return CartResult(
            success=False,
            cart=self._cart,
            error_message=error.message,
            error_code=error.code,
            rolled_back=rolled_back,
        )

    def _apply_pending(self, cart: Cart) -> Cart:
        """Lay in-flight optimistic changes over a freshly loaded cart."""
        if self._clear_pending:
            return Cart()
        if not self._pending:
            return cart
        items = []
        for line in cart.items:
            if line.item_key in self._pending:
                quantity = self._pending[line.item_key]
                if quantity is None:
                    continue
                line = line.model_copy(update={"quantity": quantity, "total": None})
            items.append(line)
        return Cart(items=items)

    def _restore_line(self, snapshot: CartItem, index: int) -> None:
        items = [line for line in self._cart.items if line.item_key != snapshot.item_key]
        items.insert(min(index, len(items)), snapshot)
        self._cart = Cart(items=items)

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def reload(self, force: bool = False) -> CartResult:
        """Fetch the cart from the server, rate limited unless forced."""
        try:
            tenant_id, table_id = self._require_table()
        except LocalValidationError as e:
            return self._fail(e, "Cart unavailable")

        now = self.clock()
        if (
            not force
            and self._last_reload_at is not None
            and now - self._last_reload_at < self.min_reload_interval
        ):
            logger.debug("Cart: reload skipped (rate limited)")
            return CartResult(success=True, cart=self._cart, skipped=True)
        self._last_reload_at = now

        try:
            cart = await self.api.get_cart(tenant_id, table_id)
        except OrderingError as e:
            return self._fail(e, "Could not load cart")

        self._cart = self._apply_pending(cart)
        self.last_error = None
        if self._pending or self._clear_pending:
            logger.debug("Cart: reload kept in-flight optimistic changes")
        logger.debug(f"Cart: reloaded ({len(cart.items)} line(s), total {cart.total_price})")
        return CartResult(success=True, cart=cart)

    async def add_item(self, request: AddCartItemRequest) -> CartResult:
        try:
            tenant_id, table_id = self._require_table()
        except LocalValidationError as e:
            return self._fail(e, "Could not add item")

        async with self._lock_for(request.item_key):
            try:
                await self.api.add_cart_item(tenant_id, table_id, request)
            except OrderingError as e:
                return self._fail(e, "Could not add item")

        logger.info(f"Cart: added {request.quantity} x {request.name or request.menu_item_id}")
        return await self.reload(force=True)

    async def update_quantity(self, item_key: str, quantity: int) -> CartResult:
        if quantity < 1:
            return self._fail(
                LocalValidationError("Quantity must be at least 1"),
                "Could not update quantity",
            )
        try:
            tenant_id, table_id = self._require_table()
        except LocalValidationError as e:
            return self._fail(e, "Could not update quantity")

        async with self._lock_for(item_key):
            index = self._cart.index_of(item_key)
            if index < 0:
                return self._fail(
                    LocalValidationError(f"Item {item_key} is not in the cart"),
                    "Could not update quantity",
                )

            snapshot = self._cart.items[index].model_copy(deep=True)
            items = list(self._cart.items)
            items[index] = snapshot.model_copy(update={"quantity": quantity, "total": None})
            self._cart = Cart(items=items)

            self._pending[item_key] = quantity
            try:
                await self.api.update_cart_item(tenant_id, table_id, item_key, quantity)
            except OrderingError as e:
                self._restore_line(snapshot, index)
                return self._fail(e, "Could not update quantity", rolled_back=True)
            finally:
                self._pending.pop(item_key, None)

        self.last_error = None
        return CartResult(success=True, cart=self._cart)

    async def remove_item(self, item_key: str) -> CartResult:
        try:
            tenant_id, table_id = self._require_table()
        except LocalValidationError as e:
            return self._fail(e, "Could not remove item")

        async with self._lock_for(item_key):
            index = self._cart.index_of(item_key)
            if index < 0:
                return self._fail(
                    LocalValidationError(f"Item {item_key} is not in the cart"),
                    "Could not remove item",
                )

            snapshot = self._cart.items[index].model_copy(deep=True)
            self._cart = Cart(
                items=[line for line in self._cart.items if line.item_key != item_key]
            )

            self._pending[item_key] = None
            try:
                await self.api.remove_cart_item(tenant_id, table_id, item_key)
            except OrderingError as e:
                self._restore_line(snapshot, index)
                return self._fail(e, "Could not remove item", rolled_back=True)
            finally:
                self._pending.pop(item_key, None)

        self.last_error = None
        return CartResult(success=True, cart=self._cart)

    async def clear(self) -> CartResult:
        """Empty the whole cart (optimistic, whole-cart rollback)."""
        try:
            tenant_id, table_id = self._require_table()
        except LocalValidationError as e:
            return self._fail(e, "Could not clear cart")

        snapshot = self._cart.model_copy(deep=True)
        self._cart = Cart()
        self._clear_pending = True
        try:
            await self.api.clear_cart(tenant_id, table_id)
        except OrderingError as e:
            self._cart = snapshot
            return self._fail(e, "Could not clear cart", rolled_back=True)
        finally:
            self._clear_pending = False

        self.last_error = None
        return CartResult(success=True, cart=self._cart)

    def reset(self) -> None:
        """Forget local state (after checkout the server cart is empty)."""
        self._cart = Cart()
