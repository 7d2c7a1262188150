"""
Cart Reconciliation Engine
==========================
Client-resident cart that gives the shopper one consistent view whether
or not they are signed in.

Every mutation is a small state machine:

    pending -> applied -> synced          (server accepted)
    pending -> applied -> rolled_back     (server call failed)
    pending -> applied -> persisted       (guest: written to local storage)

The inverse of a mutation is captured before it is applied, so a rollback
restores exactly the lines that mutation touched. Mutations run one at a
time; the optimistic view is never more than one failed round-trip away
from what the server holds.

On login the server cart is authoritative. A non-empty guest cart is
pushed with one bulk sync when the server cart is empty; otherwise it is
discarded (``MergePolicy.DISCARD``) or summed into the server cart
(``MergePolicy.SUM``). Either way the local copy is cleared once the
server has it, which makes a second login a no-op.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from client.api_client import CartApiClient
from client.local_storage import LocalCartStorage
from client.session import SessionContext
from errors import CartSyncError, InsufficientStockError, ValidationError
from schemas.base import utcnow
from schemas.carts import MAX_LINE_QUANTITY, Cart, CartItem, SyncLine
from schemas.products import PLACEHOLDER_IMAGE, Product

logger = structlog.get_logger().bind(component="cart_engine")


class MutationState(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    SYNCED = "synced"
    ROLLED_BACK = "rolled_back"
    PERSISTED = "persisted"


MUTATION_TRANSITIONS = {
    MutationState.PENDING: {MutationState.APPLIED},
    MutationState.APPLIED: {MutationState.SYNCED, MutationState.ROLLED_BACK, MutationState.PERSISTED},
    MutationState.SYNCED: set(),
    MutationState.ROLLED_BACK: set(),
    MutationState.PERSISTED: set(),
}


class MergePolicy(str, Enum):
    DISCARD = "discard"   # non-empty server cart wins, guest lines dropped
    SUM = "sum"           # guest quantities added to server lines


# =============================================================================
# MUTATIONS
# =============================================================================

@dataclass
class CartMutation:
    """One optimistic change and its exact inverse"""

    kind: str
    product_id: Optional[str]
    forward: Callable[[list[CartItem]], list[CartItem]]
    inverse: Callable[[list[CartItem]], list[CartItem]]
    state: MutationState = MutationState.PENDING
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def advance(self, state: MutationState, error: Optional[str] = None):
        if state not in MUTATION_TRANSITIONS[self.state]:
            raise RuntimeError(f"Mutation cannot move from {self.state.value} to {state.value}")
        self.state = state
        self.error = error

    @classmethod
    def add(cls, items: list[CartItem], line: CartItem) -> "CartMutation":
        index = next((i for i, item in enumerate(items) if item.product_id == line.product_id), -1)
        if index == -1:
            return cls(
                kind="add",
                product_id=line.product_id,
                forward=lambda current: current + [line],
                inverse=lambda current: [i for i in current if i.product_id != line.product_id],
            )
        prior = items[index]
        grown = prior.model_copy(update={"quantity": prior.quantity + line.quantity})
        return cls(
            kind="add",
            product_id=line.product_id,
            forward=lambda current: _swap(current, grown),
            inverse=lambda current: _swap(current, prior),
        )

    @classmethod
    def remove(cls, items: list[CartItem], product_id: str) -> "CartMutation":
        index = next((i for i, item in enumerate(items) if item.product_id == product_id), -1)
        if index == -1:
            raise ValidationError("Item not found in cart", {"productId": product_id})
        prior = items[index]

        def reinsert(current: list[CartItem]) -> list[CartItem]:
            current = list(current)
            current.insert(min(index, len(current)), prior)
            return current

        return cls(
            kind="remove",
            product_id=product_id,
            forward=lambda current: [i for i in current if i.product_id != product_id],
            inverse=reinsert,
        )

    @classmethod
    def set_quantity(cls, items: list[CartItem], product_id: str, quantity: int) -> "CartMutation":
        index = next((i for i, item in enumerate(items) if item.product_id == product_id), -1)
        if index == -1:
            raise ValidationError("Item not found in cart", {"productId": product_id})
        prior = items[index]
        changed = prior.model_copy(update={"quantity": quantity})
        return cls(
            kind="set_quantity",
            product_id=product_id,
            forward=lambda current: _swap(current, changed),
            inverse=lambda current: _swap(current, prior),
        )

    @classmethod
    def clear(cls, items: list[CartItem]) -> "CartMutation":
        prior = list(items)
        return cls(
            kind="clear",
            product_id=None,
            forward=lambda current: [],
            inverse=lambda current: list(prior),
        )


def _swap(items: list[CartItem], line: CartItem) -> list[CartItem]:
    """Put ``line`` in place of the line for the same product, or append it."""
    for i, item in enumerate(items):
        if item.product_id == line.product_id:
            return items[:i] + [line] + items[i + 1:]
    return list(items) + [line]


# =============================================================================
# ENGINE
# =============================================================================

class CartEngine:
    """
    Optimistic cart with server reconciliation.

    Example:
        engine = CartEngine(CartApiClient(base_url), JsonFileCartStorage(path))
        await engine.add(product)                 # guest: stored locally
        await engine.login(SessionContext(token, user_id))
        engine.cart.total                          # derived from items
    """

    def __init__(
        self,
        api: CartApiClient,
        storage: LocalCartStorage,
        session: Optional[SessionContext] = None,
        merge_policy: MergePolicy = MergePolicy.DISCARD,
        history_size: int = 50,
    ):
        self.api = api
        self.storage = storage
        self.session = session or SessionContext.guest()
        self.api.session = self.session
        self.merge_policy = merge_policy
        self.cart = Cart()
        self.last_synced: Optional[datetime] = None
        self.error: Optional[str] = None
        self.history: deque[CartMutation] = deque(maxlen=history_size)
        self._lock = asyncio.Lock()

    @property
    def total(self) -> float:
        return self.cart.total

    @property
    def item_count(self) -> int:
        return self.cart.item_count

    @property
    def items(self) -> list[CartItem]:
        return list(self.cart.items)

    def _set_items(self, items: list[CartItem]):
        self.cart = self.cart.model_copy(update={"items": items, "updated_at": utcnow()})

    # =========================================================================
    # MUTATION PIPELINE
    # =========================================================================

    async def _run(
        self,
        mutation: CartMutation,
        server_call: Callable[[], Awaitable[Cart]],
    ) -> CartMutation:
        self._set_items(mutation.forward(self.cart.items))
        mutation.advance(MutationState.APPLIED)
        self.history.append(mutation)

        if not self.session.is_authenticated:
            self.storage.save(self.cart)
            mutation.advance(MutationState.PERSISTED)
            return mutation

        try:
            await server_call()
        except BaseException as e:
            # Cancellation and unexpected errors roll back too, then propagate
            message = e.message if isinstance(e, CartSyncError) else (str(e) or type(e).__name__)
            self._set_items(mutation.inverse(self.cart.items))
            mutation.advance(MutationState.ROLLED_BACK, error=message)
            self.error = message
            logger.warning("cart_mutation_rolled_back",
                           kind=mutation.kind, product_id=mutation.product_id, error=message)
            raise

        mutation.advance(MutationState.SYNCED)
        self.last_synced = utcnow()
        self.error = None
        return mutation

    async def add(self, product: Product, quantity: int = 1) -> CartMutation:
        if quantity < 1 or quantity > MAX_LINE_QUANTITY:
            raise ValidationError(
                f"Quantity must be between 1 and {MAX_LINE_QUANTITY}", {"quantity": quantity}
            )
        async with self._lock:
            existing = self.cart.find(product.id)
            wanted = quantity + (existing.quantity if existing else 0)
            if wanted > product.stock_quantity:
                raise InsufficientStockError(
                    product.id, product.stock_quantity, wanted,
                    message=f"Only {product.stock_quantity} items available in stock",
                )
            line = CartItem(
                product_id=product.id,
                quantity=quantity,
                price=product.price,
                name=product.name,
                image=product.display_image(PLACEHOLDER_IMAGE),
            )
            mutation = CartMutation.add(self.cart.items, line)
            return await self._run(mutation, lambda: self.api.add(product.id, quantity))

    async def remove(self, product_id: str) -> CartMutation:
        async with self._lock:
            mutation = CartMutation.remove(self.cart.items, product_id)
            return await self._run(mutation, lambda: self.api.remove(product_id))

    async def set_quantity(self, product_id: str, quantity: int) -> CartMutation:
        if quantity < 1:
            return await self.remove(product_id)
        if quantity > MAX_LINE_QUANTITY:
            raise ValidationError(
                f"Quantity must be between 1 and {MAX_LINE_QUANTITY}", {"quantity": quantity}
            )
        async with self._lock:
            mutation = CartMutation.set_quantity(self.cart.items, product_id, quantity)
            return await self._run(mutation, lambda: self.api.update(product_id, quantity))

    async def clear(self) -> CartMutation:
        async with self._lock:
            mutation = CartMutation.clear(self.cart.items)
            return await self._run(mutation, self.api.clear)

    # =========================================================================
    # SESSION CHANGES
    # =========================================================================

    async def load(self) -> Cart:
        """Load the cart for the current session, merging a guest cart on login."""
        async with self._lock:
            if not self.session.is_authenticated:
                self.cart = self.storage.load()
                return self.cart
            return await self._merge_on_login()

    async def login(self, session: SessionContext) -> Cart:
        self.session = session
        self.api.session = session
        return await self.load()

    async def logout(self) -> Cart:
        self.session = SessionContext.guest()
        self.api.session = self.session
        self.last_synced = None
        return await self.load()

    async def refresh(self) -> Cart:
        """Reload the server cart (authenticated sessions only)."""
        if not self.session.is_authenticated:
            return self.cart
        async with self._lock:
            try:
                self.cart = await self.api.get_cart()
            except CartSyncError as e:
                self.error = e.message
                raise
            self.last_synced = utcnow()
            self.error = None
            return self.cart

    async def _merge_on_login(self) -> Cart:
        local = self.storage.load()
        log = logger.bind(user_id=self.session.user_id, policy=self.merge_policy.value)

        try:
            server = await self.api.get_cart()
        except CartSyncError as e:
            log.warning("server_cart_unavailable_using_local", error=e.message)
            self.error = e.message
            self.cart = local
            return self.cart

        self.cart = server
        self.last_synced = utcnow()
        self.error = None
        if local.is_empty:
            return self.cart

        if not server.is_empty and self.merge_policy == MergePolicy.DISCARD:
            log.info("guest_cart_discarded",
                     guest_items=len(local.items), server_items=len(server.items))
            self.storage.clear()
            return self.cart

        lines = merge_lines(server, local)
        try:
            self.cart = await self.api.sync(lines)
        except CartSyncError as e:
            # Local copy is kept so the next login can try again
            log.warning("guest_cart_merge_failed", error=e.message)
            self.error = e.message
            return self.cart

        self.storage.clear()
        self.last_synced = utcnow()
        log.info("guest_cart_merged", lines=len(lines), item_count=self.cart.item_count)
        return self.cart


def merge_lines(server: Cart, local: Cart) -> list[SyncLine]:
    """Sum quantities per product across both carts, server lines first."""
    quantities: dict[str, int] = {}
    for item in list(server.items) + list(local.items):
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity
    return [
        SyncLine(product_id=product_id, quantity=min(quantity, MAX_LINE_QUANTITY))
        for product_id, quantity in quantities.items()
    ]
