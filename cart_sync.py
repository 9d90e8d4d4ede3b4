"""
Server-backed cart and the login/logout refresh of the in-memory CartStore.

The persisted cart is the `cart` array on the user document, keyed by
(product_id, variant). Sync is one-directional (server -> client) and
last-writer-wins: there is no version field to detect edits made from
another session while a refresh is in flight.
"""
import logging
from typing import List, Optional

from pymongo.errors import PyMongoError

from cart import CartStore
from catalog import Catalog
from database import ensure_object_id, utcnow
from errors import NotFoundError, UpstreamError, ValidationError
from schemas import CartEntry, Identity, LineItem

logger = logging.getLogger(__name__)


class CartRepository:
    def __init__(self, db):
        self.users = db["user"]

    def _load(self, user_id: str) -> dict:
        try:
            user = self.users.find_one({"_id": ensure_object_id(user_id, "User")}, {"cart": 1})
        except PyMongoError as e:
            raise UpstreamError(f"Cart unavailable: {e}") from e
        if user is None:
            raise NotFoundError("User not found")
        return user

    def _save(self, user_id: str, entries: List[CartEntry]):
        try:
            self.users.update_one(
                {"_id": ensure_object_id(user_id, "User")},
                {"$set": {"cart": [e.model_dump() for e in entries], "updated_at": utcnow()}},
            )
        except PyMongoError as e:
            raise UpstreamError(f"Cart unavailable: {e}") from e

    def get_entries(self, user_id: str) -> List[CartEntry]:
        return [CartEntry(**e) for e in self._load(user_id).get("cart") or []]

    def add_entry(self, user_id: str, product_id: str, variant: str, quantity: int = 1) -> List[CartEntry]:
        if not product_id or not variant:
            raise ValidationError("Product ID and variant are required")
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        entries = self.get_entries(user_id)
        for e in entries:
            if e.product_id == product_id and e.variant == variant:
                e.quantity += quantity
                break
        else:
            entries.append(CartEntry(product_id=product_id, variant=variant, quantity=quantity))
        self._save(user_id, entries)
        return entries

    def remove_entry(self, user_id: str, product_id: str, variant: str) -> List[CartEntry]:
        entries = [
            e for e in self.get_entries(user_id)
            if not (e.product_id == product_id and e.variant == variant)
        ]
        self._save(user_id, entries)
        return entries

    def clear(self, user_id: str):
        self._load(user_id)
        self._save(user_id, [])


class ServerCartSync:
    def __init__(self, store: CartStore, repository: CartRepository, catalog: Catalog):
        self.store = store
        self.repository = repository
        self.catalog = catalog
        self.identity: Optional[Identity] = None

    def _resolve(self, entry: CartEntry) -> LineItem:
        product = self.catalog.lookup(entry.product_id, entry.variant)
        return LineItem(
            product_id=entry.product_id,
            variant_label=entry.variant,
            name=product.name,
            unit_price_minor_units=product.unit_price_minor_units,
            quantity=entry.quantity,
            image_ref=product.image_ref,
        )

    def on_authenticated(self, user_id: str) -> List[LineItem]:
        """Replace the local cart with the caller's persisted one.

        Any repository or catalog failure leaves the local cart as it was.
        """
        try:
            items = [self._resolve(entry) for entry in self.repository.get_entries(user_id)]
        except (UpstreamError, NotFoundError, ValidationError):
            logger.warning("Cart sync failed for user %s; keeping local cart", user_id, exc_info=True)
            return self.store.items
        self.store.replace_all(items)
        return self.store.items

    def on_logout(self):
        # anonymous carts have nowhere to persist
        self.store.clear()

    def handle_identity(self, identity: Optional[Identity]) -> List[LineItem]:
        previous, self.identity = self.identity, identity
        if identity is not None and (previous is None or previous.user_id != identity.user_id):
            return self.on_authenticated(identity.user_id)
        if identity is None and previous is not None:
            self.on_logout()
        return self.store.items
