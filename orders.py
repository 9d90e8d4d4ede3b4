"""
Order assembly and lifecycle.

An Order copies its lines out of a cart snapshot at creation and keeps
its own total from then on. Only status and payment_status ever change,
and only along the edges below.
"""
import logging
from typing import Callable, Iterable, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from cart import CartState, CartStore
from database import ensure_object_id, get_documents, to_document, to_str_id, utcnow
from errors import InvalidTransition, NotFoundError, UpstreamError, ValidationError
from roles import Role, has_access
from schemas import Identity, LineItem, Order, OrderLine, OrderStatus, PaymentStatus, ShippingAddress

logger = logging.getLogger(__name__)

COLLECTION = "order"

ORDER_TRANSITIONS = {
    OrderStatus.pending: {OrderStatus.processing, OrderStatus.cancelled},
    OrderStatus.processing: {OrderStatus.shipped, OrderStatus.cancelled},
    OrderStatus.shipped: {OrderStatus.delivered},
    OrderStatus.delivered: set(),
    OrderStatus.cancelled: set(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.pending: {PaymentStatus.paid, PaymentStatus.failed},
    PaymentStatus.failed: {PaymentStatus.paid},
    PaymentStatus.paid: {PaymentStatus.refunded},
    PaymentStatus.refunded: set(),
}

CartSnapshot = Union[CartState, CartStore, Iterable[LineItem]]


def _coerce(enum_cls, value, label):
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidTransition(f"Unknown {label} '{value}'")


def advance_status(order: Order, new_status) -> Order:
    new_status = _coerce(OrderStatus, new_status, "order status")
    if new_status not in ORDER_TRANSITIONS[order.status]:
        raise InvalidTransition(f"Cannot move order from {order.status.value} to {new_status.value}")
    return order.model_copy(update={"status": new_status, "updated_at": utcnow()})


def advance_payment_status(order: Order, new_status) -> Order:
    new_status = _coerce(PaymentStatus, new_status, "payment status")
    if new_status not in PAYMENT_TRANSITIONS[order.payment_status]:
        raise InvalidTransition(
            f"Cannot move payment from {order.payment_status.value} to {new_status.value}"
        )
    return order.model_copy(update={"payment_status": new_status, "updated_at": utcnow()})


def _snapshot_items(cart_snapshot: CartSnapshot):
    if isinstance(cart_snapshot, CartStore):
        return cart_snapshot.snapshot().items
    if isinstance(cart_snapshot, CartState):
        return cart_snapshot.items
    return tuple(cart_snapshot or ())


class OrderAssembler:
    """Turns a finalized cart into an Order.

    The order starts with payment_status=pending; the caller marks it paid
    in a separate write once the order is stored and the gateway has
    authorized the charge.
    """

    def __init__(self, clock: Optional[Callable] = None):
        self.clock = clock or utcnow

    def create_order(
        self,
        cart_snapshot: CartSnapshot,
        shipping_address,
        payment_method_ref: str,
        user_id: Optional[str] = None,
    ) -> Order:
        lines = tuple(
            OrderLine(
                product_id=item.product_id,
                name=item.name,
                unit_price_minor_units=item.unit_price_minor_units,
                quantity=item.quantity,
                variant_label=item.variant_label,
            )
            for item in _snapshot_items(cart_snapshot)
            if item.quantity > 0
        )
        if not lines:
            raise ValidationError("Cart is empty")

        if isinstance(shipping_address, ShippingAddress):
            address = shipping_address
        else:
            if not isinstance(shipping_address, dict):
                raise ValidationError("Shipping address is required")
            try:
                address = ShippingAddress(**shipping_address)
            except PydanticValidationError as e:
                fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
                raise ValidationError(f"Invalid shipping address: {', '.join(fields)}") from e

        if not payment_method_ref:
            raise ValidationError("Payment method is required")

        return Order(
            user_id=user_id,
            lines=lines,
            total_minor_units=sum(line.unit_price_minor_units * line.quantity for line in lines),
            status=OrderStatus.pending,
            payment_status=PaymentStatus.pending,
            payment_method=payment_method_ref,
            shipping_address=address,
            created_at=self.clock(),
        )


def order_from_document(doc: dict) -> Order:
    d = to_str_id(doc)
    return Order(**{k: v for k, v in d.items() if k in Order.model_fields})


class OrderRepository:
    def __init__(self, db):
        self.db = db

    def insert(self, order: Order) -> Order:
        try:
            inserted_id = self.db[COLLECTION].insert_one(to_document(order)).inserted_id
        except PyMongoError as e:
            raise UpstreamError(f"Order could not be stored: {e}") from e
        return order.model_copy(update={"id": str(inserted_id)})

    def get(self, order_id: str) -> Order:
        doc = self.db[COLLECTION].find_one({"_id": ensure_object_id(order_id, "Order")})
        if not doc:
            raise NotFoundError("Order not found")
        return order_from_document(doc)

    def get_for(self, caller: Identity, order_id: str) -> Order:
        order = self.get(order_id)
        if not has_access(caller.role, Role.admin) and order.user_id != caller.user_id:
            # other people's orders are indistinguishable from missing ones
            raise NotFoundError("Order not found")
        return order

    def list_for(self, caller: Identity, status: Optional[str] = None, limit: int = 50):
        query = {}
        if not has_access(caller.role, Role.admin):
            query["user_id"] = caller.user_id
        if status:
            query["status"] = status
        docs = get_documents(self.db, COLLECTION, query, limit=limit, sort=[("created_at", -1)])
        return [order_from_document(d) for d in docs]

    def _write(self, before: Order, after: Order, field: str) -> Order:
        old, new = getattr(before, field), getattr(after, field)
        oid = ensure_object_id(before.id, "Order")
        try:
            # only applies if nobody moved the field since it was read
            doc = self.db[COLLECTION].find_one_and_update(
                {"_id": oid, field: old.value},
                {"$set": {field: new.value, "updated_at": after.updated_at}},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise UpstreamError(f"Order could not be updated: {e}") from e
        if doc is None:
            if self.db[COLLECTION].count_documents({"_id": oid}) == 0:
                raise NotFoundError("Order not found")
            raise InvalidTransition(f"Order {before.id} {field} changed concurrently; expected {old.value}")
        logger.info("Order %s %s -> %s", before.id, field, new.value)
        return order_from_document(doc)

    def update_status(self, order_id: str, new_status) -> Order:
        order = self.get(order_id)
        return self._write(order, advance_status(order, new_status), "status")

    def update_payment_status(self, order_id: str, new_status) -> Order:
        order = self.get(order_id)
        return self._write(order, advance_payment_status(order, new_status), "payment_status")


class PaymentGateway:
    """Server-side handle on the payment provider.

    No provider is wired in here, so nothing is ever authorized and orders
    stay pending until an admin records the payment.
    """

    def authorize(self, payment_method: str, total_minor_units: int) -> bool:
        return False
