"""
Client cart state machine.

Every transition returns a fresh CartState whose total is recomputed from
its items. Transitions never raise: unknown keys and malformed actions
leave the state as it was.
"""
from typing import Iterable, List, NamedTuple, Optional, Tuple

from schemas import LineItem


class CartState(NamedTuple):
    items: Tuple[LineItem, ...] = ()
    total: int = 0
    is_open: bool = False


class AddItem(NamedTuple):
    item: LineItem


class RemoveItem(NamedTuple):
    product_id: str
    variant_label: str


class UpdateQuantity(NamedTuple):
    product_id: str
    variant_label: str
    quantity: int


class ToggleOpen(NamedTuple):
    pass


class Clear(NamedTuple):
    pass


class ReplaceAll(NamedTuple):
    items: Tuple[LineItem, ...]


def compute_total(items: Iterable[LineItem]) -> int:
    return sum(item.unit_price_minor_units * item.quantity for item in items)


def _with_items(state: CartState, items) -> CartState:
    items = tuple(items)
    return CartState(items=items, total=compute_total(items), is_open=state.is_open)


def _matches(item: LineItem, product_id, variant_label) -> bool:
    return item.product_id == product_id and item.variant_label == variant_label


def cart_reducer(state: CartState, action) -> CartState:
    if isinstance(action, AddItem):
        new = action.item
        if not isinstance(new, LineItem):
            return state
        if any(_matches(i, new.product_id, new.variant_label) for i in state.items):
            # fresher display data wins; quantities add up
            items = [
                new.model_copy(update={"quantity": i.quantity + new.quantity})
                if _matches(i, new.product_id, new.variant_label) else i
                for i in state.items
            ]
        else:
            items = list(state.items) + [new]
        return _with_items(state, items)

    if isinstance(action, RemoveItem):
        items = [i for i in state.items if not _matches(i, action.product_id, action.variant_label)]
        if len(items) == len(state.items):
            return state
        return _with_items(state, items)

    if isinstance(action, UpdateQuantity):
        try:
            quantity = max(0, int(action.quantity))
        except (TypeError, ValueError):
            return state
        items = [
            i.model_copy(update={"quantity": quantity})
            if _matches(i, action.product_id, action.variant_label) else i
            for i in state.items
        ]
        return _with_items(state, items)

    if isinstance(action, ToggleOpen):
        return state._replace(is_open=not state.is_open)

    if isinstance(action, Clear):
        return CartState(items=(), total=0, is_open=state.is_open)

    if isinstance(action, ReplaceAll):
        items = [i for i in (action.items or ()) if isinstance(i, LineItem)]
        return _with_items(state, items)

    return state


class CartStore:
    """Holds one cart's state. Build one per session; nothing here is global."""

    def __init__(self, state: Optional[CartState] = None):
        self.state = state or CartState()

    def dispatch(self, action) -> CartState:
        self.state = cart_reducer(self.state, action)
        return self.state

    @property
    def items(self) -> List[LineItem]:
        return list(self.state.items)

    @property
    def total(self) -> int:
        return self.state.total

    @property
    def is_open(self) -> bool:
        return self.state.is_open

    def get(self, product_id: str, variant_label: str) -> Optional[LineItem]:
        return next((i for i in self.state.items if _matches(i, product_id, variant_label)), None)

    def add_item(self, item: LineItem) -> CartState:
        return self.dispatch(AddItem(item))

    def remove_item(self, product_id: str, variant_label: str) -> CartState:
        return self.dispatch(RemoveItem(product_id, variant_label))

    def update_quantity(self, product_id: str, variant_label: str, quantity: int) -> CartState:
        return self.dispatch(UpdateQuantity(product_id, variant_label, quantity))

    def toggle_open(self) -> CartState:
        return self.dispatch(ToggleOpen())

    def clear(self) -> CartState:
        return self.dispatch(Clear())

    def replace_all(self, items: Iterable[LineItem]) -> CartState:
        return self.dispatch(ReplaceAll(tuple(items or ())))

    def snapshot(self) -> CartState:
        return self.state
