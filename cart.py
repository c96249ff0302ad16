"""Till-side cart state.

The cart only drives display and the initial order request; the server
re-prices every order. Carts and lines are frozen so a caller holding an old
cart never sees it change.
"""
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


@dataclass(frozen=True)
class CartLine:
    product_id: str
    name: str
    price: int
    image_url: str
    quantity: int = 1


@dataclass(frozen=True)
class AddToCartItem:
    product_id: str
    name: str
    price: int
    image_url: str

    @classmethod
    def from_product(cls, product: Mapping[str, Any]) -> 'AddToCartItem':
        """Build from a ``GET /api/products`` entry."""
        return cls(
            product_id=str(product['id']),
            name=str(product.get('name') or ''),
            price=int(product.get('price') or 0),
            image_url=str(product.get('imageUrl') or ''),
        )


@dataclass(frozen=True)
class Cart:
    items: Tuple[CartLine, ...] = ()

    def __len__(self) -> int:
        return len(self.items)

    def line_for(self, product_id: str) -> Optional[CartLine]:
        for line in self.items:
            if line.product_id == product_id:
                return line
        return None


def add_to_cart(cart: Cart, new_item: Union[AddToCartItem, Mapping[str, Any]]) -> Cart:
    """Return a new cart with ``new_item`` added (or its quantity bumped by one)."""
    if not isinstance(new_item, AddToCartItem):
        new_item = AddToCartItem.from_product(new_item)
    lines = list(cart.items)
    for idx, line in enumerate(lines):
        if line.product_id == new_item.product_id:
            lines[idx] = replace(line, quantity=line.quantity + 1)
            break
    else:
        lines.append(CartLine(
            product_id=new_item.product_id,
            name=new_item.name,
            price=new_item.price,
            image_url=new_item.image_url,
            quantity=1,
        ))
    return Cart(items=tuple(lines))


def to_order_items(cart: Cart) -> List[Dict[str, Any]]:
    """Request body lines for ``POST /api/orders`` (no prices)."""
    return [{'productId': line.product_id, 'quantity': line.quantity} for line in cart.items]


def display_subtotal(cart: Cart) -> int:
    return sum(line.price * line.quantity for line in cart.items)


class CartStore:
    """Cart owned by one till session.

    ``add_to_cart`` is the only mutation; every call swaps in a new Cart so
    ``store.cart is previous`` works as change detection.
    """

    def __init__(self, cart: Optional[Cart] = None):
        self._cart = cart if cart is not None else Cart()

    @property
    def cart(self) -> Cart:
        return self._cart

    @property
    def items(self) -> Tuple[CartLine, ...]:
        return self._cart.items

    def add_to_cart(self, new_item: Union[AddToCartItem, Mapping[str, Any]]) -> Cart:
        self._cart = add_to_cart(self._cart, new_item)
        return self._cart
