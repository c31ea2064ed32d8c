"""
Per-user shopping cart.

Cart lines keep a snapshot of the product's price, title and image, taken
from the catalog each time the line is added to. The cart repository
recomputes ``total`` on every save.
"""
from typing import Optional

from errors import InvalidInput, NotFound
from schemas import Cart, CartItem


class CartService:
    def __init__(self, products, carts):
        self.products = products
        self.carts = carts

    def get(self, user_id: str) -> Cart:
        return self.carts.get(user_id) or Cart(user_id=user_id)

    def _find_line(self, cart: Cart, product_id: str) -> Optional[CartItem]:
        return next((i for i in cart.items if i.product_id == product_id), None)

    def add(self, user_id: str, product_id: str, qty: int) -> Cart:
        if not product_id:
            raise InvalidInput("Product ID is required")
        if qty < 1:
            raise InvalidInput("Quantity must be a positive integer")

        product = self.products.find_by_id(product_id)
        if product is None:
            raise NotFound("Product not found")
        if not product.is_active:
            raise InvalidInput("Product is not available")
        if product.stock < qty:
            raise InvalidInput(f"Only {product.stock} items available in stock")

        cart = self.get(user_id)
        line = self._find_line(cart, product_id)
        if line is None:
            cart.items.append(
                CartItem(product_id=product_id, qty=qty, price=product.price, title=product.title, image=product.image)
            )
        else:
            new_qty = line.qty + qty
            if new_qty > product.stock:
                raise InvalidInput(f"Cannot add {qty} more. Only {product.stock} items available in stock")
            line.qty = new_qty
            line.price = product.price
            line.title = product.title
            line.image = product.image
        return self.carts.save(cart)

    def update(self, user_id: str, product_id: str, qty: int) -> Cart:
        """Set a line's quantity; zero or less removes the line."""
        cart = self.carts.get(user_id)
        line = self._find_line(cart, product_id) if cart else None
        if line is None:
            raise NotFound("Item not found in cart")

        if qty <= 0:
            cart.items.remove(line)
            return self.carts.save(cart)

        product = self.products.find_by_id(product_id)
        if product is None or not product.is_active:
            raise InvalidInput("Product is not available")
        if qty > product.stock:
            raise InvalidInput(f"Only {product.stock} items available in stock")
        line.qty = qty
        line.price = product.price
        return self.carts.save(cart)

    def remove(self, user_id: str, product_id: str) -> Cart:
        cart = self.carts.get(user_id)
        line = self._find_line(cart, product_id) if cart else None
        if line is None:
            raise NotFound("Item not found in cart")
        cart.items.remove(line)
        return self.carts.save(cart)

    def clear(self, user_id: str) -> Cart:
        self.carts.clear(user_id)
        return Cart(user_id=user_id)
