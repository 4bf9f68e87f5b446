import logging
from typing import List, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session, joinedload

from storefront.errors import CartItemNotFoundError, ProductNotFoundError, StockLimitError
from storefront.models import CartItem, Order, OrderItem, OrderStatus, Product

logger = logging.getLogger(__name__)


def clear_cart(db: Session, user_id: str) -> None:
    """Delete every cart line of the user; the caller commits."""
    db.query(CartItem).filter(CartItem.user_id == user_id).delete(synchronize_session=False)


def _settle_completed_orders(db: Session, user_id: str) -> None:
    """Take already-paid lines out of the cart.

    Orders completed by a webhook never reach the verify call that empties
    the cart, so their quantities are subtracted here instead. Lines for
    products that were not part of the order are left alone.
    """
    pending_settlement = (
        db.query(Order.id)
        .filter(
            Order.user_id == user_id,
            Order.status == OrderStatus.COMPLETED.value,
            Order.cart_settled.is_(False),
        )
        .all()
    )
    if not pending_settlement:
        return

    for (order_id,) in pending_settlement:
        claimed = db.execute(
            update(Order)
            .where(Order.id == order_id, Order.cart_settled.is_(False))
            .values(cart_settled=True)
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        if not claimed:
            continue
        for item in db.query(OrderItem).filter(OrderItem.order_id == order_id).all():
            line = (
                db.query(CartItem)
                .filter(CartItem.user_id == user_id, CartItem.product_id == item.product_id)
                .first()
            )
            if line is None:
                continue
            if line.quantity <= item.quantity:
                db.delete(line)
            else:
                line.quantity -= item.quantity
        logger.info("settled cart of user %s against order %s", user_id, order_id)
    db.commit()


def list_cart(db: Session, user_id: str) -> List[CartItem]:
    _settle_completed_orders(db, user_id)
    return (
        db.query(CartItem)
        .options(joinedload(CartItem.product))
        .filter(CartItem.user_id == user_id)
        .order_by(CartItem.created_at)
        .all()
    )


def _get_product(db: Session, product_id: str) -> Product:
    product = db.get(Product, product_id)
    if product is None:
        raise ProductNotFoundError()
    return product


def add_to_cart(db: Session, user_id: str, product_id: str, quantity: int = 1) -> CartItem:
    product = _get_product(db, product_id)
    stock = product.stock_count or 0
    if stock <= 0:
        raise StockLimitError("Product is currently out of stock")

    line = (
        db.query(CartItem)
        .filter(CartItem.user_id == user_id, CartItem.product_id == product_id)
        .first()
    )
    wanted = quantity + (line.quantity if line else 0)
    if wanted > stock:
        raise StockLimitError()

    if line:
        line.quantity = wanted
    else:
        line = CartItem(user_id=user_id, product_id=product_id, quantity=quantity)
        db.add(line)
    db.commit()
    db.refresh(line)
    return line


def _owned_line(db: Session, user_id: str, item_id: str) -> CartItem:
    line = db.get(CartItem, item_id)
    if line is None or line.user_id != user_id:
        raise CartItemNotFoundError()
    return line


def update_cart_item(db: Session, user_id: str, item_id: str, quantity: int) -> CartItem:
    line = _owned_line(db, user_id, item_id)
    product = db.get(Product, line.product_id)
    if product is not None and quantity > (product.stock_count or 0):
        raise StockLimitError()
    line.quantity = quantity
    db.commit()
    db.refresh(line)
    return line


def remove_cart_item(db: Session, user_id: str, item_id: str) -> None:
    line = _owned_line(db, user_id, item_id)
    db.delete(line)
    db.commit()


def merge_cart(db: Session, user_id: str, items: List[Tuple[str, int]]) -> List[CartItem]:
    """Fold a guest cart into the user's cart after login.

    Unknown and sold-out products are skipped; each line is capped at what
    stock still allows on top of the quantity already in the cart.
    """
    for product_id, quantity in items:
        product = db.get(Product, product_id)
        if product is None or (product.stock_count or 0) <= 0:
            continue
        line = (
            db.query(CartItem)
            .filter(CartItem.user_id == user_id, CartItem.product_id == product_id)
            .first()
        )
        available = product.stock_count - (line.quantity if line else 0)
        to_add = min(available, quantity)
        if to_add <= 0:
            continue
        if line:
            line.quantity += to_add
        else:
            db.add(CartItem(user_id=user_id, product_id=product_id, quantity=to_add))
        db.flush()
    db.commit()
    return list_cart(db, user_id)
