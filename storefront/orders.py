"""
Checkout and payment reconciliation.

An order moves ``pending -> completed`` or ``pending -> failed`` and never
leaves a terminal state. Completion can be reported twice (the buyer's
browser calls verification, the gateway delivers a webhook) in any order or
at the same time, so every transition is a compare-and-swap on the status
column and the stock reduction rides in the same transaction as the winning
swap.
"""
import json
import logging
import time
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import List, NamedTuple, Optional, Tuple

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from storefront import config
from storefront.cart import clear_cart
from storefront.errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidSignatureError,
    OrderAccessDenied,
    OrderNotFoundError,
    OrderStateError,
)
from storefront.gateway import RazorpayClient
from storefront.models import CartItem, Order, OrderItem, OrderStatus, Payment, Product

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class WebhookEvent(str, Enum):
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN


class CheckoutResult(NamedTuple):
    gateway_order_id: str
    amount: int  # minor units, as the gateway reports it
    currency: str
    key_id: str
    internal_order_id: str


def _order_by_intent(db: Session, payment_intent_id: str) -> Optional[Order]:
    return db.query(Order).filter(Order.payment_intent_id == payment_intent_id).first()


def create_order(db: Session, gateway: RazorpayClient, user_id: str) -> CheckoutResult:
    lines = (
        db.query(CartItem)
        .options(joinedload(CartItem.product))
        .filter(CartItem.user_id == user_id)
        .order_by(CartItem.created_at)
        .all()
    )
    if not lines:
        raise EmptyCartError()

    # Availability is only checked here; stock moves when the order completes.
    for line in lines:
        if (line.product.stock_count or 0) < line.quantity:
            raise InsufficientStockError(line.product.title)

    total = sum(
        (Decimal(line.product.price) * line.quantity for line in lines),
        Decimal("0"),
    ).quantize(CENT, rounding=ROUND_HALF_UP)

    remote = gateway.create_order(
        amount=int(total * 100),
        currency=config.PAYMENT_CURRENCY,
        receipt=f"order_{int(time.time() * 1000)}",
        notes={"userId": user_id},
    )

    order = Order(
        user_id=user_id,
        total_amount=total,
        status=OrderStatus.PENDING.value,
        payment_intent_id=remote.id,
    )
    order.items = [
        OrderItem(product_id=line.product_id, price=line.product.price, quantity=line.quantity)
        for line in lines
    ]
    try:
        db.add(order)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("failed to persist order for gateway order %s", remote.id)
        raise
    db.refresh(order)

    logger.info("order %s created for user %s (gateway order %s, total %s)",
                order.id, user_id, remote.id, total)
    return CheckoutResult(
        gateway_order_id=remote.id,
        amount=remote.amount,
        currency=remote.currency,
        key_id=gateway.key_id,
        internal_order_id=order.id,
    )


def _swap_status(db: Session, order_id: str, new_status: OrderStatus) -> bool:
    result = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == OrderStatus.PENDING.value)
        .values(status=new_status.value)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def reduce_stock_for_order(db: Session, order_id: str) -> bool:
    """Take the order's quantities out of stock, at most once per order.

    Runs inside the caller's transaction; the caller commits. Returns False
    when the reduction had already been applied.
    """
    claimed = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.stock_reduced.is_(False))
        .values(stock_reduced=True)
        .execution_options(synchronize_session=False)
    ).rowcount == 1
    if not claimed:
        return False

    items = db.query(OrderItem).filter(OrderItem.order_id == order_id).all()
    for item in items:
        qty = item.quantity
        db.execute(
            update(Product)
            .where(Product.id == item.product_id)
            .values(
                stock_count=case((Product.stock_count > qty, Product.stock_count - qty), else_=0),
                downloads=Product.downloads + qty,
            )
            .execution_options(synchronize_session=False)
        )
    return True


def complete_order(db: Session, order_id: str) -> bool:
    """Move a pending order to completed and reduce stock.

    Returns True only for the caller whose swap succeeded.
    """
    try:
        won = _swap_status(db, order_id, OrderStatus.COMPLETED)
        if won:
            reduce_stock_for_order(db, order_id)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    return won


def fail_order(db: Session, order_id: str) -> bool:
    try:
        won = _swap_status(db, order_id, OrderStatus.FAILED)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    return won


def settle_cart_after_verify(db: Session, order: Order) -> bool:
    """Empty the buyer's cart the first time a completed order is verified."""
    try:
        claimed = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.cart_settled.is_(False))
            .values(cart_settled=True)
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        if claimed:
            clear_cart(db, order.user_id)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    return claimed


def record_payment(db: Session, order: Order, payment_id: str, status: str, source: str) -> bool:
    if not payment_id:
        return False
    if db.query(Payment).filter(Payment.provider_payment_id == payment_id).first():
        return False
    db.add(Payment(
        order_id=order.id,
        provider_payment_id=payment_id,
        provider_order_id=order.payment_intent_id,
        amount=order.total_amount,
        currency=config.PAYMENT_CURRENCY,
        status=status,
        source=source,
    ))
    try:
        db.commit()
    except IntegrityError:
        # Another delivery of the same payment got there first.
        db.rollback()
        return False
    return True


def verify_payment(
    db: Session,
    gateway: RazorpayClient,
    user_id: str,
    gateway_order_id: str,
    payment_id: str,
    signature: str,
) -> Tuple[Order, bool]:
    if not gateway.verify_payment_signature(gateway_order_id, payment_id, signature):
        logger.warning("rejected payment signature for gateway order %s", gateway_order_id)
        raise InvalidSignatureError()

    order = _order_by_intent(db, gateway_order_id)
    if order is None or order.user_id != user_id:
        raise OrderNotFoundError()

    completed_now = complete_order(db, order.id)
    db.refresh(order)
    if order.status == OrderStatus.FAILED.value:
        logger.warning("valid payment %s for failed order %s", payment_id, order.id)
        record_payment(db, order, payment_id, "captured", "verify")
        raise OrderStateError()

    if completed_now:
        logger.info("order %s completed via verify", order.id)
    else:
        logger.info("order %s already completed, skipping side effects", order.id)

    settle_cart_after_verify(db, order)
    record_payment(db, order, payment_id, "captured", "verify")
    return order, completed_now


def _payment_entity(envelope) -> dict:
    if not isinstance(envelope, dict):
        return {}
    payload = envelope.get("payload")
    payment = payload.get("payment") if isinstance(payload, dict) else None
    entity = payment.get("entity") if isinstance(payment, dict) else None
    return entity if isinstance(entity, dict) else {}


def handle_webhook(
    db: Session,
    gateway: RazorpayClient,
    body: bytes,
    signature: Optional[str],
) -> WebhookEvent:
    if not gateway.verify_webhook_signature(body, signature):
        logger.warning("rejected webhook signature")
        raise InvalidSignatureError()

    try:
        envelope = json.loads(body)
    except ValueError:
        logger.warning("ignoring webhook with unparsable body")
        return WebhookEvent.UNKNOWN

    kind = WebhookEvent(envelope.get("event") if isinstance(envelope, dict) else None)
    entity = _payment_entity(envelope)
    order = None
    if kind is not WebhookEvent.UNKNOWN and entity.get("order_id"):
        order = _order_by_intent(db, str(entity["order_id"]))

    if kind is WebhookEvent.UNKNOWN:
        logger.info("ignoring webhook event %r", envelope.get("event") if isinstance(envelope, dict) else None)
    elif order is None:
        logger.info("no order for %s webhook (gateway order %s)", kind.value, entity.get("order_id"))
    elif kind is WebhookEvent.PAYMENT_CAPTURED:
        if complete_order(db, order.id):
            logger.info("order %s completed via webhook", order.id)
        else:
            logger.info("order %s already settled, webhook capture skipped", order.id)
        record_payment(db, order, str(entity.get("id") or ""), "captured", "webhook")
    elif kind is WebhookEvent.PAYMENT_FAILED:
        if fail_order(db, order.id):
            logger.info("order %s marked as failed via webhook", order.id)
        else:
            logger.info("order %s is no longer pending, failure event ignored", order.id)
        record_payment(db, order, str(entity.get("id") or ""), "failed", "webhook")
    return kind


def list_orders(db: Session, user_id: str) -> List[Order]:
    return (
        db.query(Order)
        .filter(Order.user_id == user_id)
        .order_by(Order.created_at.desc())
        .all()
    )


def get_order_for_user(db: Session, user_id: str, order_id: str) -> Order:
    order = (
        db.query(Order)
        .options(joinedload(Order.items).joinedload(OrderItem.product))
        .filter(Order.id == order_id)
        .first()
    )
    if order is None:
        raise OrderNotFoundError()
    if order.user_id != user_id:
        raise OrderAccessDenied()
    return order
