from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.orm import Session

from storefront.auth import current_user
from storefront.cart import add_to_cart, list_cart, merge_cart, remove_cart_item, update_cart_item
from storefront.database import get_db
from storefront.errors import PaymentGatewayUnavailable, ProductNotFoundError
from storefront.gateway import RazorpayClient
from storefront.models import CartItem, Order, Product
from storefront.orders import (
    create_order,
    get_order_for_user,
    handle_webhook,
    list_orders,
    verify_payment,
)

router = APIRouter(prefix="/api")


class CartAddRequest(BaseModel):
    product_id: str = Field(validation_alias=AliasChoices("productId", "product_id"))
    quantity: int = Field(default=1, gt=0)


class CartUpdateRequest(BaseModel):
    quantity: int = Field(gt=0)


class CartLine(BaseModel):
    product_id: str = Field(validation_alias=AliasChoices("productId", "product_id"))
    quantity: int = Field(gt=0)


class GuestCartRequest(BaseModel):
    items: List[CartLine]


class VerifyRequest(BaseModel):
    gateway_order_id: str = Field(validation_alias=AliasChoices("gatewayOrderId", "razorpay_order_id"))
    gateway_payment_id: str = Field(validation_alias=AliasChoices("gatewayPaymentId", "razorpay_payment_id"))
    signature: str = Field(validation_alias=AliasChoices("signature", "razorpay_signature"))


async def raw_body(request: Request) -> bytes:
    return await request.body()


def get_gateway(request: Request) -> RazorpayClient:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise PaymentGatewayUnavailable()
    return gateway


def product_out(p: Product) -> dict:
    return {
        "id": p.id,
        "title": p.title,
        "price": f"{p.price:.2f}",
        "stockCount": p.stock_count,
        "downloads": p.downloads,
    }


def cart_item_out(item: CartItem) -> dict:
    return {
        "id": item.id,
        "productId": item.product_id,
        "quantity": item.quantity,
        "product": product_out(item.product),
    }


def order_out(order: Order, with_items: bool = False) -> dict:
    out = {
        "id": order.id,
        "userId": order.user_id,
        "totalAmount": f"{order.total_amount:.2f}",
        "status": order.status,
        "paymentIntentId": order.payment_intent_id,
        "createdAt": order.created_at.isoformat(),
    }
    if with_items:
        out["items"] = [
            {
                "id": i.id,
                "productId": i.product_id,
                "title": i.product.title if i.product else None,
                "price": f"{i.price:.2f}",
                "quantity": i.quantity,
            }
            for i in order.items
        ]
    return out


@router.get("/products")
def list_products_api(db: Session = Depends(get_db)):
    return [product_out(p) for p in db.query(Product).order_by(Product.title).all()]


@router.get("/products/{product_id}")
def get_product_api(product_id: str, db: Session = Depends(get_db)):
    product = db.get(Product, product_id)
    if product is None:
        raise ProductNotFoundError()
    return product_out(product)


@router.get("/cart")
def get_cart_api(user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return [cart_item_out(i) for i in list_cart(db, user_id)]


@router.post("/cart")
def add_to_cart_api(
    request: CartAddRequest,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    return cart_item_out(add_to_cart(db, user_id, request.product_id, request.quantity))


@router.patch("/cart/{item_id}")
def update_cart_api(
    item_id: str,
    request: CartUpdateRequest,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    return cart_item_out(update_cart_item(db, user_id, item_id, request.quantity))


@router.delete("/cart/{item_id}")
def remove_cart_api(item_id: str, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    remove_cart_item(db, user_id, item_id)
    return {"success": True}


@router.post("/cart/merge")
def merge_cart_api(
    request: GuestCartRequest,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    lines = [(line.product_id, line.quantity) for line in request.items]
    return [cart_item_out(i) for i in merge_cart(db, user_id, lines)]


@router.post("/cart/guest")
def guest_cart_api(request: GuestCartRequest):
    # Guest carts live client-side until login; this only validates them.
    return {
        "items": [{"productId": line.product_id, "quantity": line.quantity} for line in request.items],
        "message": "Guest cart saved",
    }


@router.post("/orders/create")
def create_order_api(
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway),
):
    result = create_order(db, gateway, user_id)
    return {
        "orderId": result.gateway_order_id,
        "amount": result.amount,
        "currency": result.currency,
        "keyId": result.key_id,
        "internalOrderId": result.internal_order_id,
    }


@router.post("/payments/verify")
def verify_payment_api(
    request: VerifyRequest,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway),
):
    order, completed_now = verify_payment(
        db,
        gateway,
        user_id,
        request.gateway_order_id,
        request.gateway_payment_id,
        request.signature,
    )
    return {
        "success": True,
        "message": "Payment verified successfully" if completed_now else "Payment already verified",
        "orderId": order.id,
    }


@router.post("/webhooks/razorpay")
def razorpay_webhook(
    payload: bytes = Depends(raw_body),
    x_razorpay_signature: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway),
):
    handle_webhook(db, gateway, payload, x_razorpay_signature)
    return {"success": True}


@router.get("/orders")
def list_orders_api(user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return [order_out(o) for o in list_orders(db, user_id)]


@router.get("/orders/{order_id}")
def get_order_api(order_id: str, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return order_out(get_order_for_user(db, user_id, order_id), with_items=True)
