"""
main.py — FastAPI Entry Point for the Marketplace Service

This module provides the REST API through which the marketplace front end
reaches the order, review and commission logic.

Responsibilities:
    • Cart operations for the authenticated consumer
    • Checkout: order creation and payment session request
    • Producer order actions (confirm / decline / cancel / complete)
    • Review eligibility and submission
    • Payment outcome webhook and payment-events queue listener
    • Admin commission rate, product images, pricing breakdown
    • System health information

Identity is supplied by the gateway in the `X-User-Id` and `X-User-Role`
headers. Domain errors are translated into JSON error responses in one place.
"""

import os
import threading
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .authorization import MODIFY_CART, require
from .clients import start_payment_event_listener
from .errors import (
    ConflictError,
    Forbidden,
    MarketplaceError,
    NotEligible,
    NotFound,
    ProductNotFound,
    UpstreamUnavailable,
    ValidationError,
    upstream_call,
)
from .logging_config import get_logger, setup_logging
from .models import (
    AddToCartRequest,
    CheckoutRequest,
    CommissionRateUpdate,
    CurrentUser,
    OrderActionRequest,
    PaymentEvent,
    Product,
    ReviewRequest,
    Role,
    SetQuantityRequest,
)
from .pricing import breakdown
from .services import Marketplace, build_marketplace
from .workflow import confirm_payment, process_checkout

PAYMENT_EVENT_LISTENER = os.environ.get("PAYMENT_EVENT_LISTENER", "true").lower() == "true"
PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "")

# Initialization
# Configure logging and initialize FastAPI app
setup_logging()
log = get_logger(__name__)
app = FastAPI(title="Local Marketplace Service")
marketplace = build_marketplace()

ERROR_STATUS = [
    (ValidationError, 422),
    (ConflictError, 409),
    (NotEligible, 403),
    (Forbidden, 403),
    (NotFound, 404),
    (UpstreamUnavailable, 503),
]


def get_marketplace() -> Marketplace:
    return marketplace


def current_user(x_user_id: str = Header(...), x_user_role: Role = Header(...)) -> CurrentUser:
    return CurrentUser(id=x_user_id, role=x_user_role)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    status_code = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 400)
    if status_code >= 500:
        log.error(f"{request.method} {request.url.path} failed: {exc}")
    body = {"error": exc.code, "message": str(exc)}
    if exc.retryable:
        body["retryable"] = True
    return JSONResponse(status_code=status_code, content=body)


# Startup Event: Launch Payment Events Listener
@app.on_event("startup")
def on_startup():
    """
    Starts the background thread that consumes payment outcomes from RabbitMQ.

    Behavior:
        - The thread runs as a daemon and stops automatically when the main app terminates.
        - Skipped when PAYMENT_EVENT_LISTENER is not "true" (webhook-only deployments).
    """
    log.info("Marketplace service starting...")
    if not PAYMENT_EVENT_LISTENER:
        log.info("Payment events listener disabled, relying on the webhook.")
        return

    def handle(data: dict):
        confirm_payment(marketplace, PaymentEvent.model_validate(data))

    listener_thread = threading.Thread(target=start_payment_event_listener, args=(handle,), daemon=True)
    listener_thread.start()
    log.info("Payment events listener thread started.")


def _load_product(mp: Marketplace, product_id: str) -> Product:
    with upstream_call("data store", f"[Product: {product_id}]"):
        product = mp.store.get_product(product_id)
    if product is None:
        raise ProductNotFound(product_id)
    return product


def _cart_view(cart) -> dict:
    return {
        "lines": [line.model_dump(mode="json") for line in cart.lines],
        "subtotal": str(cart.subtotal()),
    }


# --- Pricing ---
@app.get("/v1/pricing/breakdown")
def pricing_breakdown(price: str, mp: Marketplace = Depends(get_marketplace)):
    """Commission split of a customer-facing price under the current commission rate."""
    return breakdown(price, mp.settings.commission_rate()).as_dict()


# --- Cart ---
@app.get("/v1/cart")
def get_cart(user: CurrentUser = Depends(current_user), mp: Marketplace = Depends(get_marketplace)):
    require(user, MODIFY_CART)
    return _cart_view(mp.carts.open(user.id))


@app.post("/v1/cart/items")
def add_to_cart(item: AddToCartRequest, user: CurrentUser = Depends(current_user),
                mp: Marketplace = Depends(get_marketplace)):
    require(user, MODIFY_CART)
    cart = mp.carts.open(user.id)
    cart.add(_load_product(mp, item.productId), item.quantity)
    return _cart_view(cart)


@app.put("/v1/cart/items/{product_id}")
def set_cart_quantity(product_id: str, item: SetQuantityRequest, user: CurrentUser = Depends(current_user),
                      mp: Marketplace = Depends(get_marketplace)):
    require(user, MODIFY_CART)
    cart = mp.carts.open(user.id)
    if item.quantity <= 0:
        cart.remove(product_id)
    else:
        cart.set_quantity(_load_product(mp, product_id), item.quantity)
    return _cart_view(cart)


@app.delete("/v1/cart/items/{product_id}")
def remove_from_cart(product_id: str, user: CurrentUser = Depends(current_user),
                     mp: Marketplace = Depends(get_marketplace)):
    require(user, MODIFY_CART)
    cart = mp.carts.open(user.id)
    cart.remove(product_id)
    return _cart_view(cart)


@app.delete("/v1/cart")
def clear_cart(user: CurrentUser = Depends(current_user), mp: Marketplace = Depends(get_marketplace)):
    require(user, MODIFY_CART)
    cart = mp.carts.open(user.id)
    cart.clear()
    return _cart_view(cart)


@app.post("/v1/session/logout", status_code=204)
def logout(user: CurrentUser = Depends(current_user), mp: Marketplace = Depends(get_marketplace)):
    mp.carts.close(user.id)


# --- Checkout and orders ---
@app.post("/v1/checkout", status_code=201)
def checkout(request: CheckoutRequest, user: CurrentUser = Depends(current_user),
             idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
             mp: Marketplace = Depends(get_marketplace)):
    """
    Creates a pending order from the consumer's cart and returns the payment redirect URL.

    The cart is not cleared here. It is cleared once the payment is confirmed.
    """
    session = process_checkout(mp, user, request, idempotency_key)
    return {
        "orderId": session.order.id,
        "status": session.order.status.value,
        "totalAmount": str(session.order.total_amount),
        "redirectUrl": session.redirect_url,
    }


@app.get("/v1/orders/{order_id}")
def get_order(order_id: str, user: CurrentUser = Depends(current_user),
              mp: Marketplace = Depends(get_marketplace)):
    order = mp.orders.get_order(order_id)
    if user.role != Role.ADMIN and user.id not in (order.consumer_id, order.producer_id):
        raise Forbidden(user.id, f"view order {order_id}")
    with upstream_call("data store", f"[Order: {order_id}]"):
        lines = mp.store.get_order_lines(order_id)
    return {
        "order": order.model_dump(mode="json"),
        "lines": [line.model_dump(mode="json") for line in lines],
    }


@app.post("/v1/orders/{order_id}/status")
def change_order_status(order_id: str, request: OrderActionRequest, user: CurrentUser = Depends(current_user),
                        mp: Marketplace = Depends(get_marketplace)):
    order = mp.orders.transition(order_id, user, request.action)
    return {"orderId": order.id, "status": order.status.value}


# --- Reviews ---
@app.get("/v1/orders/{order_id}/review-eligibility")
def review_eligibility(order_id: str, productId: Optional[str] = None, user: CurrentUser = Depends(current_user),
                       mp: Marketplace = Depends(get_marketplace)):
    return {"eligible": mp.reviews.can_review(user.id, order_id, productId)}


@app.post("/v1/reviews", status_code=201)
def submit_review(request: ReviewRequest, user: CurrentUser = Depends(current_user),
                  mp: Marketplace = Depends(get_marketplace)):
    review = mp.reviews.submit_review(
        user,
        producer_id=request.producerId,
        rating=request.rating,
        comment=request.comment,
        order_id=request.orderId,
        product_id=request.productId,
    )
    return review.model_dump(mode="json")


@app.get("/v1/producers/{producer_id}/rating")
def producer_rating(producer_id: str, mp: Marketplace = Depends(get_marketplace)):
    with upstream_call("data store", f"[Producer: {producer_id}]"):
        summary = mp.store.get_producer_rating(producer_id)
    return summary.model_dump(mode="json")


# --- Payments ---
@app.post("/v1/payments/webhook")
def payment_webhook(event: PaymentEvent,
                    x_webhook_secret: Optional[str] = Header(None),
                    mp: Marketplace = Depends(get_marketplace)):
    """
    Receives the payment outcome for an order and reconciles it.

    When PAYMENT_WEBHOOK_SECRET is set, the caller must present it in `X-Webhook-Secret`.
    """
    if PAYMENT_WEBHOOK_SECRET and x_webhook_secret != PAYMENT_WEBHOOK_SECRET:
        log.warning(f"[Order: {event.orderId}] Webhook call with invalid secret rejected.")
        raise Forbidden("payment-webhook", "confirm payment")
    order = confirm_payment(mp, event)
    return {"orderId": order.id, "status": order.status.value, "paymentStatus": order.payment_status.value}


# --- Admin ---
@app.put("/v1/admin/settings/commission-rate")
def update_commission_rate(update: CommissionRateUpdate, user: CurrentUser = Depends(current_user),
                           mp: Marketplace = Depends(get_marketplace)):
    rate = mp.settings.update_commission_rate(user, update.value)
    return {"commissionRate": str(rate)}


# --- Product images ---
@app.get("/v1/products/{product_id}/images")
def list_product_images(product_id: str, mp: Marketplace = Depends(get_marketplace)):
    return [image.model_dump(mode="json") for image in mp.images.list_images(product_id)]


@app.put("/v1/products/{product_id}/images/{filename}", status_code=201)
async def upload_product_image(product_id: str, filename: str, request: Request,
                               user: CurrentUser = Depends(current_user),
                               mp: Marketplace = Depends(get_marketplace)):
    content = await request.body()
    content_type = request.headers.get("content-type", "application/octet-stream")
    image = await run_in_threadpool(mp.images.add_image, user, product_id, filename, content, content_type)
    return image.model_dump(mode="json")


@app.post("/v1/products/{product_id}/images/{image_id}/primary")
def set_primary_image(product_id: str, image_id: str, user: CurrentUser = Depends(current_user),
                      mp: Marketplace = Depends(get_marketplace)):
    return [image.model_dump(mode="json") for image in mp.images.set_primary(user, product_id, image_id)]


@app.delete("/v1/products/{product_id}/images/{image_id}")
def delete_product_image(product_id: str, image_id: str, user: CurrentUser = Depends(current_user),
                         mp: Marketplace = Depends(get_marketplace)):
    return [image.model_dump(mode="json") for image in mp.images.remove_image(user, product_id, image_id)]


# Health Check Endpoint
@app.get("/health")
def health_check():
    """
    Simple health check endpoint.

    Returns:
        dict: A basic JSON object indicating service availability.
    """
    return {"status": "ok"}
