import logging
import os
from typing import List, Optional

import requests
from pydantic import BaseModel, ConfigDict, Field

from errors import PaymentProviderError

logger = logging.getLogger(__name__)

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com/v1")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
REQUEST_TIMEOUT = 15


class CartItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id")
    name: str
    image: Optional[str] = None
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)


class CheckoutSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cart_items: List[CartItem] = Field(..., alias="cartItems", min_length=1)


def build_session_form(cart_items: List[CartItem], origin: str) -> dict:
    """Flatten line items into the provider's bracketed form encoding."""
    form = {
        "mode": "payment",
        "payment_method_types[0]": "card",
        "success_url": f"{origin}/success",
        "cancel_url": f"{origin}/cancel",
    }
    for i, item in enumerate(cart_items):
        prefix = f"line_items[{i}]"
        form[f"{prefix}[price_data][currency]"] = PAYMENT_CURRENCY
        form[f"{prefix}[price_data][product_data][name]"] = item.name
        form[f"{prefix}[price_data][product_data][metadata][id]"] = item.id
        if item.image:
            form[f"{prefix}[price_data][product_data][images][0]"] = item.image
        form[f"{prefix}[price_data][unit_amount]"] = int(round(item.price * 100))
        form[f"{prefix}[quantity]"] = item.quantity
    return form


def create_checkout_session(cart_items: List[CartItem], origin: Optional[str] = None) -> str:
    if not STRIPE_SECRET_KEY:
        logger.error("STRIPE_SECRET_KEY is not set")
        raise PaymentProviderError(error="Payment provider not configured")

    origin = (origin or FRONTEND_URL).rstrip("/")
    try:
        response = requests.post(
            f"{STRIPE_API_BASE}/checkout/sessions",
            data=build_session_form(cart_items, origin),
            auth=(STRIPE_SECRET_KEY, ""),
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        logger.error("Checkout session request failed: %s", exc)
        raise PaymentProviderError(error=str(exc))

    if not response.ok:
        logger.error("Checkout session rejected (%s): %s", response.status_code, response.text[:200])
        raise PaymentProviderError(error=f"provider returned {response.status_code}")

    session_id = response.json().get("id")
    if not session_id:
        raise PaymentProviderError(error="provider response missing session id")
    logger.info("Created checkout session %s for %d items", session_id, len(cart_items))
    return session_id
