# src/payme/checkout.py
import base64

from config import settings


def generate_checkout_url(account_id: int, kind: str, order_name: str, amount: int) -> str:
    """Build the Payme checkout link for an order.

    The link is base64("m=<merchant>;ac.user_id=<account>;ac.<plan_id|package_id>=<name>;a=<amount>")
    appended to the checkout host. ``amount`` is in minor units.
    """
    merchant_id = settings.PAYME_MERCHANT_ID
    if not merchant_id:
        raise RuntimeError("PAYME_MERCHANT_ID not configured")

    field_name = "plan_id" if kind == "plan" else "package_id"
    params = f"m={merchant_id};ac.user_id={account_id};ac.{field_name}={order_name};a={amount}"
    encoded = base64.b64encode(params.encode("utf-8")).decode("ascii")

    base_url = settings.PAYME_TEST_CHECKOUT_URL if settings.PAYME_TEST_MODE else settings.PAYME_CHECKOUT_URL
    return f"{base_url.rstrip('/')}/{encoded}"
