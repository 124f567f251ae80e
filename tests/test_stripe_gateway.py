"""Stripe SDK error translation."""

import stripe

from washbook.common.payment_errors import GatewayErrorKind, PaymentErrorType, classify_payment_error
from washbook.services.booking.stripe_gateway import stripe_mode, translate_stripe_error


def test_card_error_keeps_decline_code():
    exc = stripe.CardError(
        "Your card has insufficient funds.",
        None,
        "card_declined",
        http_status=402,
        json_body={
            "error": {
                "type": "card_error",
                "code": "card_declined",
                "decline_code": "insufficient_funds",
                "message": "Your card has insufficient funds.",
            }
        },
    )

    error = translate_stripe_error(exc)

    assert error.kind == GatewayErrorKind.CARD
    assert error.code == "card_declined"
    assert error.decline_code == "insufficient_funds"
    assert error.http_status == 402
    assert classify_payment_error(error).type == PaymentErrorType.INSUFFICIENT_FUNDS


def test_connection_error_is_retryable_after_translation():
    error = translate_stripe_error(stripe.APIConnectionError("Network is unreachable"))

    assert error.kind == GatewayErrorKind.CONNECTION
    assert classify_payment_error(error).is_retryable


def test_mode_from_secret_key():
    assert stripe_mode("sk_test_123") == "test"
    assert stripe_mode("sk_live_123") == "live"
    assert stripe_mode("") == "unknown"
