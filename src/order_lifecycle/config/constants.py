"""
Centralized application constants.

This file acts as the single point of truth for business constants shared
across the status engine, the payment verifiers and the webhook processors.
"""

from order_lifecycle.models.status import AdminPermission as P
from order_lifecycle.models.status import OrderStatus as S

# ==============================================================================
# NOTIFICATION FUNCTIONS
# ==============================================================================

NOTIFY_ORDER_CONFIRMATION = "send-order-confirmation"
NOTIFY_ORDER_STATUS = "send-order-notification"
NOTIFY_DELIVERY_CONFIRMATION = "send-delivery-confirmation"
NOTIFY_SHIPPING_UPDATE = "send-shipping-notification"

# ==============================================================================
# PAYMENT SETTLEMENT
# ==============================================================================

PAYPAL_LIVE_URL = "https://api-m.paypal.com"
PAYPAL_SANDBOX_URL = "https://api-m.sandbox.paypal.com"
STRIPE_API_URL = "https://api.stripe.com"

# PayPal order statuses we act on
PAYPAL_APPROVED = "APPROVED"
PAYPAL_COMPLETED = "COMPLETED"

# reference_id PayPal assigns to a purchase unit created without one
PAYPAL_DEFAULT_REFERENCE = "default"

# Stripe signature timestamps older than this are rejected (seconds)
STRIPE_SIGNATURE_TOLERANCE = 300

# ISO 4217 currencies without minor units
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP", "ISK", "XAF", "XOF"})

# ==============================================================================
# CARRIER WEBHOOKS
# ==============================================================================

# Conditional-write attempts before a webhook update gives up on a moving row
WEBHOOK_WRITE_ATTEMPTS = 3

# ==============================================================================
# TRANSITION TABLE
# ==============================================================================

# (from, to, requires_permission, customer_allowed, requires_reason, auto_notify, description)
DEFAULT_TRANSITIONS = [
    (S.CREATED, S.PAYMENT_PENDING, P.OPERATIONS, False, False, False, "Checkout started"),
    (S.CREATED, S.CANCELLED, P.OPERATIONS, True, False, False, "Abandoned before payment"),
    (S.PAYMENT_PENDING, S.PAID, P.FULL_ACCESS, False, False, True, "Payment confirmed"),
    (S.PAYMENT_PENDING, S.PAYMENT_FAILED, P.OPERATIONS, False, False, True, "Payment declined"),
    (S.PAYMENT_PENDING, S.CANCELLED, P.OPERATIONS, True, False, False, "Cancelled during payment"),
    (S.PAYMENT_FAILED, S.PAYMENT_PENDING, P.OPERATIONS, True, False, False, "Payment retried"),
    (S.PAYMENT_FAILED, S.CANCELLED, P.OPERATIONS, True, False, False, "Cancelled after failed payment"),
    (S.PAID, S.VALIDATION_IN_PROGRESS, P.OPERATIONS, False, False, False, "Manual review started"),
    (S.PAID, S.VALIDATED, P.OPERATIONS, False, False, False, "Order validated"),
    (S.PAID, S.CANCELLED, P.FULL_ACCESS, False, True, True, "Cancelled after payment"),
    (S.PAID, S.REFUNDED, P.FULL_ACCESS, False, True, True, "Refunded before fulfilment"),
    (S.VALIDATION_IN_PROGRESS, S.VALIDATED, P.OPERATIONS, False, False, False, "Review passed"),
    (S.VALIDATION_IN_PROGRESS, S.CANCELLED, P.FULL_ACCESS, False, True, True, "Review rejected"),
    (S.VALIDATED, S.PREPARING, P.OPERATIONS, False, False, False, "Picking and packing"),
    (S.VALIDATED, S.CANCELLED, P.FULL_ACCESS, False, True, True, "Cancelled before preparation"),
    (S.PREPARING, S.SHIPPED, P.OPERATIONS, False, False, True, "Handed to carrier"),
    (S.PREPARING, S.CANCELLED, P.FULL_ACCESS, False, True, True, "Cancelled during preparation"),
    (S.SHIPPED, S.IN_TRANSIT, P.OPERATIONS, False, False, False, "Carrier in transit"),
    (S.SHIPPED, S.DELIVERED, P.OPERATIONS, False, False, True, "Delivered"),
    (S.SHIPPED, S.DELIVERY_FAILED, P.OPERATIONS, False, False, True, "Delivery attempt failed"),
    (S.SHIPPED, S.PARTIALLY_DELIVERED, P.OPERATIONS, False, False, True, "Part of the parcels delivered"),
    (S.SHIPPED, S.RETURNED, P.OPERATIONS, False, True, False, "Returned by carrier"),
    (S.SHIPPED, S.REFUNDED, P.FULL_ACCESS, False, True, True, "Refunded while shipping"),
    (S.IN_TRANSIT, S.DELIVERED, P.OPERATIONS, False, False, True, "Delivered"),
    (S.IN_TRANSIT, S.DELIVERY_FAILED, P.OPERATIONS, False, False, True, "Delivery attempt failed"),
    (S.IN_TRANSIT, S.RETURNED, P.OPERATIONS, False, True, False, "Returned by carrier"),
    (S.DELIVERY_FAILED, S.IN_TRANSIT, P.OPERATIONS, False, False, False, "New delivery attempt"),
    (S.DELIVERY_FAILED, S.DELIVERED, P.OPERATIONS, False, False, True, "Delivered on retry"),
    (S.DELIVERY_FAILED, S.RETURNED, P.OPERATIONS, False, True, False, "Returned to sender"),
    (S.DELIVERY_FAILED, S.REFUNDED, P.FULL_ACCESS, False, True, True, "Refunded after failed delivery"),
    (S.PARTIALLY_DELIVERED, S.DELIVERED, P.OPERATIONS, False, False, True, "Remaining parcels delivered"),
    (S.PARTIALLY_DELIVERED, S.PARTIALLY_REFUNDED, P.FULL_ACCESS, False, True, True, "Missing parcels refunded"),
    (S.DELIVERED, S.RETURN_REQUESTED, P.OPERATIONS, True, True, True, "Customer asked for a return"),
    (S.DELIVERED, S.ARCHIVED, P.OPERATIONS, False, False, False, "Closed"),
    (S.RETURN_REQUESTED, S.RETURNED, P.OPERATIONS, False, False, True, "Return received"),
    (S.RETURN_REQUESTED, S.DELIVERED, P.OPERATIONS, False, True, True, "Return request declined"),
    (S.RETURNED, S.REFUNDED, P.FULL_ACCESS, False, True, True, "Return refunded"),
    (S.RETURNED, S.PARTIALLY_REFUNDED, P.FULL_ACCESS, False, True, True, "Return partially refunded"),
    (S.PARTIALLY_REFUNDED, S.REFUNDED, P.FULL_ACCESS, False, True, True, "Remaining amount refunded"),
    (S.PARTIALLY_REFUNDED, S.ARCHIVED, P.OPERATIONS, False, False, False, "Closed"),
    (S.REFUNDED, S.ARCHIVED, P.OPERATIONS, False, False, False, "Closed"),
    (S.CANCELLED, S.ARCHIVED, P.OPERATIONS, False, False, False, "Closed"),
]
