"""
Business constants for the billing backend.

These are fixed by Stripe's API contract and the frontend, not by the
environment. Operational values (secrets, prices, limits) live in config.py.
"""

# --- Stripe provider subscription statuses ---
ACTIVE_PROVIDER_STATUSES: frozenset[str] = frozenset({"active", "trialing"})
GRACE_PROVIDER_STATUSES: frozenset[str] = frozenset(
    {"past_due", "incomplete", "incomplete_expired"}
)

# --- Stripe webhook event types ---
EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_SUBSCRIPTION_CREATED = "customer.subscription.created"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_INVOICE_PAID = "invoice.payment_succeeded"
EVENT_INVOICE_FAILED = "invoice.payment_failed"

# --- History event types written by the query and cancel paths ---
HISTORY_SUBSCRIPTION_EXPIRED = "subscription_expired"
HISTORY_SUBSCRIPTION_REFRESHED = "subscription_refreshed"
HISTORY_CANCEL_REQUESTED = "subscription_cancel_requested"

# --- API metadata ---
API_TITLE = "Scholar Billing API"
API_VERSION = "0.1.0"
