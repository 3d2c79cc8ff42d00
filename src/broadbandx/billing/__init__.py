"""
Billing: the plan catalog and the subscription lifecycle engine.

Pricing, proration and refund rules live in ``billing.subscriptions.pricing``;
errors shared by both halves live in ``billing.exceptions``.
"""
