"""
Database models - import all models here so Alembic can discover them.
"""
from orderguard.models.order import Account, Order
from orderguard.models.payment import PaymentIntentRecord, Payment
from orderguard.models.webhook_event import WebhookEventRecord
from orderguard.models.fulfillment import (
    Client,
    Website,
    OrderLineItem,
    OrderGroup,
    OrderSiteSubmission,
)
from orderguard.models.benchmark import OrderBenchmark, BenchmarkComparison
from orderguard.models.lock_lease import OrderLockLease

__all__ = [
    "Account",
    "Order",
    "PaymentIntentRecord",
    "Payment",
    "WebhookEventRecord",
    "Client",
    "Website",
    "OrderLineItem",
    "OrderGroup",
    "OrderSiteSubmission",
    "OrderBenchmark",
    "BenchmarkComparison",
    "OrderLockLease",
]
