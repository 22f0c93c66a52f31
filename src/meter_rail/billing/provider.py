"""
Billing Provider Integration

The core needs two things from a billing provider: report a period usage
total, and create an invoice line item for an overage. `BillingProvider`
is that capability; `StripeBillingProvider` implements it with the Stripe
SDK, on behalf of a Connect account when one is configured.

Without an API key the Stripe provider runs in mock mode and returns
deterministic references, so development and tests never reach Stripe.

Every provider call goes through `call_with_timeout`: a call that does not
finish in time is a ProviderError, like any other failed call.
"""

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, TypeVar
import hashlib
import structlog
import stripe

from ..core.errors import ProviderError

logger = structlog.get_logger()

T = TypeVar("T")

# Shared by all provider calls; a timed-out call keeps its worker until it returns
_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="billing-provider")


def call_with_timeout(fn: Callable[..., T], timeout: float, *args: Any, **kwargs: Any) -> T:
    """Run a provider call, raising ProviderError on error or timeout."""
    future = _executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        raise ProviderError(f"Billing provider call timed out after {timeout}s")
    except ProviderError:
        raise
    except Exception as e:
        raise ProviderError(f"Billing provider call failed: {e}")


@dataclass
class UsageReport:
    """A period usage total sent to the provider."""
    subscription_item_id: Optional[str]
    quantity: float
    event_name: str
    customer_ref: Optional[str] = None
    timestamp: Optional[int] = None
    idempotency_key: Optional[str] = None


@dataclass
class InvoiceLineItem:
    """An overage charge added to the customer's next invoice."""
    customer_ref: str
    amount_cents: int
    currency: str
    description: str
    metadata: Dict[str, str] = field(default_factory=dict)
    idempotency_key: Optional[str] = None


@dataclass
class SubscriptionChange:
    """Move a subscription to another tier's price."""
    subscription_ref: str
    price_ref: str
    prorate: bool = True
    metadata: Dict[str, str] = field(default_factory=dict)
    idempotency_key: Optional[str] = None


class BillingProvider(ABC):
    """Remote billing capability. Every call is fallible."""

    @abstractmethod
    def report_usage(self, report: UsageReport) -> str:
        """Report usage; returns the provider's usage-record reference."""

    @abstractmethod
    def create_invoice_line_item(self, item: InvoiceLineItem) -> str:
        """Create an invoice item; returns the provider's line-item reference."""

    @abstractmethod
    def change_subscription_price(self, change: SubscriptionChange) -> str:
        """Switch a subscription's price; returns the subscription reference."""


class StripeBillingProvider(BillingProvider):
    """
    Stripe implementation.

    Usage is reported as Billing Meter Events carrying the full period
    total; the matching Stripe meter must aggregate with the "last" formula
    so repeated reports of a growing total are not summed.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        account_id: Optional[str] = None,
    ):
        """
        Initialize Stripe integration.

        Args:
            api_key: Stripe secret key (mock mode when missing)
            webhook_secret: Stripe webhook signing secret
            account_id: Connect account billed on behalf of
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.account_id = account_id
        self._initialized = False

        if self.api_key:
            stripe.api_key = self.api_key
            self._initialized = True
            logger.info("stripe_integration_initialized", connect_account=bool(account_id))
        else:
            logger.warning("stripe_not_configured", mode="mock")

    @property
    def is_available(self) -> bool:
        """Check if Stripe integration is live (not mock)."""
        return self._initialized

    def _request_options(self, idempotency_key: Optional[str]) -> Dict[str, Any]:
        options: Dict[str, Any] = {}
        if self.account_id:
            options["stripe_account"] = self.account_id
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        return options

    def report_usage(self, report: UsageReport) -> str:
        timestamp = report.timestamp or int(datetime.now(timezone.utc).timestamp())

        if not self._initialized:
            digest = hashlib.sha256(
                f"{report.subscription_item_id}:{report.event_name}:{report.quantity}:{timestamp}".encode()
            ).hexdigest()
            return f"mbur_mock_{digest[:16]}"

        if not report.customer_ref:
            raise ProviderError(f"No billing customer for usage of {report.event_name}")

        try:
            meter_event = stripe.billing.MeterEvent.create(
                event_name=report.event_name,
                payload={
                    "stripe_customer_id": report.customer_ref,
                    "value": f"{report.quantity:g}",
                },
                timestamp=timestamp,
                identifier=report.idempotency_key,
                **self._request_options(None),
            )
        except stripe.StripeError as e:
            logger.error("stripe_usage_report_failed", event_name=report.event_name, error=str(e))
            raise ProviderError(f"Failed to report usage: {e}")

        reference = getattr(meter_event, "identifier", None) or report.idempotency_key or ""
        logger.info(
            "stripe_usage_reported",
            event_name=report.event_name,
            quantity=report.quantity,
            subscription_item=report.subscription_item_id,
        )
        return reference

    def create_invoice_line_item(self, item: InvoiceLineItem) -> str:
        if not self._initialized:
            digest = hashlib.sha256(
                f"{item.idempotency_key}:{item.customer_ref}:{item.amount_cents}".encode()
            ).hexdigest()
            return f"ii_mock_{digest[:16]}"

        try:
            invoice_item = stripe.InvoiceItem.create(
                customer=item.customer_ref,
                amount=item.amount_cents,
                currency=item.currency,
                description=item.description,
                metadata=item.metadata,
                **self._request_options(item.idempotency_key),
            )
        except stripe.StripeError as e:
            logger.error("stripe_invoice_item_failed", customer=item.customer_ref, error=str(e))
            raise ProviderError(f"Failed to create invoice item: {e}")

        logger.info(
            "stripe_invoice_item_created",
            invoice_item_id=invoice_item.id,
            customer=item.customer_ref,
            amount_cents=item.amount_cents,
        )
        return invoice_item.id

    def change_subscription_price(self, change: SubscriptionChange) -> str:
        if not self._initialized:
            return change.subscription_ref

        try:
            subscription = stripe.Subscription.retrieve(
                change.subscription_ref, **self._request_options(None)
            )
            items = subscription["items"]["data"]
            if not items:
                raise ProviderError(f"Subscription {change.subscription_ref} has no items")
            updated = stripe.Subscription.modify(
                change.subscription_ref,
                items=[{"id": items[0]["id"], "price": change.price_ref}],
                proration_behavior="create_prorations" if change.prorate else "none",
                metadata=change.metadata,
                **self._request_options(change.idempotency_key),
            )
        except stripe.StripeError as e:
            logger.error("stripe_subscription_update_failed", subscription=change.subscription_ref, error=str(e))
            raise ProviderError(f"Failed to update subscription: {e}")

        logger.info(
            "stripe_subscription_updated",
            subscription=updated.id,
            price=change.price_ref,
            prorate=change.prorate,
        )
        return updated.id

    def construct_webhook_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify and decode a Stripe webhook.

        Returns {"type": ..., "id": ..., "object": {...}}.
        """
        if not self._initialized or not self.webhook_secret:
            logger.warning("stripe_webhook_not_configured")
            raise ProviderError("Webhook not configured")

        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError:
            logger.error("stripe_webhook_signature_invalid")
            raise ProviderError("Invalid webhook signature")
        except ValueError as e:
            logger.error("stripe_webhook_payload_invalid", error=str(e))
            raise ProviderError(f"Invalid webhook payload: {e}")

        logger.info("stripe_webhook_received", event_type=event.type, event_id=event.id)
        return {
            "type": event.type,
            "id": event.id,
            "object": event.data.object.to_dict(),
        }
