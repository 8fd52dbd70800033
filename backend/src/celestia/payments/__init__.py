"""Payment processor integration."""

from celestia.payments.stripe_service import PaymentProcessorError, StripeSubscriptionGateway

__all__ = ["PaymentProcessorError", "StripeSubscriptionGateway"]
