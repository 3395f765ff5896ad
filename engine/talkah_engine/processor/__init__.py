"""Payment processor interface and its Stripe implementation."""

from talkah_engine.processor.base import PaymentProcessor, ProcessorConfirmation

__all__ = ["PaymentProcessor", "ProcessorConfirmation"]
