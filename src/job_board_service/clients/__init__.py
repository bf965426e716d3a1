"""HTTP clients for the Identity service and the payment processor."""

from job_board_service.clients.identity_client import IdentityClient
from job_board_service.clients.payment_processor_client import PaymentProcessorClient

__all__ = ["IdentityClient", "PaymentProcessorClient"]
