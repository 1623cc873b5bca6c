"""
Payment gateway collaborator.

The engine only asks for a charge or a refund. Settlement of a refund is
reported back through payment_service.confirm_refund; a gateway that settles
synchronously returns status "succeeded" or "failed" from refund() directly.
"""

import uuid
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class ChargeResult:
    succeeded: bool
    provider_reference: str = ""
    error: str = ""


@dataclass
class RefundSubmission:
    provider_reference: str
    status: str = "pending"  # pending/succeeded/failed


class PaymentGateway:
    provider = "gateway"

    def charge(self, reference: str, amount_minor: int, currency_code: str) -> ChargeResult:
        raise NotImplementedError

    def refund(self, provider_reference: str, amount_minor: int, refund_id: str) -> RefundSubmission:
        raise NotImplementedError


@dataclass
class MockGateway(PaymentGateway):
    """In-process gateway for tests and the sandbox channel."""

    provider: str = "mock"
    decline: bool = False
    unavailable: bool = False
    settle_refunds: Optional[str] = None  # None leaves refunds pending
    charges: List[tuple] = field(default_factory=list)
    refunds: List[tuple] = field(default_factory=list)

    def charge(self, reference: str, amount_minor: int, currency_code: str) -> ChargeResult:
        if self.unavailable:
            raise ConnectionError("mock gateway unavailable")
        self.charges.append((reference, amount_minor, currency_code))
        if self.decline:
            return ChargeResult(succeeded=False, error="card_declined")
        return ChargeResult(succeeded=True, provider_reference=f"mock_ch_{uuid.uuid4().hex[:12]}")

    def refund(self, provider_reference: str, amount_minor: int, refund_id: str) -> RefundSubmission:
        if self.unavailable:
            raise ConnectionError("mock gateway unavailable")
        self.refunds.append((provider_reference, amount_minor, refund_id))
        return RefundSubmission(
            provider_reference=f"mock_re_{uuid.uuid4().hex[:12]}",
            status=self.settle_refunds or "pending",
        )
