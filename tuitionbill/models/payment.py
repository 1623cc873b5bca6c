from .base import Base, Column, String, Integer, DateTime, Text, ForeignKey


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(64), primary_key=True)
    org_id = Column(String(64), nullable=False, index=True)
    invoice_id = Column(String(64), ForeignKey("invoices.id"), nullable=False, index=True)
    installment_id = Column(String(64), nullable=True, index=True)  # kept after a plan is removed
    amount_minor = Column(Integer, nullable=False)
    provider = Column(String(32), nullable=False)
    provider_reference = Column(String(128), nullable=True)
    # sum of pending + succeeded refunds; the refund ceiling guard
    refund_reserved_minor = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime)


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(String(64), primary_key=True)
    org_id = Column(String(64), nullable=False, index=True)
    payment_id = Column(String(64), ForeignKey("payments.id"), nullable=False, index=True)
    invoice_id = Column(String(64), nullable=False, index=True)
    amount_minor = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="pending")  # pending/succeeded/failed
    reason = Column(Text, nullable=True)
    provider_reference = Column(String(128), nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime)
    settled_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime)
