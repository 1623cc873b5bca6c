from .base import Base, Column, String, Integer, Boolean, Numeric, DateTime, ForeignKey, Index


class Organisation(Base):
    """Local mirror of the org configuration store. None falls back to cfg defaults."""

    __tablename__ = "organisations"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), default="")
    vat_enabled = Column(Boolean, nullable=False, default=False)
    vat_rate_percent = Column(Numeric(5, 2), nullable=False, default=0)
    cancellation_notice_hours = Column(Integer, nullable=True)
    billing_mode = Column(String(16), nullable=True)  # delivered/upfront
    suppress_zero_invoices = Column(Boolean, nullable=True)
    invoice_due_days = Column(Integer, nullable=True)
    currency_code = Column(String(8), nullable=True)
    invoice_seq = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class RateCard(Base):
    __tablename__ = "rate_cards"
    __table_args__ = (Index("ix_rate_cards_org_duration", "org_id", "duration_mins"),)

    id = Column(String(64), primary_key=True)
    org_id = Column(String(64), ForeignKey("organisations.id"), nullable=False)
    duration_mins = Column(Integer, nullable=False)
    rate_minor = Column(Integer, nullable=False)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime)
