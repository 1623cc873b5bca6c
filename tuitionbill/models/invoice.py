from .base import (
    Base,
    Column,
    String,
    Integer,
    Boolean,
    Numeric,
    Date,
    DateTime,
    Text,
    ForeignKey,
    Index,
    UniqueConstraint,
    relationship,
)


class BillingRun(Base):
    __tablename__ = "billing_runs"

    id = Column(String(64), primary_key=True)
    org_id = Column(String(64), ForeignKey("organisations.id"), nullable=False, index=True)
    run_type = Column(String(32), nullable=False, default="manual")
    billing_mode = Column(String(16), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    fallback_rate_minor = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="processing")  # processing/completed/partial/failed
    summary_json = Column(Text)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("org_id", "invoice_number", name="uq_invoices_org_number"),
        Index("ix_invoices_org_payer", "org_id", "payer_type", "payer_id"),
    )

    id = Column(String(64), primary_key=True)
    org_id = Column(String(64), ForeignKey("organisations.id"), nullable=False, index=True)
    invoice_number = Column(String(32), nullable=False)
    billing_run_id = Column(String(64), ForeignKey("billing_runs.id"), nullable=True, index=True)
    payer_type = Column(String(16), nullable=False)  # guardian/student
    payer_id = Column(String(64), nullable=False)
    subtotal_minor = Column(Integer, nullable=False, default=0)
    tax_minor = Column(Integer, nullable=False, default=0)
    credit_offset_minor = Column(Integer, nullable=False, default=0)
    total_minor = Column(Integer, nullable=False, default=0)
    paid_minor = Column(Integer, nullable=False, default=0)
    vat_rate_percent = Column(Numeric(5, 2), nullable=False, default=0)
    currency_code = Column(String(8), nullable=False, default="GBP")
    status = Column(String(16), nullable=False, default="draft")  # draft/sent/overdue/paid/void
    payment_plan_enabled = Column(Boolean, nullable=False, default=False)
    issue_date = Column(Date)
    due_date = Column(Date)
    sent_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    voided_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    items = relationship(
        "InvoiceItem",
        back_populates="invoice",
        lazy="selectin",
        order_by="InvoiceItem.position",
        cascade="all, delete-orphan",
    )


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id = Column(String(64), primary_key=True)
    invoice_id = Column(String(64), ForeignKey("invoices.id"), nullable=False, index=True)
    org_id = Column(String(64), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    lesson_id = Column(String(64), nullable=False, index=True)
    student_id = Column(String(64), nullable=True)
    description = Column(String(255), default="")
    rate_minor = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    amount_minor = Column(Integer, nullable=False)

    invoice = relationship("Invoice", back_populates="items")


class BilledLesson(Base):
    """Billing ledger index: one row per (lesson, payer) on a non-void invoice."""

    __tablename__ = "billed_lessons"
    __table_args__ = (
        UniqueConstraint("org_id", "lesson_id", "payer_type", "payer_id", name="uq_billed_lessons_lesson_payer"),
        Index("ix_billed_lessons_org_lesson", "org_id", "lesson_id"),
    )

    id = Column(String(64), primary_key=True)
    org_id = Column(String(64), nullable=False)
    lesson_id = Column(String(64), nullable=False)
    payer_type = Column(String(16), nullable=False)
    payer_id = Column(String(64), nullable=False)
    invoice_id = Column(String(64), ForeignKey("invoices.id"), nullable=False, index=True)
    created_at = Column(DateTime)
