from .base import (
    Base,
    Column,
    String,
    Integer,
    Date,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    relationship,
)


class InstallmentPlan(Base):
    __tablename__ = "installment_plans"

    id = Column(String(64), primary_key=True)
    org_id = Column(String(64), nullable=False, index=True)
    invoice_id = Column(String(64), ForeignKey("invoices.id"), nullable=False, unique=True)
    plan_type = Column(String(16), nullable=False, default="equal")  # equal/custom
    frequency = Column(String(16), nullable=True)  # weekly/fortnightly/monthly
    installment_count = Column(Integer, nullable=False)
    created_at = Column(DateTime)

    installments = relationship(
        "Installment",
        back_populates="plan",
        lazy="selectin",
        order_by="Installment.sequence_number",
        cascade="all, delete-orphan",
    )


class Installment(Base):
    __tablename__ = "installments"
    __table_args__ = (UniqueConstraint("plan_id", "sequence_number", name="uq_installments_plan_seq"),)

    id = Column(String(64), primary_key=True)
    plan_id = Column(String(64), ForeignKey("installment_plans.id"), nullable=False, index=True)
    invoice_id = Column(String(64), nullable=False, index=True)
    sequence_number = Column(Integer, nullable=False)
    amount_minor = Column(Integer, nullable=False)
    paid_minor = Column(Integer, nullable=False, default=0)
    due_date = Column(Date, nullable=False)
    status = Column(String(16), nullable=False, default="pending")  # pending/paid/overdue
    paid_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime)

    plan = relationship("InstallmentPlan", back_populates="installments")
