from .base import Base, Column, String, Integer, DateTime, Text, ForeignKey, Index


class MakeUpCredit(Base):
    __tablename__ = "make_up_credits"
    __table_args__ = (Index("ix_make_up_credits_org_student", "org_id", "student_id"),)

    id = Column(String(64), primary_key=True)
    org_id = Column(String(64), ForeignKey("organisations.id"), nullable=False)
    student_id = Column(String(64), nullable=False)
    issued_for_lesson_id = Column(String(64), nullable=True)
    credit_value_minor = Column(Integer, nullable=False)
    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    redeemed_at = Column(DateTime, nullable=True)
    redeemed_lesson_id = Column(String(64), nullable=True)
    applied_invoice_id = Column(String(64), nullable=True, index=True)  # set when used as an invoice offset
    expiry_warned_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
