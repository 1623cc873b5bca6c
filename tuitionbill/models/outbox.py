from .base import Base, Column, String, Integer, DateTime, Text


class OutboxEvent(Base):
    __tablename__ = "billing_outbox"

    id = Column(String(64), primary_key=True)
    org_id = Column(String(64), index=True)
    event_type = Column(String(64), nullable=False, index=True)
    ref_id = Column(String(64), nullable=True)
    payload_json = Column(Text)
    status = Column(String(16), nullable=False, default="pending", index=True)  # pending/delivered/failed
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, index=True)
    delivered_at = Column(DateTime, nullable=True)
