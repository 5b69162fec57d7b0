from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint, func
from app.core.database import Base


class ProcessedWebhookEvent(Base):
    """処理済みWebhook (冪等性キー)"""
    __tablename__ = "processed_webhook_events"
    __table_args__ = (
        UniqueConstraint("event_type", "event_key", name="uq_processed_webhook_events_type_key"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(32), nullable=False)
    event_key = Column(String(255), nullable=False, comment="TransactionId 等")
    processed_at = Column(DateTime, nullable=False, server_default=func.now())
