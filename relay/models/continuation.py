import uuid

from sqlalchemy import JSON, Column, DateTime, Text, Uuid
from sqlalchemy.sql import func

from relay.database import Base


class Continuation(Base):
    __tablename__ = "continuations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    payload_json = Column(JSON, nullable=False)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, CONSUMED
    run_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
