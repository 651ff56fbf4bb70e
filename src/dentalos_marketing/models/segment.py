"""Patient segment models."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from dentalos_marketing.core.enums import TokenEnum
from dentalos_marketing.db.base import Base


class SegmentKind(TokenEnum):
    """Dynamic segments are rule driven; static segments hold an explicit member set."""

    DYNAMIC = "dynamic"
    STATIC = "static"


class Segment(Base):
    """Named patient audience scoped to a tenant."""

    __tablename__ = "marketing_segments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    kind = Column(SqlEnum(SegmentKind, name="marketing_segment_kind"), nullable=False)
    rule_groups = Column(JSON, nullable=False, default=list)
    cached_count = Column(Integer, nullable=False, default=0)
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)
    refresh_interval_seconds = Column(Integer, nullable=True)
    is_archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    members = relationship("SegmentMember", back_populates="segment", cascade="all, delete-orphan")


class SegmentMember(Base):
    """Explicit membership row for static segments."""

    __tablename__ = "marketing_segment_members"
    __table_args__ = (
        UniqueConstraint("segment_id", "patient_id", name="uq_marketing_segment_members_patient"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    segment_id = Column(
        UUID(as_uuid=True), ForeignKey("marketing_segments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    patient_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    added_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    segment = relationship("Segment", back_populates="members")
