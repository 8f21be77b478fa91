import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID

from fieldconfig.db.base import Base


class FieldConfiguration(Base):
    __tablename__ = "field_configurations"
    __table_args__ = (
        UniqueConstraint("context", "field_name", name="uq_field_configurations_context_name"),
        CheckConstraint(
            "context IN ('application', 'loan')",
            name="ck_field_configurations_context",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    context = Column(String(20), nullable=False, index=True)
    field_name = Column(String(120), nullable=False)
    field_label = Column(String(255), nullable=False)
    field_type = Column(String(30), nullable=False, default="text")
    category = Column(String(120), nullable=False)
    category_display_name = Column(String(255), nullable=True)
    is_repeatable_category = Column(Boolean, nullable=False, default=False)
    section = Column(String(255), nullable=True)
    required = Column(Boolean, nullable=False, default=False)
    read_only = Column(Boolean, nullable=False, default=False)
    options = Column(JSONB, nullable=False, default=list)
    display_order = Column(Integer, nullable=False, default=0)
    # Conditionals are stored as submitted; the evaluator tolerates malformed rows.
    display_conditional = Column(JSONB, nullable=True)
    value_conditional = Column(JSONB, nullable=True)
    visible_to_roles = Column(JSONB, nullable=False, default=list)
    placeholder = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
