"""Create field_configurations"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261001_field_configurations"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "field_configurations",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("context", sa.String(length=20), nullable=False),
        sa.Column("field_name", sa.String(length=120), nullable=False),
        sa.Column("field_label", sa.String(length=255), nullable=False),
        sa.Column("field_type", sa.String(length=30), nullable=False, server_default="text"),
        sa.Column("category", sa.String(length=120), nullable=False),
        sa.Column("category_display_name", sa.String(length=255), nullable=True),
        sa.Column("is_repeatable_category", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("section", sa.String(length=255), nullable=True),
        sa.Column("required", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("read_only", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("options", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("display_conditional", postgresql.JSONB(), nullable=True),
        sa.Column("value_conditional", postgresql.JSONB(), nullable=True),
        sa.Column("visible_to_roles", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("placeholder", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("context", "field_name", name="uq_field_configurations_context_name"),
        sa.CheckConstraint("context IN ('application', 'loan')", name="ck_field_configurations_context"),
    )
    op.create_index("ix_field_configurations_context", "field_configurations", ["context"])


def downgrade() -> None:
    op.drop_index("ix_field_configurations_context", table_name="field_configurations")
    op.drop_table("field_configurations")
