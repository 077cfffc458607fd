"""Create messages table

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

What:  Creates the ``messages`` table the message routes read and write.
How:   Portable column types so the same revision runs on PostgreSQL (JSONB)
       and SQLite (JSON stored as text) in tests.

Rollback: downgrade() drops the table and its index (destructive).
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "messages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column(
            "queued",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column(
            "message",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    # "queued messages of one user" is the hot lookup
    op.create_index(
        "idx_messages_user_id_queued",
        "messages",
        ["user_id", "queued"],
    )


def downgrade() -> None:
    op.drop_index("idx_messages_user_id_queued", table_name="messages")
    op.drop_table("messages")
