"""Initial schema: subscriptions, promo codes and usage tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(name: str) -> bool:
    # Startup runs create_all before migrations, so tables may already be there
    return sa.inspect(op.get_bind()).has_table(name)


def upgrade() -> None:
    if not _table_exists("subscriptions"):
        op.create_table(
            "subscriptions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.String(64), nullable=False),
            sa.Column("tier", sa.String(20), nullable=False, server_default="free"),
            sa.Column("status", sa.String(20), nullable=False, server_default="active"),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("stripe_customer_id", sa.String(255), nullable=True),
            sa.Column("stripe_subscription_id", sa.String(255), nullable=True),
            sa.Column("promo_code", sa.String(64), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.UniqueConstraint("stripe_subscription_id"),
        )
        op.create_index("ix_subscriptions_id", "subscriptions", ["id"])
        op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"], unique=True)
        op.create_index("ix_subscriptions_stripe_customer_id", "subscriptions", ["stripe_customer_id"])

    if not _table_exists("promo_codes"):
        op.create_table(
            "promo_codes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("code", sa.String(64), nullable=False),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("max_uses", sa.Integer(), nullable=True),
            sa.Column("current_uses", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("type", sa.String(20), nullable=False, server_default="duration"),
            sa.Column("duration_months", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.CheckConstraint(
                "max_uses IS NULL OR current_uses <= max_uses",
                name="ck_promo_codes_uses_within_max",
            ),
        )
        op.create_index("ix_promo_codes_id", "promo_codes", ["id"])
        op.create_index("ix_promo_codes_code", "promo_codes", ["code"], unique=True)

    if not _table_exists("user_video_uploads"):
        op.create_table(
            "user_video_uploads",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.String(64), nullable=False),
            sa.Column("video_id", sa.String(255), nullable=True),
            sa.Column("duration_seconds", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("uploaded_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_user_video_uploads_id", "user_video_uploads", ["id"])
        op.create_index("ix_user_video_uploads_user_id", "user_video_uploads", ["user_id"])
        op.create_index(
            "ix_user_video_uploads_user_uploaded", "user_video_uploads", ["user_id", "uploaded_at"]
        )

    if not _table_exists("vocal_exercise_completions"):
        op.create_table(
            "vocal_exercise_completions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.String(64), nullable=False),
            sa.Column("video_id", sa.String(255), nullable=False),
            sa.Column("completed_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_vocal_exercise_completions_id", "vocal_exercise_completions", ["id"])
        op.create_index("ix_vocal_exercise_completions_user_id", "vocal_exercise_completions", ["user_id"])
        op.create_index(
            "ix_vocal_exercise_completions_user_completed",
            "vocal_exercise_completions",
            ["user_id", "completed_at"],
        )


def downgrade() -> None:
    op.drop_table("vocal_exercise_completions")
    op.drop_table("user_video_uploads")
    op.drop_table("promo_codes")
    op.drop_table("subscriptions")
