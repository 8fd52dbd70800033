"""Add referral system tables

Revision ID: 002_referral
Revises: 001_initial
Create Date: 2026-10-17

Adds tables for:
- referral_codes: Unique codes for each user
- referrals: Referrer/referred relationships and their activation ledger
- referral_tier_rewards: Milestone bonuses already granted
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "002_referral"
down_revision: Union[str, None] = "001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create referral system tables."""

    op.create_table(
        "referral_codes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("code", sa.String(20), nullable=False),
        sa.Column("clicks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("conversions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )
    op.create_index("ix_referral_codes_code", "referral_codes", ["code"], unique=True)

    op.create_table(
        "referrals",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("referrer_user_id", sa.String(64), nullable=False),
        sa.Column("referred_user_id", sa.String(64), nullable=False),
        sa.Column("referral_code_id", sa.Integer(), nullable=True),
        sa.Column("activated_at", sa.DateTime(), nullable=True),
        sa.Column("activation_ip", sa.String(45), nullable=True),
        sa.Column("action_type", sa.String(50), nullable=True),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["referral_code_id"], ["referral_codes.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("referred_user_id"),
    )
    op.create_index("ix_referrals_referrer_user_id", "referrals", ["referrer_user_id"], unique=False)
    op.create_index("ix_referrals_activated_at", "referrals", ["activated_at"], unique=False)
    op.create_index("ix_referrals_activation_ip", "referrals", ["activation_ip"], unique=False)

    op.create_table(
        "referral_tier_rewards",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("tier", sa.Integer(), nullable=False),
        sa.Column("bonus_days", sa.Integer(), nullable=False),
        sa.Column("granted_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "tier", name="uq_referral_tier_rewards_user_tier"),
    )
    op.create_index("ix_referral_tier_rewards_user_id", "referral_tier_rewards", ["user_id"], unique=False)


def downgrade() -> None:
    """Drop referral system tables."""
    op.drop_table("referral_tier_rewards")
    op.drop_table("referrals")
    op.drop_table("referral_codes")
