"""duplicate hub tables

Revision ID: 7c2e41a9d0b3
Revises:
Create Date: 2026-10-19 09:12:44.301275

Creates the tables this service owns. The marketplace tables (users,
admins, bookings, ...) already exist and are migrated by the marketplace
app. The merge_status / merged_into_user_id / merged_at columns on users
are added here when missing.
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = '7c2e41a9d0b3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _user_columns() -> set:
    inspector = sa.inspect(op.get_bind())
    return {c["name"] for c in inspector.get_columns("users")}


def upgrade() -> None:
    existing = _user_columns()
    if "merge_status" not in existing:
        op.add_column("users", sa.Column("merge_status", sa.String(20), nullable=True))
        op.create_index("ix_users_merge_status", "users", ["merge_status"])
    if "merged_into_user_id" not in existing:
        op.add_column("users", sa.Column("merged_into_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True))
    if "merged_at" not in existing:
        op.add_column("users", sa.Column("merged_at", sa.DateTime(), nullable=True))

    op.create_table(
        "admin_audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("admin_id", sa.Integer(), sa.ForeignKey("admins.id"), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(100), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_admin_audit_logs_admin_id", "admin_audit_logs", ["admin_id"])
    op.create_index("ix_admin_audit_logs_action", "admin_audit_logs", ["action"])
    op.create_index("ix_admin_audit_logs_created_at", "admin_audit_logs", ["created_at"])

    op.create_table(
        "duplicatecases",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("key", sa.String(500), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("confidence", sa.Integer(), nullable=False),
        sa.Column("signals", sa.JSON(), nullable=False),
        sa.Column("primary", sa.JSON(), nullable=False),
        sa.Column("duplicates", sa.JSON(), nullable=False),
        sa.Column("suggested_action", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("assignee_id", sa.Integer(), sa.ForeignKey("admins.id"), nullable=True),
        sa.Column("reviewed_by_id", sa.Integer(), sa.ForeignKey("admins.id"), nullable=True),
        sa.Column("notes", sa.Text(), nullable=False),
        sa.Column("resolution_summary", sa.Text(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("entity_type", "key", name="uq_duplicate_case_entity_key"),
    )
    op.create_index("ix_duplicatecases_status_updated", "duplicatecases", ["status", "updated_at"])
    op.create_index(
        "ix_duplicatecases_assignee_status", "duplicatecases", ["assignee_id", "status", "updated_at"]
    )

    op.create_table(
        "duplicatemergeoperations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("source_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("target_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("performed_by_id", sa.Integer(), sa.ForeignKey("admins.id"), nullable=False),
        sa.Column("duplicate_case_id", sa.Integer(), sa.ForeignKey("duplicatecases.id"), nullable=True),
        sa.Column("note", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("rollback_expires_at", sa.DateTime(), nullable=False),
        sa.Column("rolled_back_at", sa.DateTime(), nullable=True),
        sa.Column("rolled_back_by_id", sa.Integer(), sa.ForeignKey("admins.id"), nullable=True),
        sa.Column("source_snapshot", sa.JSON(), nullable=False),
        sa.Column("target_snapshot", sa.JSON(), nullable=False),
        sa.Column("moved_refs", sa.JSON(), nullable=False),
        sa.Column("moved_doc_public_ids", sa.JSON(), nullable=False),
        sa.Column("moved_doc_image_urls", sa.JSON(), nullable=False),
        sa.Column("partial_failure", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    for column in ("source_user_id", "target_user_id", "status", "rollback_expires_at", "created_at"):
        op.create_index(f"ix_duplicatemergeoperations_{column}", "duplicatemergeoperations", [column])


def downgrade() -> None:
    op.drop_table("duplicatemergeoperations")
    op.drop_table("duplicatecases")
    op.drop_table("admin_audit_logs")
