"""create crm association tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _entity_columns() -> list[sa.Column]:
    return [
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("id", sa.String(length=128), nullable=False),
    ]


def _document_columns() -> list[sa.Column]:
    return [
        sa.Column("associations", sa.JSON(), nullable=True),
        sa.Column("reverse_index_rebuilt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "crm_deal",
        *_entity_columns(),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("stage", sa.String(length=64), nullable=True),
        sa.Column("associations", sa.JSON(), nullable=True),
        sa.Column("company_ids", sa.JSON(), nullable=True),
        sa.Column("contact_ids", sa.JSON(), nullable=True),
        sa.Column("salesperson_ids", sa.JSON(), nullable=True),
        sa.Column("location_ids", sa.JSON(), nullable=True),
        sa.Column("primary_company_id", sa.String(length=128), nullable=True),
        sa.Column("company_id", sa.String(length=128), nullable=True),
        sa.Column("company_name", sa.Text(), nullable=True),
        sa.Column("associations_rebuilt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("tenant_id", "id"),
    )

    op.create_table(
        "crm_company",
        *_entity_columns(),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("company_name", sa.Text(), nullable=True),
        sa.Column("domain", sa.Text(), nullable=True),
        sa.Column("website", sa.Text(), nullable=True),
        sa.Column("city", sa.Text(), nullable=True),
        sa.Column("has_active_deals", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_document_columns(),
        sa.PrimaryKeyConstraint("tenant_id", "id"),
    )

    op.create_table(
        "crm_contact",
        *_entity_columns(),
        sa.Column("full_name", sa.Text(), nullable=True),
        sa.Column("first_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        *_document_columns(),
        sa.PrimaryKeyConstraint("tenant_id", "id"),
    )

    op.create_table(
        "crm_salesperson",
        *_entity_columns(),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
        *_document_columns(),
        sa.PrimaryKeyConstraint("tenant_id", "id"),
    )

    op.create_table(
        "crm_location",
        *_entity_columns(),
        sa.Column("nickname", sa.Text(), nullable=True),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("city", sa.Text(), nullable=True),
        sa.Column("company_id", sa.String(length=128), nullable=True),
        *_document_columns(),
        sa.PrimaryKeyConstraint("tenant_id", "id"),
    )

    op.create_table(
        "crm_integrity_report",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("total_deals", sa.Integer(), nullable=False),
        sa.Column("missing_company_ids", sa.Integer(), nullable=False),
        sa.Column("missing_primary_company", sa.Integer(), nullable=False),
        sa.Column("companies_with_no_snapshot", sa.Integer(), nullable=False),
        sa.Column("contacts_with_no_snapshot", sa.Integer(), nullable=False),
        sa.Column("salespeople_with_no_snapshot", sa.Integer(), nullable=False),
        sa.Column("locations_with_no_snapshot", sa.Integer(), nullable=False),
        sa.Column("drifted_deal_ids", sa.JSON(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_integrity_report_tenant_created",
        "crm_integrity_report",
        ["tenant_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_integrity_report_tenant_created", table_name="crm_integrity_report")
    op.drop_table("crm_integrity_report")
    op.drop_table("crm_location")
    op.drop_table("crm_salesperson")
    op.drop_table("crm_contact")
    op.drop_table("crm_company")
    op.drop_table("crm_deal")
