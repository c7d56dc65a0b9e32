"""Create fiscal profile, sales point and authorized document tables

Revision ID: 20261019_arca_fiscal_tables
Revises: None
Create Date: 2026-10-19 09:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261019_arca_fiscal_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "tenant_fiscal_profiles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("tax_id", sa.String(11), nullable=True),
        sa.Column("legal_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("fiscal_address", sa.String(500), nullable=False, server_default=""),
        sa.Column("regime", sa.String(50), nullable=False),
        sa.Column("activity_start", sa.Date(), nullable=True),
        sa.Column("encrypted_certificate", sa.Text(), nullable=False, server_default=""),
        sa.Column("encrypted_private_key", sa.Text(), nullable=False, server_default=""),
        sa.Column("certificate_expiry", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_tested_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_test_result", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", name="uq_tenant_fiscal_profiles_tenant_id"),
        sa.UniqueConstraint("tax_id", name="uq_tenant_fiscal_profiles_tax_id"),
        sa.CheckConstraint("regime IN ('monotributista', 'responsable_inscripto')", name="ck_profile_regime"),
    )

    op.create_table(
        "sales_points",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("profile_id", sa.String(), sa.ForeignKey("tenant_fiscal_profiles.id"), nullable=False),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(100), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("profile_id", "number", name="uq_sales_point_profile_number"),
        sa.CheckConstraint("number > 0 AND number <= 99999", name="ck_sales_point_number"),
    )
    op.create_index("ix_sales_points_tenant_id", "sales_points", ["tenant_id"])

    op.create_table(
        "authorized_documents",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("profile_id", sa.String(), sa.ForeignKey("tenant_fiscal_profiles.id"), nullable=False),
        sa.Column("sales_point_id", sa.String(), sa.ForeignKey("sales_points.id"), nullable=False),
        sa.Column("document_type", sa.Integer(), nullable=False),
        sa.Column("document_type_name", sa.String(50), nullable=False),
        sa.Column("authorization_code", sa.String(14), nullable=False),
        sa.Column("authorization_expiry", sa.Date(), nullable=False),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("sales_point_number", sa.Integer(), nullable=False),
        sa.Column("issue_date", sa.Date(), nullable=False),
        sa.Column("net", sa.Numeric(12, 2), nullable=False),
        sa.Column("tax", sa.Numeric(12, 2), nullable=False),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("buyer_name", sa.String(255), nullable=True),
        sa.Column("buyer_doc_type", sa.Integer(), nullable=False),
        sa.Column("buyer_doc_number", sa.String(20), nullable=False),
        sa.Column("buyer_fiscal_condition", sa.Integer(), nullable=True),
        sa.Column("items", sa.JSON(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("booking_id", sa.String(), nullable=True),
        sa.Column("original_document_id", sa.String(), sa.ForeignKey("authorized_documents.id"), nullable=True),
        sa.Column("associated", sa.JSON(), nullable=True),
        sa.Column("reason", sa.String(500), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'issued'")),
        sa.Column("voided_by_id", sa.String(), sa.ForeignKey("authorized_documents.id"), nullable=True),
        sa.Column("authority_response", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "profile_id",
            "document_type",
            "sales_point_number",
            "number",
            name="uq_document_profile_type_pv_number",
        ),
        sa.CheckConstraint("status IN ('issued', 'voided')", name="ck_document_status"),
    )
    op.create_index("ix_authorized_documents_tenant_id", "authorized_documents", ["tenant_id"])
    op.create_index("ix_authorized_documents_order_id", "authorized_documents", ["order_id"])
    op.create_index("ix_authorized_documents_booking_id", "authorized_documents", ["booking_id"])


def downgrade() -> None:
    op.drop_index("ix_authorized_documents_booking_id", table_name="authorized_documents")
    op.drop_index("ix_authorized_documents_order_id", table_name="authorized_documents")
    op.drop_index("ix_authorized_documents_tenant_id", table_name="authorized_documents")
    op.drop_table("authorized_documents")
    op.drop_index("ix_sales_points_tenant_id", table_name="sales_points")
    op.drop_table("sales_points")
    op.drop_table("tenant_fiscal_profiles")
