"""create revocation ledger and issued certificate registry

Revision ID: 0001_create_ca_tables
Revises:
Create Date: 2026-10-16 00:00:00
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_create_ca_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "crl_entries",
        sa.Column("entry_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("serial_number", sa.String(64), nullable=False),
        sa.Column("reason", sa.Text(), server_default="unspecified", nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("serial_number", name="uq_crl_entries_serial_number"),
    )
    op.create_index("ix_crl_entries_revoked_at", "crl_entries", ["revoked_at"], unique=False)

    op.create_table(
        "issued_certificates",
        sa.Column("certificate_id", sa.Uuid(), primary_key=True),
        sa.Column("serial_number", sa.String(64), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("thumbprint", sa.String(64), nullable=False),
        sa.Column("not_before", sa.DateTime(timezone=True), nullable=False),
        sa.Column("not_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revocation_reason", sa.Text(), nullable=True),
        sa.UniqueConstraint("serial_number", name="uq_issued_certificates_serial_number"),
    )
    op.create_index("ix_issued_certificates_email", "issued_certificates", ["email"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_issued_certificates_email", table_name="issued_certificates")
    op.drop_table("issued_certificates")
    op.drop_index("ix_crl_entries_revoked_at", table_name="crl_entries")
    op.drop_table("crl_entries")
