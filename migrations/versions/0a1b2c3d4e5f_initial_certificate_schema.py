"""initial certificate schema

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "0a1b2c3d4e5f"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    insp = inspect(bind)
    existing_tables = set(insp.get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("email", sa.String(length=320), nullable=False, unique=True),
            sa.Column("name", sa.String(length=255), nullable=True),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )

    if "roles" not in existing_tables:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("key", sa.String(length=64), nullable=False, unique=True),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )

    if "permissions" not in existing_tables:
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("key", sa.String(length=128), nullable=False, unique=True),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )

    if "user_roles" not in existing_tables:
        op.create_table(
            "user_roles",
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        )

    if "role_permissions" not in existing_tables:
        op.create_table(
            "role_permissions",
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("permission_id", sa.Integer(), sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
        )

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("actor_user_email", sa.String(length=320), nullable=True),
            sa.Column("action", sa.String(length=128), nullable=False),
            sa.Column("entity_type", sa.String(length=128), nullable=True),
            sa.Column("entity_id", sa.String(length=128), nullable=True),
            sa.Column("reason", sa.String(length=512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("client_ip", sa.String(length=64), nullable=True),
        )

    if "residents" not in existing_tables:
        op.create_table(
            "residents",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("first_name", sa.String(length=128), nullable=False),
            sa.Column("middle_name", sa.String(length=128), nullable=True),
            sa.Column("last_name", sa.String(length=128), nullable=False),
            sa.Column("suffix", sa.String(length=16), nullable=True),
            sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )
        op.create_index("idx_residents_last_first", "residents", ["last_name", "first_name"])

    if "certificate_requests" not in existing_tables:
        op.create_table(
            "certificate_requests",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("resident_id", sa.Integer(), sa.ForeignKey("residents.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("requested_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("document_type", sa.String(length=64), nullable=False),
            sa.Column("purpose", sa.Text(), nullable=False),
            sa.Column("additional_requirements", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("remarks", sa.Text(), nullable=True),
            sa.Column("requested_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("approved_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("released_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("rejected_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("approved_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("released_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("rejected_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("deleted_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
        )
        op.create_index("idx_certificate_requests_resident_status", "certificate_requests", ["resident_id", "status"])
        op.create_index("idx_certificate_requests_type_status", "certificate_requests", ["document_type", "status"])
        op.create_index("idx_certificate_requests_requested_at", "certificate_requests", ["requested_at"])

    if "issued_certificates" not in existing_tables:
        op.create_table(
            "issued_certificates",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column(
                "certificate_request_id",
                sa.Integer(),
                sa.ForeignKey("certificate_requests.id", ondelete="SET NULL"),
                nullable=True,
                unique=True,
            ),
            sa.Column("resident_id", sa.Integer(), sa.ForeignKey("residents.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("issued_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("document_type", sa.String(length=64), nullable=False),
            sa.Column("document_number", sa.String(length=32), nullable=False, unique=True),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("purpose", sa.Text(), nullable=False),
            sa.Column("valid_from", sa.Date(), nullable=False),
            sa.Column("valid_until", sa.Date(), nullable=False),
            sa.Column("is_valid", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("invalidated_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("invalidated_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("invalidation_reason", sa.String(length=512), nullable=True),
            sa.Column("signer_name", sa.String(length=255), nullable=False),
            sa.Column("signer_title", sa.String(length=255), nullable=False),
            sa.Column("signed_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("qr_payload", sa.Text(), nullable=False),
            sa.Column("pdf_storage_key", sa.String(length=512), nullable=True),
            sa.Column("last_regenerated_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )
        op.create_index("idx_issued_certificates_resident_type", "issued_certificates", ["resident_id", "document_type"])
        op.create_index("idx_issued_certificates_validity", "issued_certificates", ["valid_from", "valid_until"])
        op.create_index("idx_issued_certificates_is_valid", "issued_certificates", ["is_valid"])

    if "certificate_sequences" not in existing_tables:
        op.create_table(
            "certificate_sequences",
            sa.Column("document_type", sa.String(length=64), primary_key=True, nullable=False),
            sa.Column("year", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("last_value", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
        )


def downgrade() -> None:
    """Downgrade schema."""
    for table in (
        "certificate_sequences",
        "issued_certificates",
        "certificate_requests",
        "residents",
        "audit_events",
        "role_permissions",
        "user_roles",
        "permissions",
        "roles",
        "users",
    ):
        op.drop_table(table)
