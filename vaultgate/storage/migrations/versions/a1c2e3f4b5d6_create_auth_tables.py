"""Create admin auth tables.

Revision ID: a1c2e3f4b5d6
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlmodel.sql.sqltypes import AutoString

# revision identifiers, used by Alembic
revision = "a1c2e3f4b5d6"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "admin_users",
        sa.Column("id", AutoString(), primary_key=True),
        sa.Column("email", AutoString(), nullable=False, unique=True),
        sa.Column("name", AutoString(), nullable=False, server_default=""),
        sa.Column("password_hash", AutoString(), nullable=False),
        sa.Column("role", AutoString(), nullable=False, server_default="ADMIN"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("locked_until", sa.DateTime(), nullable=True),
        sa.Column("biometric_enabled", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("vault_pin_hash", AutoString(), nullable=True),
        sa.Column("last_login_at", sa.DateTime(), nullable=True),
        sa.Column("last_login_ip", AutoString(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_admin_users_email", "admin_users", ["email"])

    op.create_table(
        "webauthn_credentials",
        sa.Column("id", AutoString(), primary_key=True),
        sa.Column("user_id", AutoString(), sa.ForeignKey("admin_users.id"), nullable=False),
        sa.Column("credential_id", sa.LargeBinary(), nullable=False, unique=True),
        sa.Column("public_key", sa.LargeBinary(), nullable=False),
        sa.Column("sign_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("device_name", AutoString(), nullable=False, server_default="Biometric Device"),
        sa.Column("device_type", AutoString(), nullable=False, server_default="platform"),
        sa.Column("transports", AutoString(), nullable=False, server_default="[]"),
        sa.Column("aaguid", AutoString(), nullable=False, server_default=""),
        sa.Column("backed_up", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("last_used_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_webauthn_credentials_user_id", "webauthn_credentials", ["user_id"])

    op.create_table(
        "vault_pin_states",
        sa.Column("user_id", AutoString(), primary_key=True),
        sa.Column("failed_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_failed_at", sa.DateTime(), nullable=True),
        sa.Column("locked_until", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "biometric_config",
        sa.Column("id", AutoString(), primary_key=True),
        sa.Column("biometric_enabled", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("allow_enrollment", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("notes", AutoString(), nullable=False, server_default=""),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "admin_login_attempts",
        sa.Column("id", AutoString(), primary_key=True),
        sa.Column("email", AutoString(), nullable=False),
        sa.Column("admin_user_id", AutoString(), nullable=True),
        sa.Column("attempt_type", AutoString(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("failure_reason", AutoString(), nullable=True),
        sa.Column("ip_address", AutoString(), nullable=False, server_default=""),
        sa.Column("user_agent", AutoString(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_admin_login_attempts_email", "admin_login_attempts", ["email"])
    op.create_index(
        "ix_admin_login_attempts_admin_user_id", "admin_login_attempts", ["admin_user_id"]
    )

    op.create_table(
        "admin_activity_log",
        sa.Column("id", AutoString(), primary_key=True),
        sa.Column("admin_user_id", AutoString(), nullable=True),
        sa.Column("action", AutoString(), nullable=False),
        sa.Column("resource_type", AutoString(), nullable=False, server_default=""),
        sa.Column("description", AutoString(), nullable=False, server_default=""),
        sa.Column("severity", AutoString(), nullable=False, server_default="info"),
        sa.Column("details_json", AutoString(), nullable=False, server_default="{}"),
        sa.Column("ip_address", AutoString(), nullable=False, server_default=""),
        sa.Column("user_agent", AutoString(), nullable=False, server_default=""),
        sa.Column("request_id", AutoString(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_admin_activity_log_action", "admin_activity_log", ["action"])
    op.create_index(
        "ix_admin_activity_log_admin_user_id", "admin_activity_log", ["admin_user_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_admin_activity_log_admin_user_id", table_name="admin_activity_log")
    op.drop_index("ix_admin_activity_log_action", table_name="admin_activity_log")
    op.drop_table("admin_activity_log")
    op.drop_index("ix_admin_login_attempts_admin_user_id", table_name="admin_login_attempts")
    op.drop_index("ix_admin_login_attempts_email", table_name="admin_login_attempts")
    op.drop_table("admin_login_attempts")
    op.drop_table("biometric_config")
    op.drop_table("vault_pin_states")
    op.drop_index("ix_webauthn_credentials_user_id", table_name="webauthn_credentials")
    op.drop_table("webauthn_credentials")
    op.drop_index("ix_admin_users_email", table_name="admin_users")
    op.drop_table("admin_users")
