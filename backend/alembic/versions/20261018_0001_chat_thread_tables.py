"""Create chat thread/participant/shipper/message-audit tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "chat_threads",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("quote_id", sa.String(length=128), nullable=True),
        sa.Column("shipment_id", sa.String(length=128), nullable=True),
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("shipper_branch_org_id", sa.String(length=128), nullable=True),
        sa.Column("gallery_branch_org_id", sa.String(length=128), nullable=True),
        sa.Column("scope_key", sa.String(length=640), nullable=False),
        sa.Column("provider_conversation_id", sa.String(length=128), nullable=False),
        sa.Column("provider_unique_name", sa.String(length=256), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        sa.Column("conversation_type", sa.String(length=32), nullable=False, server_default="gallery"),
        sa.Column("initiator_shipper_org_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("scope_key"),
        sa.UniqueConstraint("provider_unique_name"),
    )
    op.create_index("ix_chat_threads_quote_id", "chat_threads", ["quote_id"], unique=False)
    op.create_index("ix_chat_threads_shipment_id", "chat_threads", ["shipment_id"], unique=False)
    op.create_index(
        "ix_chat_threads_provider_conversation_id",
        "chat_threads",
        ["provider_conversation_id"],
        unique=False,
    )

    op.create_table(
        "chat_thread_participants",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("thread_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("provider_identity", sa.String(length=256), nullable=False),
        sa.Column("provider_role_ref", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("left_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_read_message_index", sa.Integer(), nullable=True),
        sa.Column("last_read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["thread_id"], ["chat_threads.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("thread_id", "user_id", name="uq_chat_thread_participants_thread_user"),
    )
    op.create_index(
        "ix_chat_thread_participants_thread_id",
        "chat_thread_participants",
        ["thread_id"],
        unique=False,
    )
    op.create_index(
        "ix_chat_thread_participants_provider_identity",
        "chat_thread_participants",
        ["provider_identity"],
        unique=False,
    )

    op.create_table(
        "chat_thread_shippers",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("thread_id", sa.String(length=64), nullable=False),
        sa.Column("shipper_branch_org_id", sa.String(length=128), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["thread_id"], ["chat_threads.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("thread_id", "shipper_branch_org_id", name="uq_chat_thread_shippers_thread_branch"),
    )
    op.create_index("ix_chat_thread_shippers_thread_id", "chat_thread_shippers", ["thread_id"], unique=False)

    op.create_table(
        "chat_message_audit",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("thread_id", sa.String(length=64), nullable=False),
        sa.Column("message_sid", sa.String(length=128), nullable=False),
        sa.Column("author_identity", sa.String(length=256), nullable=False),
        sa.Column("author_user_id", sa.String(length=128), nullable=True),
        sa.Column("body_preview", sa.Text(), nullable=True),
        sa.Column("media_json", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivery_status", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["thread_id"], ["chat_threads.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("thread_id", "message_sid", name="uq_chat_message_audit_thread_message"),
    )
    op.create_index("ix_chat_message_audit_thread_id", "chat_message_audit", ["thread_id"], unique=False)
    op.create_index("ix_chat_message_audit_sent_at", "chat_message_audit", ["sent_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_chat_message_audit_sent_at", table_name="chat_message_audit")
    op.drop_index("ix_chat_message_audit_thread_id", table_name="chat_message_audit")
    op.drop_table("chat_message_audit")

    op.drop_index("ix_chat_thread_shippers_thread_id", table_name="chat_thread_shippers")
    op.drop_table("chat_thread_shippers")

    op.drop_index("ix_chat_thread_participants_provider_identity", table_name="chat_thread_participants")
    op.drop_index("ix_chat_thread_participants_thread_id", table_name="chat_thread_participants")
    op.drop_table("chat_thread_participants")

    op.drop_index("ix_chat_threads_provider_conversation_id", table_name="chat_threads")
    op.drop_index("ix_chat_threads_shipment_id", table_name="chat_threads")
    op.drop_index("ix_chat_threads_quote_id", table_name="chat_threads")
    op.drop_table("chat_threads")
