"""initial release engine schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("project_id", sa.String(length=36), primary_key=True),
        sa.Column("public_id", sa.String(length=32), nullable=False, unique=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("client_id", sa.String(length=64)),
        sa.Column("payment_status", sa.String(length=16), nullable=False, server_default="UNPAID"),
        sa.Column("payment_provider", sa.String(length=16)),
        sa.Column("payment_required", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("payment_amount_cents", sa.Integer()),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="usd"),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("refunded_at", sa.DateTime(timezone=True)),
        sa.Column("payment_link_id", sa.String(length=255)),
        sa.Column("payment_link_url", sa.String(length=2048)),
        sa.Column("stripe_checkout_session_id", sa.String(length=255)),
        sa.Column("stripe_payment_intent_id", sa.String(length=255)),
        sa.Column("last_payment_event_id", sa.String(length=255)),
        sa.Column("portal_stage", sa.String(length=16), nullable=False, server_default="SCHEDULED"),
        sa.Column("last_update_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_projects_client_id", "projects", ["client_id"])
    op.create_index("ix_projects_stripe_payment_intent_id", "projects", ["stripe_payment_intent_id"])
    op.create_index("ix_projects_payment_status", "projects", ["payment_status"])

    op.create_table(
        "invoices",
        sa.Column("invoice_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "project_id",
            sa.String(length=36),
            sa.ForeignKey("projects.project_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("invoice_number", sa.String(length=32), nullable=False, unique=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="usd"),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_invoices_project_id", "invoices", ["project_id"])

    op.create_table(
        "payment_events",
        sa.Column("payment_event_id", sa.String(length=36), primary_key=True),
        sa.Column("provider", sa.String(length=16), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column(
            "project_id",
            sa.String(length=36),
            sa.ForeignKey("projects.project_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("error_msg", sa.Text()),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("payload_hash", sa.String(length=64)),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("event_id", name="uq_payment_events_event_id"),
    )
    op.create_index("ix_payment_events_project_id", "payment_events", ["project_id"])
    op.create_index("ix_payment_events_status", "payment_events", ["status"])

    op.create_table(
        "deliverables",
        sa.Column("deliverable_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "project_id",
            sa.String(length=36),
            sa.ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(length=16), nullable=False, server_default="DRAFT"),
        sa.Column("preview_key", sa.String(length=512)),
        sa.Column("download_key", sa.String(length=512)),
        sa.Column("watermark_status", sa.String(length=16), nullable=False),
        sa.Column("mime_type", sa.String(length=128), nullable=False),
        sa.Column("byte_size", sa.BigInteger(), nullable=False),
        sa.Column("original_filename", sa.String(length=255), nullable=False),
        sa.Column("uploaded_by", sa.String(length=100)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("project_id", "version", name="uq_deliverables_project_version"),
    )
    op.create_index("ix_deliverables_project_id", "deliverables", ["project_id"])

    op.create_table(
        "deliverable_feedback",
        sa.Column("feedback_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "project_id",
            sa.String(length=36),
            sa.ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "deliverable_id",
            sa.String(length=36),
            sa.ForeignKey("deliverables.deliverable_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("feedback_type", sa.String(length=32), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("submitted_by_name", sa.String(length=255), nullable=False),
        sa.Column("submitted_by_email", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        "ix_deliverable_feedback_deliverable_id", "deliverable_feedback", ["deliverable_id"]
    )

    op.create_table(
        "signoffs",
        sa.Column("signoff_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "project_id",
            sa.String(length=36),
            sa.ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "deliverable_id",
            sa.String(length=36),
            sa.ForeignKey("deliverables.deliverable_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("signed_by_name", sa.String(length=255), nullable=False),
        sa.Column("signed_by_email", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("signed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("project_id", name="uq_signoffs_project_id"),
    )


def downgrade() -> None:
    op.drop_table("signoffs")
    op.drop_index("ix_deliverable_feedback_deliverable_id", table_name="deliverable_feedback")
    op.drop_table("deliverable_feedback")
    op.drop_index("ix_deliverables_project_id", table_name="deliverables")
    op.drop_table("deliverables")
    op.drop_index("ix_payment_events_status", table_name="payment_events")
    op.drop_index("ix_payment_events_project_id", table_name="payment_events")
    op.drop_table("payment_events")
    op.drop_index("ix_invoices_project_id", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_projects_payment_status", table_name="projects")
    op.drop_index("ix_projects_stripe_payment_intent_id", table_name="projects")
    op.drop_index("ix_projects_client_id", table_name="projects")
    op.drop_table("projects")
