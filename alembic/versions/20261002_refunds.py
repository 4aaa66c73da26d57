"""create refunds with one open refund per payment"""
from alembic import op
import sqlalchemy as sa

revision = "20261002_refunds"
down_revision = "20261001_payments_contexts"
branch_labels = None
depends_on = None

REFUND_STATUS = sa.Enum(
    "REQUESTED", "PROCESSING", "APPROVED", "DENIED", "REFUNDED", "FAILED", name="refundstatus"
)
REFUND_REASON = sa.Enum(
    "ACCIDENTAL_PAYMENT", "SERVICE_ISSUE", "DUPLICATE_CHARGE", "OTHER", name="refundreason"
)
OPEN_STATUSES = "status IN ('REQUESTED', 'PROCESSING', 'APPROVED')"


def upgrade() -> None:
    op.create_table(
        "refunds",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("payment_id", sa.Integer(), nullable=False),
        sa.Column("user_email", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("reason", REFUND_REASON, nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("status", REFUND_STATUS, nullable=False),
        sa.Column("policy_window_days", sa.Integer(), nullable=False),
        sa.Column("processor_refund_id", sa.String(length=255), nullable=True),
        sa.Column("decision_by", sa.String(length=255), nullable=True),
        sa.Column("decision_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount > 0", name=op.f("ck_refunds_positive_amount")),
        sa.CheckConstraint("policy_window_days > 0", name=op.f("ck_refunds_positive_policy_window")),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"], name=op.f("fk_refunds_payment_id_payments")),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_refunds")),
        sa.UniqueConstraint("processor_refund_id", name=op.f("uq_refunds_processor_refund_id")),
    )
    op.create_index("ix_refunds_payment_id", "refunds", ["payment_id"])
    op.create_index("ix_refunds_status", "refunds", ["status"])
    op.create_index("ix_refunds_user_email", "refunds", ["user_email"])
    op.create_index(
        "uq_refunds_open_per_payment",
        "refunds",
        ["payment_id"],
        unique=True,
        sqlite_where=sa.text(OPEN_STATUSES),
        postgresql_where=sa.text(OPEN_STATUSES),
    )


def downgrade() -> None:
    op.drop_index("uq_refunds_open_per_payment", table_name="refunds")
    op.drop_index("ix_refunds_user_email", table_name="refunds")
    op.drop_index("ix_refunds_status", table_name="refunds")
    op.drop_index("ix_refunds_payment_id", table_name="refunds")
    op.drop_table("refunds")

    bind = op.get_bind()
    REFUND_REASON.drop(bind, checkfirst=True)
    REFUND_STATUS.drop(bind, checkfirst=True)
