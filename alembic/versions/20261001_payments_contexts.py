"""create payments and checkout contexts"""
from alembic import op
import sqlalchemy as sa

revision = "20261001_payments_contexts"
down_revision = None
branch_labels = None
depends_on = None

PAYMENT_STATUS = sa.Enum("PENDING", "PAID", "REFUNDED", "FAILED", name="paymentstatus")
CONTEXT_TYPE = sa.Enum("BOOKING", "CART", name="contexttype")
CONTEXT_STATUS = sa.Enum("INIT", "PAID", name="contextstatus")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("package_type", sa.String(length=255), nullable=False),
        sa.Column("status", PAYMENT_STATUS, nullable=False),
        sa.Column("transaction_id", sa.String(length=255), nullable=True),
        sa.Column("processor_session_id", sa.String(length=255), nullable=True),
        sa.Column("payment_date", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name=op.f("ck_payments_positive_amount")),
        sa.CheckConstraint(
            "(transaction_id IS NOT NULL AND status IN ('PAID', 'REFUNDED'))"
            " OR (transaction_id IS NULL AND status IN ('PENDING', 'FAILED'))",
            name=op.f("ck_payments_transaction_matches_status"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_payments")),
        sa.UniqueConstraint("transaction_id", name=op.f("uq_payments_transaction_id")),
        sa.UniqueConstraint("processor_session_id", name=op.f("uq_payments_processor_session_id")),
    )
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_email", "payments", ["email"])
    op.create_index("ix_payments_payment_date", "payments", ["payment_date"])

    op.create_table(
        "checkout_contexts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("token", sa.String(length=64), nullable=False),
        sa.Column("type", CONTEXT_TYPE, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("package_type", sa.String(length=255), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("booking_data", sa.JSON(), nullable=True),
        sa.Column("cart", sa.JSON(), nullable=True),
        sa.Column("status", CONTEXT_STATUS, nullable=False),
        sa.Column("payment_id", sa.Integer(), nullable=True),
        sa.Column("booking_forwarded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("forward_error", sa.String(length=500), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["payment_id"],
            ["payments.id"],
            name=op.f("fk_checkout_contexts_payment_id_payments"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_checkout_contexts")),
        sa.UniqueConstraint("token", name=op.f("uq_checkout_contexts_token")),
    )
    op.create_index("ix_checkout_contexts_status", "checkout_contexts", ["status"])
    op.create_index("ix_checkout_contexts_payment_id", "checkout_contexts", ["payment_id"])


def downgrade() -> None:
    op.drop_index("ix_checkout_contexts_payment_id", table_name="checkout_contexts")
    op.drop_index("ix_checkout_contexts_status", table_name="checkout_contexts")
    op.drop_table("checkout_contexts")
    op.drop_index("ix_payments_payment_date", table_name="payments")
    op.drop_index("ix_payments_email", table_name="payments")
    op.drop_index("ix_payments_status", table_name="payments")
    op.drop_table("payments")

    bind = op.get_bind()
    for enum_type in (CONTEXT_STATUS, CONTEXT_TYPE, PAYMENT_STATUS):
        enum_type.drop(bind, checkfirst=True)
