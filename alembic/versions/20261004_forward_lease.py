"""lease column guarding booking forwards"""
from alembic import op
import sqlalchemy as sa

revision = "20261004_forward_lease"
down_revision = "20261003_keys_audit_webhooks"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("checkout_contexts") as batch_op:
        batch_op.add_column(sa.Column("forward_attempt_at", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("checkout_contexts") as batch_op:
        batch_op.drop_column("forward_attempt_at")
