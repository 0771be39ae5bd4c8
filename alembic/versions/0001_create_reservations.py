from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "providers",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("hourly_rate", sa.Float(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("pending_requests", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("booking_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_bookings", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_busy", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("next_available_date", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("pending_requests >= 0", name="ck_providers_pending_requests"),
        sa.CheckConstraint("booking_count >= 0", name="ck_providers_booking_count"),
        sa.CheckConstraint("completed_bookings >= 0", name="ck_providers_completed_bookings"),
    )

    op.create_table(
        "reservations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("requester_id", sa.String(), nullable=False),
        sa.Column("provider_id", sa.String(), sa.ForeignKey("providers.id"), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("slot_key", sa.String(), nullable=True),
        sa.Column("urgency", sa.String(), nullable=False, server_default="Normal"),
        sa.Column("hourly_rate", sa.Float(), nullable=False),
        sa.Column("total_hours", sa.Integer(), nullable=False),
        sa.Column("total_amount", sa.Float(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("end_at > start_at", name="ck_reservations_window"),
        sa.UniqueConstraint("slot_key", name="uq_reservations_slot_key"),
    )
    op.create_index("ix_reservations_requester_id", "reservations", ["requester_id"], unique=False)
    op.create_index("ix_reservations_provider_id", "reservations", ["provider_id"], unique=False)
    op.create_index("ix_reservations_status", "reservations", ["status"], unique=False)
    op.create_index("ix_reservations_provider_status", "reservations", ["provider_id", "status"], unique=False)
    op.create_index("ix_reservations_requester_status", "reservations", ["requester_id", "status"], unique=False)

    op.create_table(
        "reservation_status_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("reservation_id", sa.String(), sa.ForeignKey("reservations.id"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("actor_role", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_reservation_status_history_reservation_id",
        "reservation_status_history",
        ["reservation_id"],
        unique=False,
    )

def downgrade():
    op.drop_index("ix_reservation_status_history_reservation_id", table_name="reservation_status_history")
    op.drop_table("reservation_status_history")
    op.drop_index("ix_reservations_requester_status", table_name="reservations")
    op.drop_index("ix_reservations_provider_status", table_name="reservations")
    op.drop_index("ix_reservations_status", table_name="reservations")
    op.drop_index("ix_reservations_provider_id", table_name="reservations")
    op.drop_index("ix_reservations_requester_id", table_name="reservations")
    op.drop_table("reservations")
    op.drop_table("providers")
