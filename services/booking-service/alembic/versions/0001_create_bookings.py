from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_users_user_id", "users", ["user_id"], unique=True)

    op.create_table(
        "worker_profiles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("background_check_status", sa.String(), nullable=True),
        sa.Column("payout_onboarding_complete", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payout_destination", sa.String(), nullable=True),
        sa.Column("no_show_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reliability_score", sa.Integer(), nullable=False, server_default="100"),
    )
    op.create_index("ix_worker_profiles_user_id", "worker_profiles", ["user_id"], unique=True)

    op.create_table(
        "addresses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("address_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.user_id"), nullable=False),
    )
    op.create_index("ix_addresses_address_id", "addresses", ["address_id"], unique=True)
    op.create_index("ix_addresses_user_id", "addresses", ["user_id"], unique=False)

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("address_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("status_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("scheduled_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("subtotal", sa.Integer(), nullable=False),
        sa.Column("platform_fee", sa.Integer(), nullable=False),
        sa.Column("worker_amount", sa.Integer(), nullable=False),
        sa.Column("tip", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total", sa.Integer(), nullable=False),
        sa.Column("payment_intent_id", sa.String(), nullable=True),
        sa.Column("payment_status", sa.String(), nullable=False),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("en_route_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("arrived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(), nullable=True),
        sa.Column("cancellation_reason", sa.String(), nullable=True),
        sa.Column("refund_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint(
            "status IN ('requested','confirmed','assigned','en_route','arrived','in_progress',"
            "'completed','paid','reviewed','cancelled','no_show','disputed')",
            name="ck_bookings_status",
        ),
    )
    op.create_index("ix_bookings_booking_id", "bookings", ["booking_id"], unique=True)
    op.create_index("ix_bookings_customer_id", "bookings", ["customer_id"], unique=False)
    op.create_index("ix_bookings_worker_id", "bookings", ["worker_id"], unique=False)
    op.create_index("ix_bookings_status", "bookings", ["status"], unique=False)

    op.create_table(
        "status_updates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("update_id", sa.String(), nullable=False, unique=True),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("previous_status", sa.String(), nullable=False),
        sa.Column("new_status", sa.String(), nullable=False),
        sa.Column("updated_by", sa.String(), nullable=False),
        sa.Column("actor_role", sa.String(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
    )
    op.create_index("ix_status_updates_booking_id", "status_updates", ["booking_id"], unique=False)
    op.create_index("ix_status_updates_new_status", "status_updates", ["new_status"], unique=False)
    op.create_index("ix_status_updates_timestamp", "status_updates", ["timestamp"], unique=False)

    op.create_table(
        "payment_booking_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("transaction_id", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=True, unique=True),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("booking_id", sa.String(), nullable=True),
        sa.Column("payment_intent_id", sa.String(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("platform_fee", sa.Integer(), nullable=False),
        sa.Column("worker_amount", sa.Integer(), nullable=False),
        sa.Column("tip", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_payment_booking_transactions_transaction_id", "payment_booking_transactions", ["transaction_id"], unique=True)
    op.create_index("ix_payment_booking_transactions_customer_id", "payment_booking_transactions", ["customer_id"], unique=False)
    op.create_index("ix_payment_booking_transactions_booking_id", "payment_booking_transactions", ["booking_id"], unique=False)
    op.create_index("ix_payment_booking_transactions_status", "payment_booking_transactions", ["status"], unique=False)
    op.create_index("ix_payment_booking_transactions_created_at", "payment_booking_transactions", ["created_at"], unique=False)

    op.create_table(
        "payouts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("payout_id", sa.String(), nullable=False, unique=True),
        sa.Column("booking_id", sa.String(), nullable=False, unique=True),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("transfer_id", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_payouts_worker_id", "payouts", ["worker_id"], unique=False)


def downgrade():
    op.drop_index("ix_payouts_worker_id", table_name="payouts")
    op.drop_table("payouts")

    op.drop_index("ix_payment_booking_transactions_created_at", table_name="payment_booking_transactions")
    op.drop_index("ix_payment_booking_transactions_status", table_name="payment_booking_transactions")
    op.drop_index("ix_payment_booking_transactions_booking_id", table_name="payment_booking_transactions")
    op.drop_index("ix_payment_booking_transactions_customer_id", table_name="payment_booking_transactions")
    op.drop_index("ix_payment_booking_transactions_transaction_id", table_name="payment_booking_transactions")
    op.drop_table("payment_booking_transactions")

    op.drop_index("ix_status_updates_timestamp", table_name="status_updates")
    op.drop_index("ix_status_updates_new_status", table_name="status_updates")
    op.drop_index("ix_status_updates_booking_id", table_name="status_updates")
    op.drop_table("status_updates")

    op.drop_index("ix_bookings_status", table_name="bookings")
    op.drop_index("ix_bookings_worker_id", table_name="bookings")
    op.drop_index("ix_bookings_customer_id", table_name="bookings")
    op.drop_index("ix_bookings_booking_id", table_name="bookings")
    op.drop_table("bookings")

    op.drop_index("ix_addresses_user_id", table_name="addresses")
    op.drop_index("ix_addresses_address_id", table_name="addresses")
    op.drop_table("addresses")

    op.drop_index("ix_worker_profiles_user_id", table_name="worker_profiles")
    op.drop_table("worker_profiles")

    op.drop_index("ix_users_user_id", table_name="users")
    op.drop_table("users")
