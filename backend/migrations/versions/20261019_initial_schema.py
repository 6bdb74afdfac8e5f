"""Initial vaccine stock ledger schema

Revision ID: 20261019_initial_schema
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=nullable)


def upgrade():
    # Administrative tree
    op.create_table(
        "regions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(120), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "communes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("region_id", sa.Integer(), nullable=False),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["region_id"], ["regions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("region_id", "name", name="uq_communes_region_name"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("communes", schema=None) as batch_op:
        batch_op.create_index("ix_communes_region_id", ["region_id"], unique=False)

    op.create_table(
        "districts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("commune_id", sa.Integer(), nullable=False),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["commune_id"], ["communes.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("commune_id", "name", name="uq_districts_commune_name"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("districts", schema=None) as batch_op:
        batch_op.create_index("ix_districts_commune_id", ["commune_id"], unique=False)

    op.create_table(
        "health_centers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("address", sa.String(255), nullable=True),
        sa.Column("district_id", sa.Integer(), nullable=False),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["district_id"], ["districts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("district_id", "name", name="uq_health_centers_district_name"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("health_centers", schema=None) as batch_op:
        batch_op.create_index("ix_health_centers_district_id", ["district_id"], unique=False)

    op.create_table(
        "vaccines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("doses_required", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
        sqlite_autoincrement=True,
    )

    # People
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(120), nullable=True),
        sa.Column("last_name", sa.String(120), nullable=True),
        sa.Column("role", sa.String(32), nullable=False),
        sa.Column("region_id", sa.Integer(), nullable=True),
        sa.Column("district_id", sa.Integer(), nullable=True),
        sa.Column("health_center_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["region_id"], ["regions.id"]),
        sa.ForeignKeyConstraint(["district_id"], ["districts.id"]),
        sa.ForeignKeyConstraint(["health_center_id"], ["health_centers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("users", schema=None) as batch_op:
        batch_op.create_index("ix_users_role", ["role"], unique=False)
        batch_op.create_index("ix_users_region_id", ["region_id"], unique=False)
        batch_op.create_index("ix_users_district_id", ["district_id"], unique=False)
        batch_op.create_index("ix_users_health_center_id", ["health_center_id"], unique=False)

    op.create_table(
        "children",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("first_name", sa.String(120), nullable=False),
        sa.Column("last_name", sa.String(120), nullable=False),
        sa.Column("birth_date", sa.Date(), nullable=True),
        sa.Column("health_center_id", sa.Integer(), nullable=False),
        sa.Column("next_appointment_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_vaccine_id", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["health_center_id"], ["health_centers.id"]),
        sa.ForeignKeyConstraint(["next_vaccine_id"], ["vaccines.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("children", schema=None) as batch_op:
        batch_op.create_index("ix_children_health_center_id", ["health_center_id"], unique=False)
        batch_op.create_index("ix_children_next_vaccine_id", ["next_vaccine_id"], unique=False)

    op.create_table(
        "child_vaccinations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("child_id", sa.Integer(), nullable=False),
        sa.Column("vaccine_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("dose", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("administered_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["child_id"], ["children.id"]),
        sa.ForeignKeyConstraint(["vaccine_id"], ["vaccines.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("child_vaccinations", schema=None) as batch_op:
        batch_op.create_index("ix_child_vaccinations_child_id", ["child_id"], unique=False)
        batch_op.create_index("ix_child_vaccinations_vaccine_id", ["vaccine_id"], unique=False)
        batch_op.create_index("ix_child_vaccinations_status", ["status"], unique=False)
        batch_op.create_index("ix_child_vaccinations_child_status", ["child_id", "status"], unique=False)
        batch_op.create_index("ix_child_vaccinations_vaccine_status", ["vaccine_id", "status"], unique=False)

    op.create_table(
        "visit_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("child_id", sa.Integer(), nullable=True),
        sa.Column("health_center_id", sa.Integer(), nullable=True),
        sa.Column("vaccine_id", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("recorded_at"),
        sa.ForeignKeyConstraint(["child_id"], ["children.id"]),
        sa.ForeignKeyConstraint(["health_center_id"], ["health_centers.id"]),
        sa.ForeignKeyConstraint(["vaccine_id"], ["vaccines.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("visit_records", schema=None) as batch_op:
        batch_op.create_index("ix_visit_records_child_id", ["child_id"], unique=False)
        batch_op.create_index("ix_visit_records_health_center_id", ["health_center_id"], unique=False)
        batch_op.create_index("ix_visit_records_vaccine_id", ["vaccine_id"], unique=False)

    # Stock
    op.create_table(
        "stock_lots",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_level", sa.String(16), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=True),
        sa.Column("vaccine_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("expiration", sa.Date(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="VALID"),
        sa.Column("source_lot_id", sa.Integer(), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("quantity >= 0", name="ck_stock_lots_quantity_non_negative"),
        sa.ForeignKeyConstraint(["vaccine_id"], ["vaccines.id"]),
        sa.ForeignKeyConstraint(["source_lot_id"], ["stock_lots.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("stock_lots", schema=None) as batch_op:
        batch_op.create_index("ix_stock_lots_owner_level", ["owner_level"], unique=False)
        batch_op.create_index("ix_stock_lots_owner_id", ["owner_id"], unique=False)
        batch_op.create_index("ix_stock_lots_vaccine_id", ["vaccine_id"], unique=False)
        batch_op.create_index("ix_stock_lots_expiration", ["expiration"], unique=False)
        batch_op.create_index("ix_stock_lots_status", ["status"], unique=False)
        batch_op.create_index("ix_stock_lots_source_lot_id", ["source_lot_id"], unique=False)
        batch_op.create_index("ix_stock_lots_owner_vaccine", ["owner_level", "owner_id", "vaccine_id"], unique=False)
        batch_op.create_index("ix_stock_lots_fefo", ["vaccine_id", "status", "expiration", "id"], unique=False)

    op.create_table(
        "aggregate_stocks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_level", sa.String(16), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=True),
        sa.Column("vaccine_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["vaccine_id"], ["vaccines.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("vaccine_id", "owner_level", "owner_id", name="uq_aggregate_stocks_owner_vaccine"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("aggregate_stocks", schema=None) as batch_op:
        batch_op.create_index("ix_aggregate_stocks_owner_level", ["owner_level"], unique=False)
        batch_op.create_index("ix_aggregate_stocks_owner_id", ["owner_id"], unique=False)
        batch_op.create_index("ix_aggregate_stocks_vaccine_id", ["vaccine_id"], unique=False)

    op.create_table(
        "stock_reservations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("schedule_id", sa.Integer(), nullable=False),
        sa.Column("stock_lot_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["schedule_id"], ["child_vaccinations.id"]),
        sa.ForeignKeyConstraint(["stock_lot_id"], ["stock_lots.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("schedule_id", name="uq_stock_reservations_schedule"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("stock_reservations", schema=None) as batch_op:
        batch_op.create_index("ix_stock_reservations_stock_lot_id", ["stock_lot_id"], unique=False)

    # Transfers
    op.create_table(
        "pending_stock_transfers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("vaccine_id", sa.Integer(), nullable=False),
        sa.Column("from_level", sa.String(16), nullable=False),
        sa.Column("from_id", sa.Integer(), nullable=True),
        sa.Column("to_level", sa.String(16), nullable=False),
        sa.Column("to_id", sa.Integer(), nullable=True),
        sa.Column("total_quantity", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("resolved_by_user_id", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.CheckConstraint("total_quantity > 0", name="ck_pending_transfers_quantity_positive"),
        sa.ForeignKeyConstraint(["vaccine_id"], ["vaccines.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("pending_stock_transfers", schema=None) as batch_op:
        batch_op.create_index("ix_pending_stock_transfers_vaccine_id", ["vaccine_id"], unique=False)
        batch_op.create_index("ix_pending_stock_transfers_status", ["status"], unique=False)
        batch_op.create_index("ix_pending_transfers_from", ["from_level", "from_id", "status"], unique=False)
        batch_op.create_index("ix_pending_transfers_to", ["to_level", "to_id", "status"], unique=False)

    op.create_table(
        "pending_stock_transfer_lots",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("pending_transfer_id", sa.Integer(), nullable=False),
        sa.Column("lot_id", sa.Integer(), nullable=True),
        sa.Column("quantity_reserved", sa.Integer(), nullable=False),
        sa.Column("expiration", sa.Date(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.CheckConstraint("quantity_reserved > 0", name="ck_pending_transfer_lots_quantity_positive"),
        sa.ForeignKeyConstraint(["pending_transfer_id"], ["pending_stock_transfers.id"]),
        sa.ForeignKeyConstraint(["lot_id"], ["stock_lots.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("pending_stock_transfer_lots", schema=None) as batch_op:
        batch_op.create_index("ix_pending_stock_transfer_lots_pending_transfer_id", ["pending_transfer_id"], unique=False)
        batch_op.create_index("ix_pending_stock_transfer_lots_lot_id", ["lot_id"], unique=False)

    op.create_table(
        "stock_transfers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("pending_transfer_id", sa.Integer(), nullable=True),
        sa.Column("vaccine_id", sa.Integer(), nullable=False),
        sa.Column("from_level", sa.String(16), nullable=False),
        sa.Column("from_id", sa.Integer(), nullable=True),
        sa.Column("to_level", sa.String(16), nullable=False),
        sa.Column("to_id", sa.Integer(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("confirmed_by_user_id", sa.Integer(), nullable=True),
        _timestamp("confirmed_at"),
        sa.ForeignKeyConstraint(["vaccine_id"], ["vaccines.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("stock_transfers", schema=None) as batch_op:
        batch_op.create_index("ix_stock_transfers_pending_transfer_id", ["pending_transfer_id"], unique=False)
        batch_op.create_index("ix_stock_transfers_vaccine_id", ["vaccine_id"], unique=False)
        batch_op.create_index("ix_stock_transfers_from", ["from_level", "from_id"], unique=False)
        batch_op.create_index("ix_stock_transfers_to", ["to_level", "to_id"], unique=False)

    op.create_table(
        "stock_transfer_lots",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("transfer_id", sa.Integer(), nullable=False),
        sa.Column("lot_id", sa.Integer(), nullable=True),
        sa.Column("destination_lot_id", sa.Integer(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("expiration", sa.Date(), nullable=False),
        sa.ForeignKeyConstraint(["transfer_id"], ["stock_transfers.id"]),
        sa.ForeignKeyConstraint(["lot_id"], ["stock_lots.id"]),
        sa.ForeignKeyConstraint(["destination_lot_id"], ["stock_lots.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("stock_transfer_lots", schema=None) as batch_op:
        batch_op.create_index("ix_stock_transfer_lots_transfer_id", ["transfer_id"], unique=False)
        batch_op.create_index("ix_stock_transfer_lots_lot_id", ["lot_id"], unique=False)
        batch_op.create_index("ix_stock_transfer_lots_destination_lot_id", ["destination_lot_id"], unique=False)

    # Audit
    op.create_table(
        "event_log",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("actor_level", sa.String(16), nullable=True),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        _timestamp("occurred_at"),
        sa.Column("payload", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("event_log", schema=None) as batch_op:
        batch_op.create_index("ix_event_log_entity", ["entity_type", "entity_id"], unique=False)
        batch_op.create_index("ix_event_log_type_occurred", ["event_type", "occurred_at"], unique=False)


def downgrade():
    for table in (
        "event_log",
        "stock_transfer_lots",
        "stock_transfers",
        "pending_stock_transfer_lots",
        "pending_stock_transfers",
        "stock_reservations",
        "aggregate_stocks",
        "stock_lots",
        "visit_records",
        "child_vaccinations",
        "children",
        "users",
        "vaccines",
        "health_centers",
        "districts",
        "communes",
        "regions",
    ):
        op.drop_table(table)
