"""Create allocation tables: slots, consultations, funding ledger, inventory

Revision ID: 7c1e2a9f4b10
Revises:
Create Date: 2026-10-12 10:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = '7c1e2a9f4b10'
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


user_role = sa.Enum('patient', 'doctor', 'donor', 'ngo', 'admin', 'hospital', name='user_role')
consultation_status = sa.Enum('pending', 'confirmed', 'completed', 'cancelled', name='consultation_status')
consultation_mode = sa.Enum('video', 'audio', 'chat', name='consultation_mode')
treatment_request_status = sa.Enum('open', 'funded', 'closed', 'cancelled', name='treatment_request_status')
inventory_type = sa.Enum('medicine', 'equipment', name='inventory_type')
inventory_condition = sa.Enum(
    'good', 'needs_repair', 'out_of_service', 'expired', 'damaged', name='inventory_condition'
)
medicine_request_status = sa.Enum(
    'pending', 'available', 'in_progress', 'fulfilled', 'rejected', 'cancelled',
    name='medicine_request_status',
)


def upgrade() -> None:
    # Create users table (owned by the auth service, mirrored here for FKs)
    op.create_table('users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('username', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('role', user_role, nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email')
    )
    op.create_index('ix_users_role', 'users', ['role'], unique=False)

    # Create consultation_slots table (FK to consultations added below)
    op.create_table('consultation_slots',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('doctor_id', sa.Integer(), nullable=False),
        sa.Column('start_datetime', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('end_datetime', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('is_booked', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('consultation_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.CheckConstraint('end_datetime > start_datetime', name='check_slot_window_positive'),
        sa.CheckConstraint(
            'is_booked = (consultation_id IS NOT NULL)', name='check_slot_booked_has_consultation'
        ),
        sa.ForeignKeyConstraint(['doctor_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('doctor_id', 'start_datetime', 'end_datetime', name='uq_slot_doctor_window')
    )
    op.create_index('ix_consultation_slots_doctor_id', 'consultation_slots', ['doctor_id'], unique=False)
    op.create_index('idx_slots_doctor_start', 'consultation_slots', ['doctor_id', 'start_datetime'], unique=False)

    # Create consultations table
    op.create_table('consultations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('patient_id', sa.Integer(), nullable=False),
        sa.Column('doctor_id', sa.Integer(), nullable=False),
        sa.Column('slot_id', sa.Integer(), nullable=True),
        sa.Column('status', consultation_status, nullable=False),
        sa.Column('mode', consultation_mode, nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['patient_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['doctor_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['slot_id'], ['consultation_slots.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_consultations_patient_id', 'consultations', ['patient_id'], unique=False)
    op.create_index('ix_consultations_doctor_id', 'consultations', ['doctor_id'], unique=False)
    op.create_index('ix_consultations_status', 'consultations', ['status'], unique=False)
    op.create_index(
        'uq_consultations_live_slot', 'consultations', ['slot_id'], unique=True,
        postgresql_where=sa.text("slot_id IS NOT NULL AND status <> 'cancelled'"),
    )

    # Close the slot <-> consultation cycle
    op.create_foreign_key(
        'fk_consultation_slots_consultation_id', 'consultation_slots', 'consultations',
        ['consultation_id'], ['id'], ondelete='SET NULL',
    )

    # Create treatment_requests table
    op.create_table('treatment_requests',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('patient_id', sa.Integer(), nullable=False),
        sa.Column('doctor_id', sa.Integer(), nullable=False),
        sa.Column('treatment_type', sa.String(length=50), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('sponsored', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('goal_amount', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('raised_amount', sa.Numeric(precision=10, scale=2), server_default='0', nullable=False),
        sa.Column('status', treatment_request_status, nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.CheckConstraint('raised_amount >= 0', name='check_raised_non_negative'),
        sa.CheckConstraint(
            'goal_amount IS NULL OR raised_amount <= goal_amount', name='check_raised_within_goal'
        ),
        sa.ForeignKeyConstraint(['patient_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['doctor_id'], ['users.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_treatment_requests_patient_id', 'treatment_requests', ['patient_id'], unique=False)
    op.create_index('ix_treatment_requests_doctor_id', 'treatment_requests', ['doctor_id'], unique=False)
    op.create_index('ix_treatment_requests_status', 'treatment_requests', ['status'], unique=False)

    # Create donations table (append-only ledger)
    op.create_table('donations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('treatment_request_id', sa.Integer(), nullable=False),
        sa.Column('donor_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('donated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_event_id', sa.String(length=255), nullable=True),
        sa.CheckConstraint('amount > 0', name='check_donation_amount_positive'),
        sa.ForeignKeyConstraint(['treatment_request_id'], ['treatment_requests.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['donor_id'], ['users.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_payment_intent_id')
    )
    op.create_index('ix_donations_treatment_request_id', 'donations', ['treatment_request_id'], unique=False)
    op.create_index('ix_donations_donor_id', 'donations', ['donor_id'], unique=False)

    # Create sponsorship_verifications table
    op.create_table('sponsorship_verifications',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('treatment_request_id', sa.Integer(), nullable=False),
        sa.Column('approved', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('receipt_url', sa.String(length=255), nullable=True),
        sa.Column('patient_feedback', sa.Text(), nullable=True),
        sa.Column('approved_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('approved_by', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['treatment_request_id'], ['treatment_requests.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['approved_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('treatment_request_id')
    )

    # Create inventory_registry table
    op.create_table('inventory_registry',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('type', inventory_type, nullable=False),
        sa.Column('quantity_available', sa.Integer(), nullable=False),
        sa.Column('total_quantity', sa.Integer(), nullable=False),
        sa.Column('storage_location', sa.String(length=255), nullable=True),
        sa.Column('condition', inventory_condition, nullable=False),
        sa.Column('expiry_date', sa.DATE(), nullable=True),
        sa.Column('source_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.CheckConstraint('quantity_available >= 0', name='check_lot_quantity_non_negative'),
        sa.CheckConstraint('quantity_available <= total_quantity', name='check_lot_quantity_within_total'),
        sa.ForeignKeyConstraint(['source_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_inventory_registry_name', 'inventory_registry', ['name'], unique=False)
    op.create_index('ix_inventory_registry_source_id', 'inventory_registry', ['source_id'], unique=False)
    op.create_index(
        'idx_inventory_source_available', 'inventory_registry', ['source_id'], unique=False,
        postgresql_where=sa.text('quantity_available > 0'),
    )

    # Create medicine_requests table
    op.create_table('medicine_requests',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('patient_id', sa.Integer(), nullable=False),
        sa.Column('item_name_requested', sa.String(length=255), nullable=False),
        sa.Column('quantity_needed', sa.Integer(), nullable=False),
        sa.Column('delivery_location', sa.String(length=255), nullable=False),
        sa.Column('assigned_source_id', sa.Integer(), nullable=True),
        sa.Column('status', medicine_request_status, nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('requested_date', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('fulfilled_by', sa.Integer(), nullable=True),
        sa.Column('fulfilled_date', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint('quantity_needed > 0', name='check_quantity_needed_positive'),
        sa.ForeignKeyConstraint(['patient_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['assigned_source_id'], ['users.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['fulfilled_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_medicine_requests_patient_id', 'medicine_requests', ['patient_id'], unique=False)
    op.create_index('ix_medicine_requests_assigned_source_id', 'medicine_requests', ['assigned_source_id'], unique=False)
    op.create_index('ix_medicine_requests_status', 'medicine_requests', ['status'], unique=False)


def downgrade() -> None:
    op.drop_table('medicine_requests')
    op.drop_table('inventory_registry')
    op.drop_table('sponsorship_verifications')
    op.drop_table('donations')
    op.drop_table('treatment_requests')
    op.drop_constraint('fk_consultation_slots_consultation_id', 'consultation_slots', type_='foreignkey')
    op.drop_table('consultations')
    op.drop_table('consultation_slots')
    op.drop_table('users')

    bind = op.get_bind()
    for enum in (
        medicine_request_status,
        inventory_condition,
        inventory_type,
        treatment_request_status,
        consultation_mode,
        consultation_status,
        user_role,
    ):
        enum.drop(bind, checkfirst=True)
