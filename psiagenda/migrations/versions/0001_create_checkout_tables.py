"""create checkout tables"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'professionals',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('full_name', sa.String(length=255)),
        sa.Column('email', sa.String(length=255)),
        sa.Column('phone', sa.String(length=32)),
        sa.Column('is_demo', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('gateway', sa.String(length=32)),
        sa.Column('gateway_credentials', sa.Text()),
        sa.Column('gateway_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'services',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('professional_id', sa.String(length=64), sa.ForeignKey('professionals.id'), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False, server_default='50'),
        sa.Column('session_type', sa.String(length=64), nullable=False, server_default='Sessão Individual'),
        sa.Column('checkout_config', sa.JSON()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index(op.f('ix_services_professional_id'), 'services', ['professional_id'], unique=False)

    op.create_table(
        'transactions',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('professional_id', sa.String(length=64), sa.ForeignKey('professionals.id'), nullable=False),
        sa.Column('service_id', sa.String(length=64), sa.ForeignKey('services.id'), nullable=False),
        sa.Column('customer_name', sa.String(length=255), nullable=False),
        sa.Column('customer_email', sa.String(length=255), nullable=False),
        sa.Column('customer_phone', sa.String(length=32)),
        sa.Column('customer_cpf', sa.String(length=14)),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('payment_method', sa.String(length=16), nullable=False),
        sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('gateway', sa.String(length=32), nullable=False),
        sa.Column('simulated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('gateway_payment_id', sa.String(length=128)),
        sa.Column('pix_qr_code', sa.Text()),
        sa.Column('pix_code', sa.Text()),
        sa.Column('appointment_date', sa.Date()),
        sa.Column('appointment_time', sa.String(length=5)),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index(op.f('ix_transactions_professional_id'), 'transactions', ['professional_id'], unique=False)
    op.create_index(op.f('ix_transactions_service_id'), 'transactions', ['service_id'], unique=False)
    op.create_index(op.f('ix_transactions_gateway_payment_id'), 'transactions', ['gateway_payment_id'], unique=False)

    op.create_table(
        'payment_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transaction_id', sa.String(length=64), sa.ForeignKey('transactions.id'), nullable=False),
        sa.Column('gateway', sa.String(length=32)),
        sa.Column('event_type', sa.String(length=32), nullable=False),
        sa.Column('payload', sa.JSON()),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index(op.f('ix_payment_events_transaction_id'), 'payment_events', ['transaction_id'], unique=False)

    op.create_table(
        'appointments',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('professional_id', sa.String(length=64), sa.ForeignKey('professionals.id'), nullable=False),
        sa.Column('transaction_id', sa.String(length=64), sa.ForeignKey('transactions.id'), nullable=False),
        sa.Column('client_name', sa.String(length=255), nullable=False),
        sa.Column('client_email', sa.String(length=255), nullable=False),
        sa.Column('client_phone', sa.String(length=32)),
        sa.Column('appointment_date', sa.Date(), nullable=False),
        sa.Column('appointment_time', sa.String(length=5), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False, server_default='50'),
        sa.Column('session_type', sa.String(length=64)),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='confirmed'),
        sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='paid'),
        sa.Column('payment_method', sa.String(length=16)),
        sa.Column('amount_cents', sa.Integer()),
        sa.Column('virtual_room_code', sa.String(length=16)),
        sa.Column('virtual_room_link', sa.String(length=512)),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
        sa.UniqueConstraint('transaction_id', name='uq_appointments_transaction_id'),
    )
    op.create_index(op.f('ix_appointments_professional_id'), 'appointments', ['professional_id'], unique=False)
    op.create_index(
        'ix_appointments_slot', 'appointments', ['professional_id', 'appointment_date', 'appointment_time']
    )

    op.create_table(
        'access_tokens',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('appointment_id', sa.String(length=64), sa.ForeignKey('appointments.id'), nullable=False),
        sa.Column('client_email', sa.String(length=255), nullable=False),
        sa.Column('token', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index(op.f('ix_access_tokens_appointment_id'), 'access_tokens', ['appointment_id'], unique=False)
    op.create_index(op.f('ix_access_tokens_token'), 'access_tokens', ['token'], unique=True)


def downgrade() -> None:
    op.drop_index(op.f('ix_access_tokens_token'), table_name='access_tokens')
    op.drop_index(op.f('ix_access_tokens_appointment_id'), table_name='access_tokens')
    op.drop_table('access_tokens')
    op.drop_index('ix_appointments_slot', table_name='appointments')
    op.drop_index(op.f('ix_appointments_professional_id'), table_name='appointments')
    op.drop_table('appointments')
    op.drop_index(op.f('ix_payment_events_transaction_id'), table_name='payment_events')
    op.drop_table('payment_events')
    op.drop_index(op.f('ix_transactions_gateway_payment_id'), table_name='transactions')
    op.drop_index(op.f('ix_transactions_service_id'), table_name='transactions')
    op.drop_index(op.f('ix_transactions_professional_id'), table_name='transactions')
    op.drop_table('transactions')
    op.drop_index(op.f('ix_services_professional_id'), table_name='services')
    op.drop_table('services')
    op.drop_table('professionals')
