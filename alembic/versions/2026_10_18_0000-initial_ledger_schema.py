"""initial ledger schema

Revision ID: 2026_10_18_0000
Revises:
Create Date: 2026-10-18 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_18_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create ledger, generation, redemption code and payment event tables."""

    # ========================================================================
    # Create accounts table
    # ========================================================================
    op.create_table(
        'accounts',
        sa.Column('user_id', sa.String(64), primary_key=True),
        sa.Column('balance_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('ledger_seq', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        # Constraints
        sa.CheckConstraint('balance_minor >= 0', name='ck_balance_non_negative'),
        sa.CheckConstraint('ledger_seq >= 0', name='ck_ledger_seq_non_negative'),
    )

    # ========================================================================
    # Create redemption_codes table
    # ========================================================================
    op.create_table(
        'redemption_codes',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('code', sa.String(64), nullable=False),
        sa.Column('credits_minor', sa.BigInteger(), nullable=False),
        sa.Column('max_uses', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('used_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('one_per_user', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        # Constraints
        sa.CheckConstraint('credits_minor > 0', name='ck_code_credits_positive'),
        sa.CheckConstraint('max_uses > 0', name='ck_code_max_uses_positive'),
        sa.CheckConstraint('used_count >= 0 AND used_count <= max_uses', name='ck_code_used_within_max'),
        sa.UniqueConstraint('code', name='uq_redemption_code'),
    )

    # ========================================================================
    # Create credit_transactions table (append-only)
    # ========================================================================
    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('balance_after_minor', sa.BigInteger(), nullable=False),
        sa.Column('sequence', sa.BigInteger(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('related_generation_id', sa.Uuid(), nullable=True),
        sa.Column('related_code_id', sa.Uuid(), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        # Constraints
        sa.CheckConstraint('amount_minor <> 0', name='ck_transaction_amount_non_zero'),
        sa.CheckConstraint('balance_after_minor >= 0', name='ck_transaction_balance_after'),
        sa.CheckConstraint('sequence > 0', name='ck_transaction_sequence_positive'),
        sa.CheckConstraint(
            "kind IN ('deduction', 'refund', 'topup', 'redemption', 'adjustment')",
            name='ck_transaction_kind',
        ),
        sa.UniqueConstraint('user_id', 'sequence', name='uq_transaction_user_sequence'),
        sa.UniqueConstraint('kind', 'idempotency_key', name='uq_transaction_kind_idempotency'),
        sa.ForeignKeyConstraint(['user_id'], ['accounts.user_id'], name='fk_transactions_account', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['related_code_id'], ['redemption_codes.id'], name='fk_transactions_code', ondelete='RESTRICT'),
    )

    # Indexes for credit_transactions
    op.create_index('idx_transactions_user_created', 'credit_transactions', ['user_id', 'created_at'])
    op.create_index(
        'idx_transactions_related_generation',
        'credit_transactions',
        ['related_generation_id'],
        postgresql_where=sa.text('related_generation_id IS NOT NULL'),
    )

    # ========================================================================
    # Create generations table
    # ========================================================================
    op.create_table(
        'generations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('model_id', sa.String(128), nullable=False),
        sa.Column('prompt', sa.Text(), nullable=False),
        sa.Column('options', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('credits_used_minor', sa.BigInteger(), nullable=False),
        sa.Column('refunded', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('deduction_transaction_id', sa.Uuid(), nullable=True),
        sa.Column('refund_transaction_id', sa.Uuid(), nullable=True),
        sa.Column('task_id', sa.String(255), nullable=True),
        sa.Column('result_urls', sa.JSON(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),

        # Constraints
        sa.CheckConstraint('credits_used_minor > 0', name='ck_generation_credits_positive'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name='ck_generation_status',
        ),
        sa.CheckConstraint(
            "refunded = false OR status = 'failed'", name='ck_generation_refund_requires_failure'
        ),
        sa.UniqueConstraint('task_id', name='uq_generation_task_id'),
        sa.UniqueConstraint('deduction_transaction_id', name='uq_generation_deduction'),
        sa.ForeignKeyConstraint(['user_id'], ['accounts.user_id'], name='fk_generations_account', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(
            ['deduction_transaction_id'], ['credit_transactions.id'],
            name='fk_generations_deduction', ondelete='RESTRICT',
        ),
        sa.ForeignKeyConstraint(
            ['refund_transaction_id'], ['credit_transactions.id'],
            name='fk_generations_refund', ondelete='RESTRICT',
        ),
    )

    # Indexes for generations
    op.create_index('idx_generations_user_created', 'generations', ['user_id', 'created_at'])
    op.create_index('idx_generations_status_updated', 'generations', ['status', 'updated_at'])

    # ========================================================================
    # Create code_redemptions table
    # ========================================================================
    op.create_table(
        'code_redemptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('code_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('one_per_user', sa.Boolean(), nullable=False),
        sa.Column('transaction_id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.ForeignKeyConstraint(['code_id'], ['redemption_codes.id'], name='fk_redemptions_code', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(
            ['transaction_id'], ['credit_transactions.id'],
            name='fk_redemptions_transaction', ondelete='RESTRICT',
        ),
    )

    # One redemption per (code, user) for one-per-user codes
    op.create_index(
        'uq_code_redemptions_one_per_user',
        'code_redemptions',
        ['code_id', 'user_id'],
        unique=True,
        postgresql_where=sa.text('one_per_user IS true'),
        sqlite_where=sa.text('one_per_user IS 1'),
    )
    op.create_index('idx_code_redemptions_user', 'code_redemptions', ['user_id'])

    # ========================================================================
    # Create payment_events table (charge id dedupe)
    # ========================================================================
    op.create_table(
        'payment_events',
        sa.Column('charge_id', sa.String(255), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('transaction_id', sa.Uuid(), nullable=True),
        sa.Column('provider', sa.String(50), nullable=False, server_default='webhook'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),

        sa.CheckConstraint('amount_minor > 0', name='ck_payment_amount_positive'),
        sa.ForeignKeyConstraint(
            ['transaction_id'], ['credit_transactions.id'],
            name='fk_payment_events_transaction', ondelete='RESTRICT',
        ),
    )

    op.create_index('idx_payment_events_user', 'payment_events', ['user_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('payment_events')
    op.drop_table('code_redemptions')
    op.drop_table('generations')
    op.drop_table('credit_transactions')
    op.drop_table('redemption_codes')
    op.drop_table('accounts')
