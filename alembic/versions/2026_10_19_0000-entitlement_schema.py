"""entitlement schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


PLANS = "('free', 'pro', 'enterprise')"
STATUSES = "('active', 'trialing', 'canceled', 'past_due')"


def upgrade() -> None:
    """Create entitlement, ledger, policy and refresh tables."""

    # ========================================================================
    # Create accounts table
    # ========================================================================
    op.create_table(
        'accounts',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('role', sa.String(20), nullable=False, server_default='user'),
        sa.Column('plan_override', sa.String(20), nullable=True),
        sa.Column('plan_override_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('plan_override_reason', sa.Text(), nullable=True),
        sa.Column('billing_customer_id', sa.String(255), nullable=True),
        sa.Column('subscription_id', sa.String(255), nullable=True),
        sa.Column('subscription_plan', sa.String(20), nullable=True),
        sa.Column('subscription_status', sa.String(20), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_credit_grant_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('effective_plan', sa.String(20), nullable=False, server_default='free'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint("role IN ('user', 'admin', 'superadmin')", name='ck_account_role'),
        sa.CheckConstraint(f"plan_override IS NULL OR plan_override IN {PLANS}", name='ck_account_plan_override'),
        sa.CheckConstraint(f"subscription_plan IS NULL OR subscription_plan IN {PLANS}", name='ck_account_subscription_plan'),
        sa.CheckConstraint(f"subscription_status IS NULL OR subscription_status IN {STATUSES}", name='ck_account_subscription_status'),
        sa.CheckConstraint(f"effective_plan IN {PLANS}", name='ck_account_effective_plan'),
        sa.UniqueConstraint('external_id', name='uq_accounts_external_id'),
        sa.UniqueConstraint('billing_customer_id', name='uq_accounts_billing_customer_id'),
    )

    op.create_index('idx_accounts_subscription_id', 'accounts', ['subscription_id'])
    op.create_index('idx_accounts_effective_plan', 'accounts', ['effective_plan'])

    # ========================================================================
    # Create credit_ledger table (append-only)
    # ========================================================================
    op.create_table(
        'credit_ledger',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), nullable=False),
        sa.Column('delta', sa.BigInteger(), nullable=False),
        sa.Column('reason', sa.String(255), nullable=False),
        sa.Column('related_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('delta <> 0', name='ck_ledger_delta_non_zero'),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], name='fk_credit_ledger_account', ondelete='RESTRICT'),
    )

    op.create_index('idx_credit_ledger_account_created', 'credit_ledger', ['account_id', sa.text('created_at DESC')])

    # ========================================================================
    # Create subscription_audit_log table
    # ========================================================================
    op.create_table(
        'subscription_audit_log',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), nullable=False),
        sa.Column('event_type', sa.String(40), nullable=False),
        sa.Column('previous_plan', sa.String(20), nullable=True),
        sa.Column('new_plan', sa.String(20), nullable=True),
        sa.Column('previous_status', sa.String(20), nullable=True),
        sa.Column('new_status', sa.String(20), nullable=True),
        sa.Column('external_event_id', sa.String(255), nullable=True),
        sa.Column('external_subscription_id', sa.String(255), nullable=True),
        sa.Column('actor', sa.String(255), nullable=True),
        sa.Column('metadata', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint(
            "event_type IN ('checkout_completed', 'subscription_updated', 'subscription_deleted', "
            "'invoice_paid', 'plan_override_set', 'plan_override_cleared')",
            name='ck_audit_event_type',
        ),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], name='fk_subscription_audit_account', ondelete='RESTRICT'),
    )

    op.create_index('idx_subscription_audit_account_created', 'subscription_audit_log', ['account_id', 'created_at'])
    op.create_index(
        'idx_subscription_audit_event_id',
        'subscription_audit_log',
        ['external_event_id'],
        postgresql_where=sa.text('external_event_id IS NOT NULL'),
    )

    # ========================================================================
    # Create external_event_records table (webhook idempotency)
    # ========================================================================
    op.create_table(
        'external_event_records',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('external_event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('payload', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('external_event_id', name='uq_external_event_records_event_id'),
    )

    # ========================================================================
    # Create plan_policies table and seed defaults
    # ========================================================================
    plan_policies = op.create_table(
        'plan_policies',
        sa.Column('plan_key', sa.String(20), primary_key=True),
        sa.Column('accounts_limit', sa.Integer(), nullable=False),
        sa.Column('allow_scheduled_refresh', sa.Boolean(), nullable=False),
        sa.Column('allow_oauth', sa.Boolean(), nullable=False),
        sa.Column('default_refresh_interval_hours', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint(f"plan_key IN {PLANS}", name='ck_plan_policy_plan_key'),
        sa.CheckConstraint('accounts_limit BETWEEN 1 AND 999', name='ck_plan_policy_accounts_limit'),
        sa.CheckConstraint('default_refresh_interval_hours BETWEEN 1 AND 168', name='ck_plan_policy_refresh_interval'),
    )

    op.bulk_insert(
        plan_policies,
        [
            {'plan_key': 'free', 'accounts_limit': 1, 'allow_scheduled_refresh': False,
             'allow_oauth': False, 'default_refresh_interval_hours': 24},
            {'plan_key': 'pro', 'accounts_limit': 5, 'allow_scheduled_refresh': True,
             'allow_oauth': False, 'default_refresh_interval_hours': 24},
            {'plan_key': 'enterprise', 'accounts_limit': 999, 'allow_scheduled_refresh': True,
             'allow_oauth': True, 'default_refresh_interval_hours': 6},
        ],
    )

    # ========================================================================
    # Create workspace_policy_overrides table (NULL = inherit)
    # ========================================================================
    op.create_table(
        'workspace_policy_overrides',
        sa.Column('workspace_id', sa.String(255), primary_key=True),
        sa.Column('accounts_limit', sa.Integer(), nullable=True),
        sa.Column('allow_scheduled_refresh', sa.Boolean(), nullable=True),
        sa.Column('allow_oauth', sa.Boolean(), nullable=True),
        sa.Column('default_refresh_interval_hours', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('accounts_limit IS NULL OR accounts_limit BETWEEN 1 AND 999', name='ck_workspace_override_accounts_limit'),
        sa.CheckConstraint(
            'default_refresh_interval_hours IS NULL OR default_refresh_interval_hours BETWEEN 1 AND 168',
            name='ck_workspace_override_refresh_interval',
        ),
    )

    # ========================================================================
    # Create refreshable_entities table
    # ========================================================================
    op.create_table(
        'refreshable_entities',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), nullable=False),
        sa.Column('workspace_id', sa.String(255), nullable=True),
        sa.Column('platform', sa.String(50), nullable=False),
        sa.Column('username', sa.String(255), nullable=False),
        sa.Column('refresh_mode', sa.String(20), nullable=False, server_default='manual'),
        sa.Column('refresh_interval_hours', sa.Integer(), nullable=False, server_default='24'),
        sa.Column('next_refresh_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_refresh_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refresh_fail_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('refresh_error', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('follower_count', sa.BigInteger(), nullable=True),
        sa.Column('post_count', sa.BigInteger(), nullable=True),
        sa.Column('engagement_rate', sa.Float(), nullable=True),
        sa.Column('is_verified', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("refresh_mode IN ('manual', 'scheduled')", name='ck_entity_refresh_mode'),
        sa.CheckConstraint("status IN ('active', 'error', 'paused')", name='ck_entity_status'),
        sa.CheckConstraint('refresh_interval_hours BETWEEN 1 AND 168', name='ck_entity_refresh_interval'),
        sa.CheckConstraint('refresh_fail_count >= 0', name='ck_entity_fail_count_non_negative'),
        sa.CheckConstraint(
            "(refresh_mode = 'manual' AND next_refresh_at IS NULL) OR "
            "(refresh_mode = 'scheduled' AND next_refresh_at IS NOT NULL)",
            name='ck_entity_next_refresh_matches_mode',
        ),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], name='fk_refreshable_entities_account', ondelete='CASCADE'),
    )

    op.create_index('idx_refreshable_entities_account_id', 'refreshable_entities', ['account_id'])
    op.create_index(
        'idx_refreshable_entities_due',
        'refreshable_entities',
        ['next_refresh_at'],
        postgresql_where=sa.text("refresh_mode = 'scheduled'"),
    )

    # ========================================================================
    # Create metrics_snapshots table (append-only time series)
    # ========================================================================
    op.create_table(
        'metrics_snapshots',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('entity_id', UUID(as_uuid=True), nullable=False),
        sa.Column('follower_count', sa.BigInteger(), nullable=False),
        sa.Column('post_count', sa.BigInteger(), nullable=False),
        sa.Column('engagement_rate', sa.Float(), nullable=True),
        sa.Column('captured_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.ForeignKeyConstraint(['entity_id'], ['refreshable_entities.id'], name='fk_metrics_snapshots_entity', ondelete='CASCADE'),
    )

    op.create_index('idx_metrics_snapshots_entity_captured', 'metrics_snapshots', ['entity_id', 'captured_at'])


def downgrade() -> None:
    """Drop all entitlement tables."""
    op.drop_table('metrics_snapshots')
    op.drop_table('refreshable_entities')
    op.drop_table('workspace_policy_overrides')
    op.drop_table('plan_policies')
    op.drop_table('external_event_records')
    op.drop_table('subscription_audit_log')
    op.drop_table('credit_ledger')
    op.drop_table('accounts')
