"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create watchlists table
    op.create_table(
        'watchlists',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('symbols', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_watchlists_id'), 'watchlists', ['id'], unique=False)
    op.create_index(op.f('ix_watchlists_user_id'), 'watchlists', ['user_id'], unique=False)

    # Create automation_endpoints table
    op.create_table(
        'automation_endpoints',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('webhook_url', sa.String(), nullable=False),
        sa.Column('webhook_secret_encrypted', sa.Text(), nullable=True),
        sa.Column('webhook_secret_iv', sa.String(), nullable=True),
        sa.Column('webhook_secret_auth_tag', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('last_tested_at', sa.DateTime(), nullable=True),
        sa.Column('last_test_success', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_automation_endpoints_id'), 'automation_endpoints', ['id'], unique=False)
    op.create_index(op.f('ix_automation_endpoints_user_id'), 'automation_endpoints', ['user_id'], unique=False)

    # Create opportunities table
    op.create_table(
        'opportunities',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('symbol', sa.String(), nullable=False),
        sa.Column('strategy_id', sa.String(), nullable=False),
        sa.Column('strategy_name', sa.String(), nullable=False),
        sa.Column('timeframe', sa.String(), nullable=False),
        sa.Column('direction', sa.Enum('LONG', 'SHORT', name='direction'), nullable=False),
        sa.Column('stage_at_detection', sa.String(), nullable=False),
        sa.Column('current_stage', sa.String(), nullable=False),
        sa.Column('detected_at', sa.DateTime(), nullable=False),
        sa.Column('detected_price', sa.Float(), nullable=False),
        sa.Column('resistance_price', sa.Float(), nullable=True),
        sa.Column('stop_reference_price', sa.Float(), nullable=True),
        sa.Column('entry_trigger_price', sa.Float(), nullable=True),
        sa.Column('score', sa.Float(), nullable=True),
        sa.Column('confluence_count', sa.Integer(), nullable=False),
        sa.Column('status', sa.Enum('ACTIVE', 'RESOLVED', name='opportunitystatus'), nullable=False),
        sa.Column(
            'resolution_outcome',
            sa.Enum('BROKE_RESISTANCE', 'INVALIDATED', 'EXPIRED', name='resolutionoutcome'),
            nullable=True
        ),
        sa.Column('resolution_reason', sa.String(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolution_price', sa.Float(), nullable=True),
        sa.Column('pnl_percent', sa.Float(), nullable=True),
        sa.Column('days_to_resolution', sa.Integer(), nullable=True),
        sa.Column('active_duration_minutes', sa.Integer(), nullable=True),
        sa.Column('dedupe_key', sa.String(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_opportunities_id'), 'opportunities', ['id'], unique=False)
    op.create_index(op.f('ix_opportunities_symbol'), 'opportunities', ['symbol'], unique=False)
    op.create_index(op.f('ix_opportunities_strategy_id'), 'opportunities', ['strategy_id'], unique=False)
    op.create_index(op.f('ix_opportunities_detected_at'), 'opportunities', ['detected_at'], unique=False)
    op.create_index(op.f('ix_opportunities_status'), 'opportunities', ['status'], unique=False)
    op.create_index(op.f('ix_opportunities_dedupe_key'), 'opportunities', ['dedupe_key'], unique=False)
    op.create_index(
        'uq_opportunities_active_dedupe_key',
        'opportunities',
        ['dedupe_key'],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
        sqlite_where=sa.text("status = 'ACTIVE'")
    )

    # Create opportunity_excursions table
    op.create_table(
        'opportunity_excursions',
        sa.Column('opportunity_id', sa.Integer(), nullable=False),
        sa.Column('max_price_after', sa.Float(), nullable=True),
        sa.Column('min_price_after', sa.Float(), nullable=True),
        sa.Column('max_favorable_move_percent', sa.Float(), nullable=True),
        sa.Column('max_adverse_move_percent', sa.Float(), nullable=True),
        sa.Column('bars_tracked', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['opportunity_id'], ['opportunities.id'], ),
        sa.PrimaryKeyConstraint('opportunity_id')
    )

    # Create alert_rules table
    op.create_table(
        'alert_rules',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_scope', sa.Enum('USER', 'GLOBAL', name='ownerscope'), nullable=False),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('symbol', sa.String(), nullable=True),
        sa.Column('watchlist_id', sa.Integer(), nullable=True),
        sa.Column('strategy', sa.String(), nullable=True),
        sa.Column('strategies', sa.JSON(), nullable=True),
        sa.Column('timeframe', sa.String(), nullable=False),
        sa.Column(
            'condition_type',
            sa.Enum(
                'STAGE_ENTERED', 'SCORE_THRESHOLD', 'CONFLUENCE_THRESHOLD',
                'APPROACHING', 'STOP_HIT', 'EMA_EXIT',
                name='ruleconditiontype'
            ),
            nullable=False
        ),
        sa.Column('condition_payload', sa.JSON(), nullable=True),
        sa.Column('min_strategies', sa.Integer(), nullable=True),
        sa.Column('score_threshold', sa.Float(), nullable=True),
        sa.Column('cooldown_minutes', sa.Integer(), nullable=True),
        sa.Column('is_enabled', sa.Boolean(), nullable=False),
        sa.Column('send_push_notification', sa.Boolean(), nullable=False),
        sa.Column('send_webhook', sa.Boolean(), nullable=False),
        sa.Column('automation_endpoint_id', sa.Integer(), nullable=True),
        sa.Column('last_evaluated_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['watchlist_id'], ['watchlists.id'], ),
        sa.ForeignKeyConstraint(['automation_endpoint_id'], ['automation_endpoints.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_alert_rules_id'), 'alert_rules', ['id'], unique=False)
    op.create_index(op.f('ix_alert_rules_user_id'), 'alert_rules', ['user_id'], unique=False)
    op.create_index(op.f('ix_alert_rules_symbol'), 'alert_rules', ['symbol'], unique=False)
    op.create_index(op.f('ix_alert_rules_is_enabled'), 'alert_rules', ['is_enabled'], unique=False)

    # Create alert_rule_states table
    op.create_table(
        'alert_rule_states',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('rule_id', sa.Integer(), nullable=False),
        sa.Column('symbol', sa.String(), nullable=False),
        sa.Column('snapshot', sa.JSON(), nullable=True),
        sa.Column('last_triggered_at', sa.DateTime(), nullable=True),
        sa.Column('last_evaluated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['rule_id'], ['alert_rules.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('rule_id', 'symbol', name='uq_alert_rule_states_rule_symbol')
    )
    op.create_index(op.f('ix_alert_rule_states_id'), 'alert_rule_states', ['id'], unique=False)
    op.create_index(op.f('ix_alert_rule_states_rule_id'), 'alert_rule_states', ['rule_id'], unique=False)

    # Create alert_events table
    op.create_table(
        'alert_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('rule_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('symbol', sa.String(), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('event_key', sa.String(), nullable=False),
        sa.Column('from_state', sa.String(), nullable=True),
        sa.Column('to_state', sa.String(), nullable=False),
        sa.Column('timeframe', sa.String(), nullable=True),
        sa.Column('strategy_id', sa.String(), nullable=True),
        sa.Column('price', sa.Float(), nullable=False),
        sa.Column('target_price', sa.Float(), nullable=True),
        sa.Column('stop_price', sa.Float(), nullable=True),
        sa.Column('message', sa.String(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['rule_id'], ['alert_rules.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_key')
    )
    op.create_index(op.f('ix_alert_events_id'), 'alert_events', ['id'], unique=False)
    op.create_index(op.f('ix_alert_events_rule_id'), 'alert_events', ['rule_id'], unique=False)
    op.create_index(op.f('ix_alert_events_user_id'), 'alert_events', ['user_id'], unique=False)
    op.create_index(op.f('ix_alert_events_symbol'), 'alert_events', ['symbol'], unique=False)
    op.create_index(op.f('ix_alert_events_created_at'), 'alert_events', ['created_at'], unique=False)

    # Create execution_requests table
    op.create_table(
        'execution_requests',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('symbol', sa.String(), nullable=False),
        sa.Column('strategy_id', sa.String(), nullable=False),
        sa.Column('timeframe', sa.String(), nullable=True),
        sa.Column('setup_payload', sa.JSON(), nullable=True),
        sa.Column('automation_endpoint_id', sa.Integer(), nullable=True),
        sa.Column('alert_event_id', sa.Integer(), nullable=True),
        sa.Column(
            'status',
            sa.Enum('CREATED', 'SENT', 'ACKED', 'EXECUTED', 'REJECTED', 'FAILED', name='executionstatus'),
            nullable=False
        ),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('external_reference', sa.String(), nullable=True),
        sa.Column('redirect_url', sa.String(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['automation_endpoint_id'], ['automation_endpoints.id'], ),
        sa.ForeignKeyConstraint(['alert_event_id'], ['alert_events.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_execution_requests_id'), 'execution_requests', ['id'], unique=False)
    op.create_index(op.f('ix_execution_requests_user_id'), 'execution_requests', ['user_id'], unique=False)
    op.create_index(op.f('ix_execution_requests_symbol'), 'execution_requests', ['symbol'], unique=False)
    op.create_index(
        op.f('ix_execution_requests_automation_endpoint_id'),
        'execution_requests',
        ['automation_endpoint_id'],
        unique=False
    )
    op.create_index(op.f('ix_execution_requests_status'), 'execution_requests', ['status'], unique=False)

    # Create error_logs table
    op.create_table(
        'error_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('timestamp_utc', sa.DateTime(), nullable=False),
        sa.Column('component', sa.String(), nullable=False),
        sa.Column('severity', sa.String(), nullable=False),
        sa.Column('message', sa.String(), nullable=False),
        sa.Column('exception_type', sa.String(), nullable=True),
        sa.Column('symbol', sa.String(), nullable=True),
        sa.Column('rule_id', sa.Integer(), nullable=True),
        sa.Column('execution_request_id', sa.Integer(), nullable=True),
        sa.Column('stack_trace', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_error_logs_id'), 'error_logs', ['id'], unique=False)
    op.create_index(op.f('ix_error_logs_timestamp_utc'), 'error_logs', ['timestamp_utc'], unique=False)
    op.create_index(op.f('ix_error_logs_symbol'), 'error_logs', ['symbol'], unique=False)
    op.create_index(op.f('ix_error_logs_rule_id'), 'error_logs', ['rule_id'], unique=False)


def downgrade() -> None:
    op.drop_table('error_logs')
    op.drop_table('execution_requests')
    op.drop_table('alert_events')
    op.drop_table('alert_rule_states')
    op.drop_table('alert_rules')
    op.drop_table('opportunity_excursions')
    op.drop_table('opportunities')
    op.drop_table('automation_endpoints')
    op.drop_table('watchlists')
    sa.Enum(name='executionstatus').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='ruleconditiontype').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='ownerscope').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='resolutionoutcome').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='opportunitystatus').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='direction').drop(op.get_bind(), checkfirst=True)
