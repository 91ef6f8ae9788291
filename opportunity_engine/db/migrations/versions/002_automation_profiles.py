"""Automation profiles and decisions

Revision ID: 002
Revises: 001
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create automation_profiles table
    op.create_table(
        'automation_profiles',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('automation_endpoint_id', sa.Integer(), nullable=False),
        sa.Column('mode', sa.Enum('OFF', 'NOTIFY_ONLY', 'AUTO', name='automationmode'), nullable=False),
        sa.Column('is_enabled', sa.Boolean(), nullable=False),
        sa.Column('guardrails', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['automation_endpoint_id'], ['automation_endpoints.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_automation_profiles_id'), 'automation_profiles', ['id'], unique=False)
    op.create_index(op.f('ix_automation_profiles_user_id'), 'automation_profiles', ['user_id'], unique=False)

    # Create automation_decisions table
    op.create_table(
        'automation_decisions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('profile_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('symbol', sa.String(), nullable=False),
        sa.Column('strategy_id', sa.String(), nullable=True),
        sa.Column('alert_event_id', sa.Integer(), nullable=True),
        sa.Column('execution_request_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.Enum('SEND', 'SKIP', 'BLOCKED', name='automationaction'), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['profile_id'], ['automation_profiles.id'], ),
        sa.ForeignKeyConstraint(['alert_event_id'], ['alert_events.id'], ),
        sa.ForeignKeyConstraint(['execution_request_id'], ['execution_requests.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_automation_decisions_id'), 'automation_decisions', ['id'], unique=False)
    op.create_index(op.f('ix_automation_decisions_profile_id'), 'automation_decisions', ['profile_id'], unique=False)
    op.create_index(op.f('ix_automation_decisions_symbol'), 'automation_decisions', ['symbol'], unique=False)
    op.create_index(op.f('ix_automation_decisions_created_at'), 'automation_decisions', ['created_at'], unique=False)

    # Rules route through a profile
    with op.batch_alter_table('alert_rules') as batch_op:
        batch_op.add_column(sa.Column('automation_profile_id', sa.Integer(), nullable=True))
        batch_op.create_foreign_key(
            'fk_alert_rules_automation_profile_id',
            'automation_profiles',
            ['automation_profile_id'],
            ['id'],
        )


def downgrade() -> None:
    with op.batch_alter_table('alert_rules') as batch_op:
        batch_op.drop_constraint('fk_alert_rules_automation_profile_id', type_='foreignkey')
        batch_op.drop_column('automation_profile_id')
    op.drop_table('automation_decisions')
    op.drop_table('automation_profiles')
    sa.Enum(name='automationaction').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='automationmode').drop(op.get_bind(), checkfirst=True)
