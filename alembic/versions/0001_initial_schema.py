"""Initial FunnelFlow schema.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'experiences',
        _id(),
        sa.Column('whop_experience_id', sa.String(255), nullable=False, unique=True, index=True),
        sa.Column('whop_company_id', sa.String(255), nullable=False, server_default='', index=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('logo', sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'users',
        _id(),
        sa.Column('whop_user_id', sa.String(255), nullable=False, index=True),
        sa.Column('experience_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('experiences.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('email', sa.String(255), nullable=False, server_default=''),
        sa.Column('name', sa.String(255), nullable=False, server_default='Unknown User'),
        sa.Column('avatar', sa.Text(), nullable=True),
        sa.Column('credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('access_level', sa.String(20), nullable=False, server_default='customer'),
        sa.Column('products_synced', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint('whop_user_id', 'experience_id', name='uq_users_whop_user_experience'),
    )

    op.create_table(
        'funnels',
        _id(),
        sa.Column('experience_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('experiences.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('users.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('flow', sa.JSON(), nullable=True),
        sa.Column('is_deployed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('was_ever_deployed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('generation_status', sa.String(20), nullable=False, server_default='idle'),
        sa.Column('sends', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('whop_product_id', sa.String(255), nullable=True, index=True),
        *_timestamps(),
    )

    op.create_table(
        'resources',
        _id(),
        sa.Column('experience_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('experiences.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('users.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('category', sa.String(20), nullable=False),
        sa.Column('link', sa.Text(), nullable=False),
        sa.Column('code', sa.String(100), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('whop_product_id', sa.String(255), nullable=True, index=True),
        sa.Column('whop_membership_id', sa.String(255), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'funnel_resources',
        _id(),
        sa.Column('funnel_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('funnels.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('resource_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('resources.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('funnel_id', 'resource_id', name='uq_funnel_resources_pair'),
    )

    op.create_table(
        'conversations',
        _id(),
        sa.Column('experience_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('experiences.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('funnel_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('funnels.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('whop_user_id', sa.String(255), nullable=False, index=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('current_block_id', sa.String(255), nullable=True),
        sa.Column('user_path', sa.JSON(), nullable=False),
        sa.Column('controlled_by', sa.String(20), nullable=False, server_default='bot'),
        sa.Column('unread_count_admin', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unread_count_user', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('admin_last_read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('user_last_read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        'messages',
        _id(),
        sa.Column('conversation_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('conversations.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False, index=True),
    )

    op.create_table(
        'funnel_interactions',
        _id(),
        sa.Column('conversation_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('conversations.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('block_id', sa.String(255), nullable=False),
        sa.Column('option_text', sa.Text(), nullable=True),
        sa.Column('next_block_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'funnel_analytics',
        _id(),
        sa.Column('funnel_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('funnels.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('experience_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('experiences.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('date', sa.Date(), nullable=False, index=True),
        sa.Column('views', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('starts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('completions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('conversions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('revenue', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('funnel_id', 'date', name='uq_funnel_analytics_day'),
    )

    op.create_table(
        'tracking_links',
        _id(),
        sa.Column('plan_id', sa.String(255), nullable=False, unique=True, index=True),
        sa.Column('funnel_id', sa.String(255), nullable=False),
        sa.Column('block_id', sa.String(255), nullable=False),
        sa.Column('product_id', sa.String(255), nullable=False),
        sa.Column('experience_id', sa.String(255), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'webhook_events',
        _id(),
        sa.Column('event_id', sa.String(255), nullable=False, unique=True, index=True),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
    )

    # Live-chat inbox ordering
    op.create_index(
        'ix_conversations_experience_updated',
        'conversations',
        ['experience_id', 'updated_at'],
    )


def downgrade() -> None:
    op.drop_index('ix_conversations_experience_updated', table_name='conversations')
    for table in (
        'webhook_events',
        'tracking_links',
        'funnel_analytics',
        'funnel_interactions',
        'messages',
        'conversations',
        'funnel_resources',
        'resources',
        'funnels',
        'users',
        'experiences',
    ):
        op.drop_table(table)
