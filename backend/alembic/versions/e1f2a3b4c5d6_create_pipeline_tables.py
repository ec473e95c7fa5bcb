"""Create pipeline definition and execution tables

Revision ID: e1f2a3b4c5d6
Revises:
Create Date: 2026-10-19 12:00:00.000000

api_items / pipelines / pipeline_steps hold the definitions the engine
reads; pipeline_executions / step_executions are the run audit trail.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'e1f2a3b4c5d6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'api_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('method', sa.String(10), nullable=False, server_default='GET'),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('request_params', sa.Text(), nullable=True),
        sa.Column('request_headers', sa.Text(), nullable=True),
        sa.Column('request_body', sa.Text(), nullable=True),
        sa.Column('folder_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'pipelines',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('folder_id', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_pipelines_folder_id', 'pipelines', ['folder_id'])

    op.create_table(
        'pipeline_steps',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('pipeline_id', sa.Integer(), sa.ForeignKey('pipelines.id'), nullable=False),
        sa.Column('api_item_id', sa.Integer(), sa.ForeignKey('api_items.id'), nullable=False),
        sa.Column('step_order', sa.Integer(), nullable=False),
        sa.Column('step_name', sa.String(200), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('data_extractions', sa.Text(), nullable=True),
        sa.Column('data_injections', sa.Text(), nullable=True),
        sa.Column('execution_condition', sa.Text(), nullable=True),
        sa.Column('delay_after', sa.Integer(), nullable=True),
        sa.Column('is_skip', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_pipeline_steps_pipeline_id', 'pipeline_steps', ['pipeline_id'])

    op.create_table(
        'pipeline_executions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('pipeline_id', sa.Integer(), sa.ForeignKey('pipelines.id'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('total_steps', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('completed_steps', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('successful_steps', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_steps', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skipped_steps', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('session_cookies', sa.Text(), nullable=True),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index('ix_pipeline_executions_pipeline_id', 'pipeline_executions', ['pipeline_id'])
    op.create_index('ix_pipeline_executions_status', 'pipeline_executions', ['status'])

    op.create_table(
        'step_executions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column(
            'pipeline_execution_id', sa.Integer(),
            sa.ForeignKey('pipeline_executions.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column(
            'pipeline_step_id', sa.Integer(),
            sa.ForeignKey('pipeline_steps.id', ondelete='SET NULL'), nullable=True,
        ),
        sa.Column('step_order', sa.Integer(), nullable=False),
        sa.Column('step_name', sa.String(200), nullable=True),
        sa.Column('step_description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('started_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('http_status', sa.Integer(), nullable=True),
        sa.Column('response_time', sa.Float(), nullable=True),
        sa.Column('request_data', postgresql.JSONB(), nullable=True),
        sa.Column('response_data', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('extracted_data', postgresql.JSONB(), nullable=True),
    )
    op.create_index('ix_step_executions_pipeline_execution_id', 'step_executions', ['pipeline_execution_id'])


def downgrade() -> None:
    op.drop_index('ix_step_executions_pipeline_execution_id', table_name='step_executions')
    op.drop_table('step_executions')
    op.drop_index('ix_pipeline_executions_status', table_name='pipeline_executions')
    op.drop_index('ix_pipeline_executions_pipeline_id', table_name='pipeline_executions')
    op.drop_table('pipeline_executions')
    op.drop_index('ix_pipeline_steps_pipeline_id', table_name='pipeline_steps')
    op.drop_table('pipeline_steps')
    op.drop_index('ix_pipelines_folder_id', table_name='pipelines')
    op.drop_table('pipelines')
    op.drop_table('api_items')
