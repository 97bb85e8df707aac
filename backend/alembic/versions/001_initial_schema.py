"""Initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Tables:
  - deployments: Built-in deployment records
  - subdomain_reservations: Globally unique subdomain claims
  - port_reservations: Globally unique host port claims
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

IN_FLIGHT = "status IN ('pending', 'building', 'deploying', 'stopping')"


def upgrade() -> None:
    schema = 'catalyst'

    # =========================================================================
    # 1. deployments
    # =========================================================================
    op.create_table(
        'deployments',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('project_id', sa.String(64), nullable=False),
        sa.Column('project_name', sa.String(255), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False, server_default='builtin'),
        sa.Column('subdomain', sa.String(63), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('framework', sa.String(50), nullable=True),
        sa.Column('image_name', sa.String(255), nullable=True),
        sa.Column('container_id', sa.String(64), nullable=True),
        sa.Column('host_port', sa.Integer(), nullable=True),
        sa.Column('deployment_url', sa.String(500), nullable=True),
        sa.Column('cpu_limit', sa.Integer(), nullable=False, server_default='1000'),
        sa.Column('memory_limit', sa.Integer(), nullable=False, server_default='512'),
        sa.Column('logs', sa.Text(), nullable=False, server_default=''),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), server_default='{}', nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('stopped_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_deployments'),
        sa.UniqueConstraint('subdomain', name='uq_deployments_subdomain'),
        sa.CheckConstraint(
            "status IN ('pending', 'building', 'deploying', 'running', "
            "'stopping', 'stopped', 'removing', 'failed', 'removed')",
            name='ck_deployments_status',
        ),
        schema=schema,
    )
    op.create_index('ix_deployments_project_id', 'deployments', ['project_id'], schema=schema)
    op.create_index('ix_deployments_status', 'deployments', ['status'], schema=schema)
    op.create_index('ix_deployments_container_id', 'deployments', ['container_id'], schema=schema)
    op.create_index('ix_deployments_created_at', 'deployments', ['created_at'], schema=schema)
    # At most one in-flight deployment per project
    op.create_index(
        'uq_deployments_project_in_flight',
        'deployments',
        ['project_id'],
        unique=True,
        postgresql_where=sa.text(IN_FLIGHT),
        schema=schema,
    )

    # =========================================================================
    # 2. subdomain_reservations
    # =========================================================================
    op.create_table(
        'subdomain_reservations',
        sa.Column('subdomain', sa.String(63), nullable=False),
        sa.Column('project_id', sa.String(64), nullable=False),
        sa.Column('deployment_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('subdomain', name='pk_subdomain_reservations'),
        sa.ForeignKeyConstraint(
            ['deployment_id'], [f'{schema}.deployments.id'],
            name='fk_subdomain_reservations_deployment_id_deployments',
            ondelete='CASCADE',
        ),
        schema=schema,
    )
    op.create_index(
        'ix_subdomain_reservations_project_id', 'subdomain_reservations', ['project_id'], schema=schema
    )
    op.create_index(
        'ix_subdomain_reservations_deployment_id', 'subdomain_reservations', ['deployment_id'], schema=schema
    )

    # =========================================================================
    # 3. port_reservations
    # =========================================================================
    op.create_table(
        'port_reservations',
        sa.Column('port', sa.Integer(), autoincrement=False, nullable=False),
        sa.Column('deployment_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('port', name='pk_port_reservations'),
        sa.UniqueConstraint('deployment_id', name='uq_port_reservations_deployment_id'),
        sa.ForeignKeyConstraint(
            ['deployment_id'], [f'{schema}.deployments.id'],
            name='fk_port_reservations_deployment_id_deployments',
            ondelete='CASCADE',
        ),
        schema=schema,
    )


def downgrade() -> None:
    schema = 'catalyst'

    op.drop_table('port_reservations', schema=schema)
    op.drop_index('ix_subdomain_reservations_deployment_id', table_name='subdomain_reservations', schema=schema)
    op.drop_index('ix_subdomain_reservations_project_id', table_name='subdomain_reservations', schema=schema)
    op.drop_table('subdomain_reservations', schema=schema)
    op.drop_index('uq_deployments_project_in_flight', table_name='deployments', schema=schema)
    op.drop_index('ix_deployments_created_at', table_name='deployments', schema=schema)
    op.drop_index('ix_deployments_container_id', table_name='deployments', schema=schema)
    op.drop_index('ix_deployments_status', table_name='deployments', schema=schema)
    op.drop_index('ix_deployments_project_id', table_name='deployments', schema=schema)
    op.drop_table('deployments', schema=schema)
