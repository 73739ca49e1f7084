"""initial_install_schema

Revision ID: 4a1c7e92d3b5
Revises:
Create Date: 2026-09-14 10:02:31.417208

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4a1c7e92d3b5'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing = inspector.get_table_names()

    if 'users' not in existing:
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
            sa.Column('username', sa.String(length=100), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=True),
            sa.Column('quota', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_users_id'), 'users', ['id'], unique=False)
        op.create_index(op.f('ix_users_username'), 'users', ['username'], unique=True)

    if 'windows_versions' not in existing:
        op.create_table(
            'windows_versions',
            sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
            sa.Column('name', sa.String(length=100), nullable=False),
            sa.Column('slug', sa.String(length=100), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_windows_versions_slug'), 'windows_versions', ['slug'], unique=True)

    if 'install_data' not in existing:
        op.create_table(
            'install_data',
            sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('ip', sa.String(length=45), nullable=False),
            sa.Column('ssh_port', sa.Integer(), nullable=False, server_default='22'),
            sa.Column('auth_type', sa.String(length=20), nullable=False, server_default='password'),
            sa.Column('passwd_vps', sa.Text(), nullable=True),
            sa.Column('ssh_key', sa.Text(), nullable=True),
            sa.Column('win_ver', sa.String(length=100), nullable=False),
            sa.Column('passwd_rdp', sa.Text(), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('status_message', sa.Text(), nullable=True),
            sa.Column('last_step', sa.String(length=50), nullable=True),
            sa.Column('region', sa.String(length=20), nullable=True),
            sa.Column('quota_refunded', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_install_data_user_id'), 'install_data', ['user_id'], unique=False)
        op.create_index(op.f('ix_install_data_ip'), 'install_data', ['ip'], unique=False)
        op.create_index(op.f('ix_install_data_status'), 'install_data', ['status'], unique=False)
        # Duplicate-IP guard and the monitor's resume scan filter on both
        op.create_index('idx_install_data_ip_status', 'install_data', ['ip', 'status'], unique=False)


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing = inspector.get_table_names()

    if 'install_data' in existing:
        op.drop_index('idx_install_data_ip_status', table_name='install_data')
        op.drop_index(op.f('ix_install_data_status'), table_name='install_data')
        op.drop_index(op.f('ix_install_data_ip'), table_name='install_data')
        op.drop_index(op.f('ix_install_data_user_id'), table_name='install_data')
        op.drop_table('install_data')
    if 'windows_versions' in existing:
        op.drop_index(op.f('ix_windows_versions_slug'), table_name='windows_versions')
        op.drop_table('windows_versions')
    if 'users' in existing:
        op.drop_index(op.f('ix_users_username'), table_name='users')
        op.drop_index(op.f('ix_users_id'), table_name='users')
        op.drop_table('users')
