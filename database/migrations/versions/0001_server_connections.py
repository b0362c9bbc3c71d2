"""Create server connection, mod, config and bitacora tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table('server_connections',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('type', sa.String(length=10), nullable=False),
        sa.Column('host', sa.String(), nullable=True),
        sa.Column('port', sa.Integer(), nullable=True),
        sa.Column('username', sa.String(), nullable=True),
        sa.Column('password', sa.String(), nullable=True),
        sa.Column('private_key', sa.Text(), nullable=True),
        sa.Column('install_path', sa.String(), nullable=False),
        sa.Column('steamcmd_path', sa.String(), nullable=True),
        sa.Column('is_default', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_server_connections'))
    )
    op.create_index(op.f('ix_server_connections_name'), 'server_connections', ['name'], unique=True)

    op.create_table('server_mods',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('connection_id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('version', sa.String(), nullable=True),
        sa.Column('game_version', sa.String(), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        sa.Column('load_order', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['connection_id'], ['server_connections.id'],
                                name=op.f('fk_server_mods_connection_id_server_connections'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_server_mods')),
        sa.UniqueConstraint('connection_id', 'load_order', name=op.f('uq_server_mods_connection_id_load_order')),
        sa.UniqueConstraint('connection_id', 'source', name=op.f('uq_server_mods_connection_id_source'))
    )
    op.create_index(op.f('ix_server_mods_connection_id'), 'server_mods', ['connection_id'], unique=False)

    op.create_table('server_configs',
        sa.Column('connection_id', sa.String(length=36), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('document', sa.Text(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['connection_id'], ['server_connections.id'],
                                name=op.f('fk_server_configs_connection_id_server_connections'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('connection_id', name=op.f('pk_server_configs'))
    )

    op.create_table('bitacora',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=True),
        sa.Column('username', sa.String(), nullable=True),
        sa.Column('action', sa.String(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('connection_id', sa.String(length=36), nullable=True),
        sa.Column('severity', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_bitacora'))
    )
    op.create_index(op.f('ix_bitacora_id'), 'bitacora', ['id'], unique=False)
    op.create_index(op.f('ix_bitacora_connection_id'), 'bitacora', ['connection_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_bitacora_connection_id'), table_name='bitacora')
    op.drop_index(op.f('ix_bitacora_id'), table_name='bitacora')
    op.drop_table('bitacora')
    op.drop_table('server_configs')
    op.drop_index(op.f('ix_server_mods_connection_id'), table_name='server_mods')
    op.drop_table('server_mods')
    op.drop_index(op.f('ix_server_connections_name'), table_name='server_connections')
    op.drop_table('server_connections')
