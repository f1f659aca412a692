
from alembic import op
import sqlalchemy as sa

revision = '0001_initial'
down_revision = None

def upgrade():
    op.create_table('users',
        sa.Column('username', sa.String(), primary_key=True),
        sa.Column('hashed_password', sa.String(), nullable=False),
        sa.Column('created_at', sa.BigInteger(), nullable=True),
    )
    op.create_table('user_settings',
        sa.Column('username', sa.String(), primary_key=True),
        sa.Column('value', sa.Text(), nullable=False),
    )
    op.create_table('skip_configs',
        sa.Column('username', sa.String(), nullable=False),
        sa.Column('key', sa.String(), nullable=False),
        sa.Column('value', sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint('username', 'key'),
    )
    op.create_table('admin_config',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
    )

def downgrade():
    op.drop_table('admin_config')
    op.drop_table('skip_configs')
    op.drop_table('user_settings')
    op.drop_table('users')
