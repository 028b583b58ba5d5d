from alembic import op
import sqlalchemy as sa

revision = '0001_flags'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('flags',
        sa.Column('id', sa.BigInteger().with_variant(sa.Integer(), 'sqlite'), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='disabled'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('name', name='flags_name_key'),
        sa.CheckConstraint("status in ('enabled', 'disabled')", name='flags_status_check'),
    )


def downgrade():
    op.drop_table('flags')
