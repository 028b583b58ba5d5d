from alembic import op
import sqlalchemy as sa

revision = '0002_flag_dependencies'
down_revision = '0001_flags'
branch_labels = None
depends_on = None

FLAG_ID = sa.BigInteger().with_variant(sa.Integer(), 'sqlite')


def upgrade():
    op.create_table('flag_dependencies',
        sa.Column('flag_id', FLAG_ID, sa.ForeignKey('flags.id', ondelete='CASCADE'), nullable=False),
        sa.Column('depends_on_id', FLAG_ID, sa.ForeignKey('flags.id', ondelete='CASCADE'), nullable=False),
        sa.PrimaryKeyConstraint('flag_id', 'depends_on_id'),
        sa.CheckConstraint('flag_id <> depends_on_id', name='flag_dependencies_no_self_check'),
    )
    # (flag_id, ...) lookups use the PK
    op.create_index('idx_flag_dependencies_depends_on_id', 'flag_dependencies', ['depends_on_id'])


def downgrade():
    op.drop_index('idx_flag_dependencies_depends_on_id', table_name='flag_dependencies')
    op.drop_table('flag_dependencies')
