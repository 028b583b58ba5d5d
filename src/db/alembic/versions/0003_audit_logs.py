from alembic import op
import sqlalchemy as sa

revision = '0003_audit_logs'
down_revision = '0002_flag_dependencies'
branch_labels = None
depends_on = None

FLAG_ID = sa.BigInteger().with_variant(sa.Integer(), 'sqlite')


def upgrade():
    op.create_table('audit_logs',
        sa.Column('id', FLAG_ID, primary_key=True, autoincrement=True),
        sa.Column('flag_id', FLAG_ID, sa.ForeignKey('flags.id', ondelete='CASCADE'), nullable=False),
        sa.Column('action', sa.String(32), nullable=False),
        sa.Column('actor', sa.String(255), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "action in ('create', 'enable', 'disable', 'cascade_disable', 'update')",
            name='audit_logs_action_check',
        ),
    )
    op.create_index('ix_audit_logs_flag_created', 'audit_logs', ['flag_id', 'created_at'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])


def downgrade():
    op.drop_index('ix_audit_logs_created_at', table_name='audit_logs')
    op.drop_index('ix_audit_logs_flag_created', table_name='audit_logs')
    op.drop_table('audit_logs')
