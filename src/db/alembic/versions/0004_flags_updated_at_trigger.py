from alembic import op

revision = '0004_flags_updated_at_trigger'
down_revision = '0003_audit_logs'
branch_labels = None
depends_on = None


def upgrade():
    # Postgres only; the service also sets updated_at itself, this covers manual edits
    if op.get_bind().dialect.name != 'postgresql':
        return
    op.execute("""
    CREATE OR REPLACE FUNCTION flags_set_updated_at()
    RETURNS TRIGGER AS $$
    BEGIN
      NEW.updated_at = NOW();
      RETURN NEW;
    END;
    $$ LANGUAGE plpgsql;
    """)
    op.execute("DROP TRIGGER IF EXISTS flags_set_updated_at ON flags;")
    op.execute("""
    CREATE TRIGGER flags_set_updated_at
    BEFORE UPDATE ON flags
    FOR EACH ROW
    EXECUTE FUNCTION flags_set_updated_at();
    """)


def downgrade():
    if op.get_bind().dialect.name != 'postgresql':
        return
    op.execute("DROP TRIGGER IF EXISTS flags_set_updated_at ON flags;")
    op.execute("DROP FUNCTION IF EXISTS flags_set_updated_at();")
