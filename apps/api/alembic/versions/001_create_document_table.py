"""create document table

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # One table holds every collection; (collection, doc_id) is the document path
    op.create_table(
        'document',
        sa.Column('collection', sa.String(length=64), nullable=False),
        sa.Column('doc_id', sa.String(length=255), nullable=False),
        sa.Column('data', sa.JSON().with_variant(postgresql.JSONB(), 'postgresql'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('collection', 'doc_id'),
    )
    # Email lookups on users and auth_identities, status sweeps on invitations
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_document_data_email "
        "ON document ((data->>'email')) WHERE collection IN ('users', 'auth_identities')"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_document_invitation_status "
        "ON document ((data->>'status')) WHERE collection = 'invitations'"
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_document_invitation_status")
    op.execute("DROP INDEX IF EXISTS ix_document_data_email")
    op.drop_table('document')
