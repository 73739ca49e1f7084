"""seed_windows_versions

Revision ID: 7d3e5b16a8f0
Revises: 4a1c7e92d3b5
Create Date: 2026-09-14 10:19:05.882640

"""
from datetime import datetime, timezone
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '7d3e5b16a8f0'
down_revision: Union[str, None] = '4a1c7e92d3b5'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

DEFAULT_VERSIONS = [
    ('Windows 10 Pro', 'win10-pro'),
    ('Windows 11 Pro', 'win11-pro'),
    ('Windows Server 2019', 'winserver-2019'),
    ('Windows Server 2022', 'winserver-2022'),
]


def upgrade() -> None:
    bind = op.get_bind()
    now = datetime.now(timezone.utc).replace(tzinfo=None)

    for name, slug in DEFAULT_VERSIONS:
        existing = bind.execute(
            sa.text("SELECT id FROM windows_versions WHERE slug = :slug"),
            {"slug": slug},
        ).first()
        if existing is None:
            bind.execute(
                sa.text(
                    "INSERT INTO windows_versions (name, slug, is_active, created_at) "
                    "VALUES (:name, :slug, :is_active, :created_at)"
                ),
                {"name": name, "slug": slug, "is_active": True, "created_at": now},
            )


def downgrade() -> None:
    bind = op.get_bind()
    for _, slug in DEFAULT_VERSIONS:
        bind.execute(
            sa.text("DELETE FROM windows_versions WHERE slug = :slug"),
            {"slug": slug},
        )
