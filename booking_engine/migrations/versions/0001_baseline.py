"""baseline schema

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-19

Creates every table the models define, including the partial unique index
that allows one active booking per slot.
"""
from typing import Sequence, Union

from alembic import op

from booking_engine.app.models import Base

# revision identifiers, used by Alembic.
revision: str = "0001_baseline"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    Base.metadata.create_all(bind=op.get_bind())


def downgrade() -> None:
    Base.metadata.drop_all(bind=op.get_bind())
