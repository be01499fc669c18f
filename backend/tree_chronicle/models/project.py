"""
Tree Chronicle Backend — Project SQLAlchemy Model
===================================================

What:  ORM model representing the `projects` table.
Why:   A project is the unit users photograph over time (one tree, one garden bed).
Who:   Used by ProjectService for CRUD and by StoreHandle.open() for create_all.

Table Design Rationale:
    - Integer autoincrement primary key: stable IDs that survive an
      export/import round-trip unchanged (the whole file is restored)
    - status: 'active' or 'archived'; archived projects stay browsable
    - summary: free-text retrospective written when a project is archived
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from tree_chronicle.database import Base

PROJECT_STATUSES = ("active", "archived")


class Project(Base):
    """A named collection of photos."""

    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True, default="")

    summary: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="active",
        server_default=text("'active'"),
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    def __repr__(self) -> str:
        return f"<Project(id={self.id}, name='{self.name}', status='{self.status}')>"
