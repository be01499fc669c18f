"""
Tree Chronicle Backend — Photo SQLAlchemy Model
=================================================

What:  ORM model representing the `photos` table.
Why:   One row per captured image; the bytes live in the upload directory
       under `filename`, never in the database.

Table Design Rationale:
    - filename: system-generated name inside the upload directory. Backup
      archives carry the file under `uploads/<filename>`, so this column is
      the join key between the database and the archive's file entries.
    - original_date: ISO 8601 text chosen by the user (when the photo was
      taken), distinct from created_at (when it was uploaded). Stored as text
      so the client's own timezone offset is preserved verbatim.
    - project_id ON DELETE CASCADE: deleting a project removes its photos.
      SQLite enforces this only with PRAGMA foreign_keys=ON, which the store
      handle sets on every connection.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from tree_chronicle.database import Base


class Photo(Base):
    """One image file plus its timestamp and caption, owned by one project."""

    __tablename__ = "photos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    project_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )

    filename: Mapped[str] = mapped_column(String(255), nullable=False)

    original_date: Mapped[str] = mapped_column(String(64), nullable=False)

    caption: Mapped[str | None] = mapped_column(Text, nullable=True, default="")

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    # Galleries list a project's photos newest-first
    __table_args__ = (
        Index("idx_photos_project_date", "project_id", "original_date"),
    )

    def __repr__(self) -> str:
        return f"<Photo(id={self.id}, project_id={self.project_id}, filename='{self.filename}')>"
