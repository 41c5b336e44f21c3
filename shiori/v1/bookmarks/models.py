from datetime import datetime

from sqlalchemy import TIMESTAMP, Index, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from shiori.infra.database import Base
from shiori.v1.infra.jobs.models import utcnow


class Bookmark(Base):
    """Bookmark columns the metadata job reads and writes."""

    __tablename__ = "bookmarks"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    website_icon: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Base64-encoded icon bytes"
    )
    website_icon_mime_type: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )

    __table_args__ = (Index("ix_bookmarks_user_id", "user_id"),)
