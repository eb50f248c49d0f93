"""Chat session database model."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class ChatSession(Base):
    """Conversation owned by a user; name and system prompt are encrypted."""

    __tablename__ = "chat_sessions"
    __table_args__ = (
        Index("ix_chat_sessions_user_id_updated_at", "user_id", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    folder_id: Mapped[str | None] = mapped_column(
        ForeignKey("folders.id", ondelete="SET NULL"), nullable=True, index=True
    )
    model_id: Mapped[str] = mapped_column(String(100), nullable=False)
    model_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    parent_chat_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    branched_at_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    name_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    name_iv: Mapped[str | None] = mapped_column(String(32), nullable=True)
    name_tag: Mapped[str | None] = mapped_column(String(32), nullable=True)
    system_prompt_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    system_prompt_iv: Mapped[str | None] = mapped_column(String(32), nullable=True)
    system_prompt_tag: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
