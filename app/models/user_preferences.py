"""User preferences and saved prompt models."""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class UserPreferences(Base):
    """One row per user; upserted."""

    __tablename__ = "user_preferences"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    selected_model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    temperature: Mapped[float | None] = mapped_column(Float, nullable=True)
    top_p: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_selected_chat_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
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


class SavedPrompt(Base):
    """Named system prompt; name and content are encrypted."""

    __tablename__ = "saved_prompts"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    name_iv: Mapped[str] = mapped_column(String(32), nullable=False)
    name_tag: Mapped[str] = mapped_column(String(32), nullable=False)
    content_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    content_iv: Mapped[str] = mapped_column(String(32), nullable=False)
    content_tag: Mapped[str] = mapped_column(String(32), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
