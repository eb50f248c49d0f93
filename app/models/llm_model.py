"""Model catalog database model."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class LLMModel(Base):
    """A selectable inference model and its tier requirement."""

    __tablename__ = "models"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    model_id: Mapped[str] = mapped_column(
        String(100), unique=True, nullable=False, index=True
    )
    api_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    tier_requirement: Mapped[str] = mapped_column(
        String(50), nullable=False, default="permissionless"
    )
    available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_chat_available: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    token_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    temperature: Mapped[float] = mapped_column(Float, nullable=False, default=0.7)
    top_p: Mapped[float] = mapped_column(Float, nullable=False, default=0.95)
    token_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    owned_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    parameters: Mapped[str | None] = mapped_column(String(50), nullable=True)
    architecture: Mapped[str | None] = mapped_column(String(100), nullable=True)
    hf_repo: Mapped[str | None] = mapped_column(String(255), nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
