"""Seed user tiers and the model catalog.

Usage:
    python -m scripts.seed_catalog [--models models.json]

The models file is a JSON list of objects using the ``models`` column
names; rows are upserted by ``model_id``. Without it only the tiers and
the image model are written.
"""

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import Base, async_session_factory, engine
from app.models.llm_model import LLMModel
from app.models.user import UserTier
from app.services.model_catalog import EXTENDED, IMAGE_MODEL_ID, PERMISSIONLESS, PRO

DEFAULT_TIERS: list[dict[str, Any]] = [
    {"name": PERMISSIONLESS, "display_name": "Free", "token_limit": None},
    {"name": EXTENDED, "display_name": "Extended", "token_limit": 200_000},
    {
        "name": PRO,
        "display_name": "Pro",
        "token_limit": 1_000_000,
        "rate_limit_window_ms": 24 * 60 * 60 * 1000,
    },
]

DEFAULT_MODELS: list[dict[str, Any]] = [
    {
        "model_id": IMAGE_MODEL_ID,
        "name": "AkashGen",
        "description": "Image generation",
        "tier_requirement": PERMISSIONLESS,
        "display_order": 1000,
    },
]

MODEL_COLUMNS = {c.name for c in LLMModel.__table__.columns} - {"id", "created_at", "updated_at"}


async def upsert_tiers(session: AsyncSession, tiers: list[dict[str, Any]]) -> int:
    created = 0
    for values in tiers:
        result = await session.execute(select(UserTier).where(UserTier.name == values["name"]))
        tier = result.scalar_one_or_none()
        if tier is None:
            session.add(UserTier(**values))
            created += 1
            continue
        for key, value in values.items():
            setattr(tier, key, value)
    return created


async def upsert_models(session: AsyncSession, models: list[dict[str, Any]]) -> int:
    created = 0
    for raw in models:
        unknown = set(raw) - MODEL_COLUMNS
        if unknown:
            raise ValueError(f"Unknown model fields for {raw.get('model_id')}: {sorted(unknown)}")
        result = await session.execute(
            select(LLMModel).where(LLMModel.model_id == raw["model_id"])
        )
        model = result.scalar_one_or_none()
        if model is None:
            session.add(LLMModel(**raw))
            created += 1
            continue
        for key, value in raw.items():
            setattr(model, key, value)
    return created


async def seed(models_path: Path | None) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    models = list(DEFAULT_MODELS)
    if models_path is not None:
        models.extend(json.loads(models_path.read_text(encoding="utf-8")))

    async with async_session_factory() as session:
        tiers_created = await upsert_tiers(session, DEFAULT_TIERS)
        models_created = await upsert_models(session, models)
        await session.commit()
    print(
        f"Seeded {len(DEFAULT_TIERS)} tiers ({tiers_created} new) "
        f"and {len(models)} models ({models_created} new)"
    )

    await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed tiers and models")
    parser.add_argument("--models", type=Path, default=None, help="JSON list of model rows")
    args = parser.parse_args()

    asyncio.run(seed(args.models))


if __name__ == "__main__":
    main()
