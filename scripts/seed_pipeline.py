#!/usr/bin/env python3
"""CLI script to seed a sales pipeline with stages and users.

Usage:
    uv run python scripts/seed_pipeline.py --name "Sales"
    uv run python scripts/seed_pipeline.py --name "Sales" --stages Lead Qualified Proposal --user alice@example.com

Connects directly to the database using DATABASE_URL from environment or .env file.
Creates the tables if needed, then inserts one pipeline with its normal stages
followed by a "Won" (completed) and a "Lost" (lost) stage, and any users given.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.dealflow
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

DEFAULT_STAGES = ["Lead", "Qualified", "Proposal", "Negotiation"]


async def seed(name: str, stages: list[str], emails: list[str], default: bool) -> None:
    """Insert the pipeline, its stages, and users in one transaction."""
    from sqlalchemy import select

    from src.dealflow.core.database import close_db, get_session, init_db
    from src.dealflow.deals.models import PipelineModel, PipelineStageModel, UserModel

    await init_db()

    async for session in get_session():
        pipeline = PipelineModel(name=name, is_default=default)
        session.add(pipeline)
        await session.flush()

        layout = [(stage, "normal") for stage in stages]
        layout += [("Won", "completed"), ("Lost", "lost")]
        for position, (stage_name, stage_type) in enumerate(layout):
            session.add(
                PipelineStageModel(
                    pipeline_id=pipeline.id,
                    name=stage_name,
                    order=position,
                    stage_type=stage_type,
                )
            )

        created_users = []
        for email in emails:
            existing = await session.execute(select(UserModel).where(UserModel.email == email))
            if existing.scalar_one_or_none() is not None:
                print(f"  User exists, skipped: {email}")
                continue
            session.add(UserModel(email=email, name=email.split("@")[0]))
            created_users.append(email)

        await session.commit()

        print("Pipeline seeded successfully:")
        print(f"  ID:     {pipeline.id}")
        print(f"  Name:   {name}")
        print(f"  Stages: {', '.join(stage for stage, _ in layout)}")
        for email in created_users:
            print(f"  User created: {email}")

    await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed a sales pipeline")
    parser.add_argument("--name", required=True, help="Pipeline display name (e.g., 'Sales')")
    parser.add_argument(
        "--stages",
        nargs="+",
        default=DEFAULT_STAGES,
        help="Normal stage names in board order (Won/Lost are always appended)",
    )
    parser.add_argument(
        "--user", action="append", default=[], dest="users", help="User email (repeatable)"
    )
    parser.add_argument("--default", action="store_true", help="Mark as the default pipeline")
    args = parser.parse_args()

    asyncio.run(seed(args.name, args.stages, args.users, args.default))


if __name__ == "__main__":
    main()
