from __future__ import annotations

import logging
import random
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentengine.domain.jobs import JobKind
from contentengine.domain.models import GeneratedContent
from contentengine.services.hydrators.base import ContentGenerator, HydrationContext, HydrationResult
from contentengine.services.validation import ValidationContext, validate_or_throw


logger = logging.getLogger(__name__)


class GeneratingHydrator:
    """Generate content for one job kind and validate it before returning."""

    def __init__(self, kind: JobKind, generator: ContentGenerator) -> None:
        self.kind = kind
        self._generator = generator

    async def hydrate(self, context: HydrationContext) -> HydrationResult:
        parsed = await self._generator.generate(context)
        validate_or_throw(
            parsed,
            ValidationContext(job_kind=self.kind, language=context.language, difficulty=context.difficulty),
        )
        return HydrationResult(content=parsed, metadata={"source": "generator"})


class AssembleHydrator:
    """Assemble a question set from questions already generated for the topic.

    Falls back to the generator when the topic has no stored questions yet.
    """

    kind = JobKind.ASSEMBLE

    def __init__(self, generator: ContentGenerator, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._generator = generator
        self._session_factory = session_factory

    async def _load_pool(self, context: HydrationContext) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(GeneratedContent)
                    .where(
                        GeneratedContent.target_id == context.target_id,
                        GeneratedContent.language == context.language,
                        GeneratedContent.job_kind.in_([JobKind.QUESTIONS.value, JobKind.TESTS.value]),
                    )
                    .order_by(GeneratedContent.created_at.desc())
                )
            ).scalars().all()
        pool: list[dict[str, Any]] = []
        seen: set[str] = set()
        for row in rows:
            for question in (row.content_json or {}).get("questions", []):
                text = str(question.get("question", ""))
                if text and text not in seen:
                    seen.add(text)
                    pool.append(question)
        return pool

    async def hydrate(self, context: HydrationContext) -> HydrationResult:
        pool = await self._load_pool(context)
        if not pool:
            logger.info("assemble_pool_empty job_id=%s target_id=%s", context.job_id, context.target_id)
            parsed = await self._generator.generate(context)
            source = "generator"
        else:
            count = int(context.payload.get("count") or 10)
            # Seed by job id so a re-run of the same job picks the same set.
            picked = random.Random(context.job_id).sample(pool, k=min(count, len(pool)))
            parsed = {"questions": picked, "language": context.language}
            if context.difficulty:
                parsed["difficulty"] = context.difficulty
            source = "question_pool"
        validate_or_throw(
            parsed,
            ValidationContext(job_kind=self.kind, language=context.language, difficulty=context.difficulty),
        )
        return HydrationResult(content=parsed, metadata={"source": source})
