from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentengine.core.errors import ValidationError
from contentengine.domain.jobs import JobKind
from contentengine.services.hydrators.base import ContentGenerator, Hydrator
from contentengine.services.hydrators.generating import AssembleHydrator, GeneratingHydrator


class HydratorRegistry:
    def __init__(self) -> None:
        self._hydrators: dict[JobKind, Hydrator] = {}

    def register(self, hydrator: Hydrator) -> None:
        self._hydrators[hydrator.kind] = hydrator

    def resolve(self, kind: JobKind | str) -> Hydrator:
        try:
            return self._hydrators[JobKind(kind)]
        except (KeyError, ValueError) as exc:
            raise ValidationError(f"No hydrator registered for job kind {kind}") from exc


def build_registry(
    generator: ContentGenerator,
    session_factory: async_sessionmaker[AsyncSession],
) -> HydratorRegistry:
    # Resolved once per worker process; dispatch is a dict lookup, not string matching.
    registry = HydratorRegistry()
    for kind in (JobKind.SYLLABUS, JobKind.NOTES, JobKind.QUESTIONS, JobKind.TESTS):
        registry.register(GeneratingHydrator(kind, generator))
    registry.register(AssembleHydrator(generator, session_factory))
    return registry
