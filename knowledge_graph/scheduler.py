"""
Background embedding after graph writes.

Graph writes return as soon as the transaction commits; vectors follow
asynchronously. Failures here are logged and never reach the caller.

Work for one tenant runs in the order it was scheduled, so a removal never
overtakes an earlier embed of the same source.
"""

from typing import Any, Awaitable, Callable, Dict, Iterable, Optional
import asyncio
import logging
import uuid

from config import settings
from models import EntityDTO, ObservationDTO, RelationDTO

logger = logging.getLogger(__name__)


class EmbeddingScheduler:
    """
    Tracks background embedding tasks on the running event loop.

    Args:
        pipeline_factory: tenant_id -> EmbeddingPipeline
        enabled: defaults to AUTO_EMBED_ENABLED
    """

    def __init__(self, pipeline_factory: Callable[[str], Any], enabled: Optional[bool] = None):
        self.pipeline_factory = pipeline_factory
        self.enabled = settings.AUTO_EMBED_ENABLED if enabled is None else enabled
        # Only track running tasks in memory (not persistent)
        self.running_tasks: Dict[str, asyncio.Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # Bumped on erase; queued work from an older generation is dropped
        self._generations: Dict[str, int] = {}

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    def _start(self, label: str, tenant_id: str, fn: Callable[..., Awaitable[Any]], *args) -> Optional[str]:
        if not self.enabled:
            return None
        task_id = str(uuid.uuid4())
        generation = self._generations.get(tenant_id, 0)
        task = asyncio.create_task(self._run(task_id, label, tenant_id, generation, fn, *args))
        self.running_tasks[task_id] = task
        task.add_done_callback(lambda t: self._cleanup_task(task_id))
        return task_id

    async def _run(self, task_id: str, label: str, tenant_id: str, generation: int, fn, *args) -> None:
        # asyncio.Lock wakes waiters in FIFO order
        async with self._lock_for(tenant_id):
            if self._generations.get(tenant_id, 0) != generation:
                logger.debug(f"⏭️ {label} skipped, tenant {tenant_id} was erased (task {task_id})")
                return
            try:
                pipeline = self.pipeline_factory(tenant_id)
                await fn(pipeline, *args)
                logger.debug(f"✅ {label} done (task {task_id}, tenant {tenant_id})")
            except Exception as e:
                logger.error(f"❌ {label} failed (task {task_id}, tenant {tenant_id}): {e}")

    def _cleanup_task(self, task_id: str) -> None:
        """Remove task from running tasks when complete"""
        self.running_tasks.pop(task_id, None)

    def schedule_entity(self, tenant_id: str, entity: EntityDTO) -> Optional[str]:
        return self._start(f"embed entity {entity.id}", tenant_id, lambda p, e: p.embed_entity(e), entity)

    def schedule_relation(self, tenant_id: str, relation: RelationDTO) -> Optional[str]:
        return self._start(f"embed relation {relation.id}", tenant_id, lambda p, r: p.embed_relation(r), relation)

    def schedule_observation(self, tenant_id: str, observation: ObservationDTO) -> Optional[str]:
        return self._start(
            f"embed observation {observation.id}", tenant_id,
            lambda p, o: p.embed_observation(o), observation,
        )

    def schedule_removal(
        self,
        tenant_id: str,
        entity_ids: Iterable[str] = (),
        relation_ids: Iterable[str] = (),
        observation_ids: Iterable[str] = (),
    ) -> Optional[str]:
        return self._start(
            "remove vectors", tenant_id,
            lambda p, e, r, o: p.remove_sources(e, r, o),
            list(entity_ids), list(relation_ids), list(observation_ids),
        )

    async def run_exclusive(self, tenant_id: str, fn: Callable[[Any], Awaitable[Any]]) -> Any:
        """Run fn(pipeline) in order with the tenant's background work. Errors propagate."""
        async with self._lock_for(tenant_id):
            return await fn(self.pipeline_factory(tenant_id))

    async def forget_tenant(self, tenant_id: str) -> int:
        """
        Drop every vector of a tenant once its in-flight work has settled.

        Queued embeds for the tenant are skipped; runs even when background
        embedding is disabled.

        Returns:
            Number of collections dropped
        """
        self._generations[tenant_id] = self._generations.get(tenant_id, 0) + 1
        return await self.run_exclusive(tenant_id, lambda p: p.forget_tenant())

    async def drain(self) -> None:
        """Wait for every task scheduled so far."""
        while self.running_tasks:
            await asyncio.gather(*list(self.running_tasks.values()), return_exceptions=True)
