"""Concurrent fan-out of independent retrieval operations.

Query expansions and search variants are run concurrently with a hard
per-operation deadline. If any operation in the concurrent batch fails or
times out, the whole batch is re-run sequentially and individual failures
degrade to ``None`` instead of failing the caller.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from retrieval_services.errors import OperationTimeoutError

# Configure logging
logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


class FanoutConfig(BaseModel):
    """Fan-out limits."""
    max_parallel_queries: int = 3
    max_parallel_searches: int = 5
    timeout: float = 30.0


@dataclass
class SwarmResult:
    """Result of a swarm search: the primary search and its variants."""

    base_result: Any = None
    variant_results: List[Any] = field(default_factory=list)


class ConcurrentFanoutRunner:
    """Bounded concurrent execution with a sequential fallback."""

    def __init__(self, config: Optional[FanoutConfig] = None):
        self.config = config or FanoutConfig()

    def _timeout(self, per_op_timeout: Optional[float]) -> float:
        return self.config.timeout if per_op_timeout is None else per_op_timeout

    async def _run_with_timeout(self, operation: Operation, timeout: float, label: str) -> Any:
        try:
            return await asyncio.wait_for(operation(), timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(f"{label} timed out after {timeout}s") from e

    async def run_all(
        self,
        operations: Sequence[Operation],
        per_op_timeout: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        label: str = "operation",
    ) -> List[Optional[Any]]:
        """Run operations concurrently, results in input order.

        Args:
            operations: Zero-argument callables returning awaitables
            per_op_timeout: Deadline per operation in seconds (defaults to config)
            max_concurrency: Operations beyond this count are dropped, not queued
            label: Name used in log messages

        Returns:
            One result per submitted operation; ``None`` where the sequential
            fallback could not complete an operation
        """
        timeout = self._timeout(per_op_timeout)
        batch = list(operations)
        if max_concurrency is not None and len(batch) > max_concurrency:
            logger.debug(f"Dropping {len(batch) - max_concurrency} {label}s beyond limit {max_concurrency}")
            batch = batch[:max_concurrency]
        if not batch:
            return []

        tasks = [
            asyncio.ensure_future(self._run_with_timeout(op, timeout, f"{label} {i}"))
            for i, op in enumerate(batch)
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        failures = [t.exception() for t in done if t.exception() is not None]

        if not failures:
            return [t.result() for t in tasks]

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        logger.error(f"Error in concurrent {label} batch: {failures[0]}; falling back to sequential execution")
        return await self.run_sequential(batch, timeout, label=label)

    async def run_sequential(
        self,
        operations: Sequence[Operation],
        per_op_timeout: Optional[float] = None,
        label: str = "operation",
    ) -> List[Optional[Any]]:
        """Run operations one at a time; failures yield ``None`` for that slot."""
        timeout = self._timeout(per_op_timeout)
        results: List[Optional[Any]] = []
        for i, operation in enumerate(operations):
            try:
                results.append(await self._run_with_timeout(operation, timeout, f"{label} {i}"))
            except Exception as e:
                logger.error(f"Sequential {label} {i} failed: {e}")
                results.append(None)
        return results

    async def run_swarm(
        self,
        base: Operation,
        variants: Sequence[Operation],
        per_op_timeout: Optional[float] = None,
    ) -> SwarmResult:
        """Run a primary search and its variants together."""
        results = await self.run_all([base, *variants], per_op_timeout, label="swarm search")
        return SwarmResult(base_result=results[0], variant_results=results[1:])

    async def run_query_expansions(
        self, expansions: Sequence[Operation], per_op_timeout: Optional[float] = None
    ) -> List[Optional[Any]]:
        return await self.run_all(
            expansions, per_op_timeout, self.config.max_parallel_queries, label="query expansion"
        )

    async def run_vector_searches(
        self, searches: Sequence[Operation], per_op_timeout: Optional[float] = None
    ) -> List[Optional[Any]]:
        return await self.run_all(
            searches, per_op_timeout, self.config.max_parallel_searches, label="vector search"
        )

    async def expand_queries_with_embeddings(
        self,
        queries: Sequence[str],
        embed_fn: Callable[[str], Awaitable[List[float]]],
    ) -> List[Tuple[str, List[float]]]:
        """Embed query expansions concurrently.

        Queries past ``max_parallel_queries`` and failed slots get an empty vector.
        """
        operations = [lambda q=q: embed_fn(q) for q in queries]
        embeddings = await self.run_query_expansions(operations)
        return [
            (query, embeddings[i] if i < len(embeddings) and embeddings[i] else [])
            for i, query in enumerate(queries)
        ]
