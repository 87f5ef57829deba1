"""
Chunked parallel acuteness analysis.

Score work is split into equal chunks per element kind and handed to a fixed
thread pool. The runner waits for every chunk before merging, so no partial
result is ever exposed, and merges by chunk index to restore element order.
A chunk that raises is logged and recorded as failed; its slots keep a score
of 0 while the other chunks carry on.
"""

import threading
import time
import numpy as np
import structlog
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..config import settings
from .acuteness import AcutenessAnalyzer, AcutenessResult, log_score_summary

logger = structlog.get_logger()

SCORE_KINDS = ("vertex", "face", "cell", "edge")


@dataclass
class ChunkResult:
    """Outcome of scoring one chunk."""
    kind: str
    chunk_index: int
    indices: np.ndarray
    scores: Optional[np.ndarray] = None
    duration_ms: float = 0.0
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class ParallelRunStats:
    total_time_ms: float = 0.0
    worker_metrics: List[Dict[str, Any]] = field(default_factory=list)
    failed_chunks: List[str] = field(default_factory=list)

    @property
    def parallel_efficiency(self) -> float:
        if self.total_time_ms <= 0:
            return 0.0
        return sum(m["duration_ms"] for m in self.worker_metrics) / self.total_time_ms


def chunk_indices(count: int, chunk_size: int) -> List[np.ndarray]:
    """Split range(count) into consecutive chunks of at most ``chunk_size``."""
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return [np.arange(start, min(start + chunk_size, count))
            for start in range(0, count, chunk_size)]


class ParallelAcutenessRunner:
    """Runs an AcutenessAnalyzer over chunks on a worker pool."""

    def __init__(self, max_workers: Optional[int] = None, chunk_size: Optional[int] = None):
        self.max_workers = max_workers if max_workers is not None else settings.max_workers
        self.chunk_size = chunk_size if chunk_size is not None else settings.chunk_size
        if self.max_workers <= 0:
            raise ValueError(f"max_workers must be positive, got {self.max_workers}")
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")

        self._cancelled = threading.Event()
        self.last_stats: Optional[ParallelRunStats] = None

    def cancel(self) -> None:
        """Abandon the in-flight run; its results are discarded."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _element_count(self, analyzer: AcutenessAnalyzer, kind: str) -> int:
        graph = analyzer.graph
        return {
            "vertex": len(graph.tetrahedra),
            "face": len(graph.faces),
            "cell": graph.n_points,
            "edge": len(graph.edges),
        }[kind]

    def _score_chunk(self, analyzer: AcutenessAnalyzer, kind: str,
                     chunk_index: int, indices: np.ndarray) -> ChunkResult:
        result = ChunkResult(kind=kind, chunk_index=chunk_index, indices=indices)
        if self._cancelled.is_set():
            result.error = "cancelled"
            return result

        start = time.perf_counter()
        try:
            scorer = getattr(analyzer, f"{kind}_scores")
            result.scores = scorer(indices)
        except Exception as exc:
            # One broken chunk must not take the other workers down
            logger.error("Acuteness chunk failed", kind=kind, chunk=chunk_index,
                         error=str(exc), exc_info=True)
            result.error = str(exc)
        result.duration_ms = (time.perf_counter() - start) * 1000
        return result

    def run(self, analyzer: AcutenessAnalyzer) -> Optional[AcutenessResult]:
        """
        Score all elements in parallel.

        Returns:
            Merged AcutenessResult, or None when the run was cancelled
        """
        self._cancelled.clear()
        analyzer.prepare()
        started = time.perf_counter()

        tasks = []
        for kind in SCORE_KINDS:
            for chunk_index, indices in enumerate(chunk_indices(self._element_count(analyzer, kind),
                                                                 self.chunk_size)):
                tasks.append((kind, chunk_index, indices))

        logger.info("Starting parallel acuteness analysis", chunks=len(tasks),
                    workers=self.max_workers, chunk_size=self.chunk_size)

        with ThreadPoolExecutor(max_workers=self.max_workers,
                                thread_name_prefix="acuteness") as executor:
            futures = [executor.submit(self._score_chunk, analyzer, kind, chunk_index, indices)
                       for kind, chunk_index, indices in tasks]
            wait(futures)

        if self._cancelled.is_set():
            logger.info("Parallel acuteness analysis cancelled")
            return None

        merged = {kind: np.zeros(self._element_count(analyzer, kind), dtype=np.int64)
                  for kind in SCORE_KINDS}
        stats = ParallelRunStats()

        chunks = sorted((f.result() for f in futures), key=lambda c: (c.kind, c.chunk_index))
        for chunk in chunks:
            if chunk.failed:
                stats.failed_chunks.append(f"{chunk.kind}-{chunk.chunk_index}")
                continue
            merged[chunk.kind][chunk.indices] = chunk.scores
            stats.worker_metrics.append({
                "task_id": f"{chunk.kind}-{chunk.chunk_index}",
                "kind": chunk.kind,
                "elements": len(chunk.indices),
                "duration_ms": chunk.duration_ms,
            })

        stats.total_time_ms = (time.perf_counter() - started) * 1000
        self.last_stats = stats

        if stats.failed_chunks:
            logger.warning("Some acuteness chunks failed", failed=stats.failed_chunks)
        logger.info("Parallel acuteness analysis complete",
                    total_ms=round(stats.total_time_ms, 2),
                    efficiency=round(stats.parallel_efficiency, 2))

        result = AcutenessResult(
            vertex_scores=merged["vertex"],
            face_scores=merged["face"],
            cell_scores=merged["cell"],
            edge_scores=merged["edge"],
            performance={
                "total_time_ms": stats.total_time_ms,
                "worker_metrics": stats.worker_metrics,
                "parallel_efficiency": stats.parallel_efficiency,
                "failed_chunks": stats.failed_chunks,
            },
        )
        log_score_summary(result)
        return result
