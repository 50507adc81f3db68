"""
Batch pipeline components for chain data ingestion and processing.

This package contains the generic batch machinery and the chain stages:

Modules:
    base: Stage protocol every pipeline stage satisfies
    runner: BatchRunner, one lock-guarded and resumable run of a stage
    scheduler: APScheduler interval loop around the runners
    lock_manager: Named locks with lease-based crash recovery
    progress: Monotonic progress writes and final snapshots
    chunking: Chunk planning and bounded-parallel unit processing
    retry: Error classification and retry policies
    block_range: Work range resolution (cursor, bounds, lookback)
    batch_admin: Show, pause, cancel and resume batches
    pipelines: Wiring of configured stages into runners

Subpackages:
    extractors: Substrate JSON-RPC client and the block extract stage
    transformers: Daily activity transform stage
    loaders: Idempotent writers for staged blocks and facts

Architecture:
    Every stage goes through the same run:

    1. Open - take the stage lock and create the batch record atomically
    2. Resolve - decide the positions to cover
    3. Process - chunked fan-out, one transaction per saved chunk
    4. Finalize - final status, counts and logs; release the lock

    A stage only knows how to find, fetch and store its own data.

Usage:
    from ingestion.pipelines import build_runner
    from models.base import StageType

Example:
    runner = build_runner(StageType.TRANSFORM, session_maker)
    result = await runner.run_once()

    print(f"Processed {result.processed_count} blocks")

Error Handling:
    All components use custom exceptions from core.exceptions. Transient
    errors are retried in place by ingestion.retry; connectivity exhaustion
    stops the process.
"""

__all__ = [
    "Stage",
    "BatchRunner",
    "ETLScheduler",
    "LockManager",
    "ProgressTracker",
    "ChunkScheduler",
    "RetryPolicy",
    "ChainExtractStage",
    "ChainActivityTransformStage",
    "BlockLoader",
    "ActivityLoader",
]
