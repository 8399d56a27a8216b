"""Indexing layer - classification, state mutation and the range drivers."""

from position_indexer.indexer.classifier import classify_transfer
from position_indexer.indexer.coordinator import (
    HISTORICAL_CURSOR,
    LIVE_CURSOR,
    PipelineError,
    RangeCoordinator,
    RangeProcessingError,
)
from position_indexer.indexer.crawler import CrawlerState, HistoricalCrawler, iter_chunks
from position_indexer.indexer.models import (
    ActionKind,
    ClassifiedEvent,
    IndexerStats,
    RangeOutcome,
)
from position_indexer.indexer.mutator import StateMutator
from position_indexer.indexer.processor import BlockRangeProcessor
from position_indexer.indexer.watcher import LiveBlockWatcher

__all__ = [
    "HISTORICAL_CURSOR",
    "LIVE_CURSOR",
    "ActionKind",
    "BlockRangeProcessor",
    "ClassifiedEvent",
    "CrawlerState",
    "HistoricalCrawler",
    "IndexerStats",
    "LiveBlockWatcher",
    "PipelineError",
    "RangeCoordinator",
    "RangeOutcome",
    "RangeProcessingError",
    "StateMutator",
    "classify_transfer",
    "iter_chunks",
]
