"""Cairn ingestion pipeline: normalizer, chunker, extractor, orchestrator, workers."""

from cairn.ingest.chunker import TextChunker
from cairn.ingest.extractor import KnowledgeExtractor
from cairn.ingest.normalizer import Normalizer
from cairn.ingest.pipeline import IngestionPipeline, reembed_all
from cairn.ingest.worker import WorkerPool

__all__ = [
    "IngestionPipeline",
    "KnowledgeExtractor",
    "Normalizer",
    "TextChunker",
    "WorkerPool",
    "reembed_all",
]
