"""
Composition root.

Builds every service from one Settings object so the API process, Celery
workers and tests wire the pipeline the same way.  Nothing here is a
module-level singleton; callers that want one instance per process cache the
returned Services themselves.
"""

from __future__ import annotations

from dataclasses import dataclass

from docqa.core.config import Settings
from docqa.db.session import build_engine, build_session_factory
from docqa.llm.gateway import LLMGateway
from docqa.processing.embeddings import EmbeddingGenerator
from docqa.processing.extractor import ContentExtractor
from docqa.processing.qa_generator import QAGenerator
from docqa.services.job_queue import JobQueue, PendingRequeuer, Reaper
from docqa.services.persister import CollectionPersister
from docqa.services.pipeline import DocumentPipeline
from docqa.services.session_state import SessionStateMachine
from docqa.services.usage import HttpUsageCounter, NullUsageCounter, UsageCounter
from docqa.storage.s3 import DocumentStorage
from docqa.store.base import PipelineStore
from docqa.store.sql import SqlPipelineStore


@dataclass
class Services:
    store:         PipelineStore
    state_machine: SessionStateMachine
    persister:     CollectionPersister
    pipeline:      DocumentPipeline
    queue:         JobQueue
    reaper:        Reaper
    requeuer:      PendingRequeuer


def build_usage_counter(settings: Settings) -> UsageCounter:
    if settings.usage_counter_url:
        return HttpUsageCounter(settings.usage_counter_url)
    return NullUsageCounter()


def build_store(settings: Settings) -> PipelineStore:
    return SqlPipelineStore(build_session_factory(build_engine(settings)))


def build_services(
    settings:  Settings,
    store:     PipelineStore | None = None,
    gateway:   LLMGateway | None = None,
    embedder:  EmbeddingGenerator | None = None,
    storage:   DocumentStorage | None = None,
    usage:     UsageCounter | None = None,
    extractor: ContentExtractor | None = None,
) -> Services:
    store     = store or build_store(settings)
    gateway   = gateway or LLMGateway(settings)
    state     = SessionStateMachine(store)
    persister = CollectionPersister(store)
    extractor = extractor or ContentExtractor(
        gateway,
        storage or DocumentStorage(settings),
        min_segment_chars=settings.min_segment_chars,
    )

    pipeline = DocumentPipeline(
        store         = store,
        state_machine = state,
        extractor     = extractor,
        qa_generator  = QAGenerator(gateway),
        embedder      = embedder or EmbeddingGenerator(settings),
        persister     = persister,
        settings      = settings,
        usage_counter = usage or build_usage_counter(settings),
    )
    return Services(
        store         = store,
        state_machine = state,
        persister     = persister,
        pipeline      = pipeline,
        queue         = JobQueue(store, pipeline.run, state, settings),
        reaper        = Reaper(store, state, settings),
        requeuer      = PendingRequeuer(store, state, settings),
    )
