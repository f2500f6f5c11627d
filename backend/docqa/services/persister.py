"""
Collection Persister

Writes the output of a successful run: one collection row owned by the
session's user, then every surviving QA item in a single bulk insert with
review_status="pending".

Failure semantics:
  - create_collection fails  → PersistError, nothing was written
  - insert_items fails       → the collection row is deleted again; if that
                               delete also fails the orphan's id is carried in
                               PersistError.detail["orphaned_collection_id"]
                               and logged at ERROR for cleanup
In both cases the caller marks the session failed and never points it at the
collection.
"""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Sequence
from uuid import UUID

from docqa.core.errors import PersistError
from docqa.processing.embeddings import EmbeddedQA
from docqa.store.base import CollectionItemRecord, NewCollectionItem, PipelineStore, SessionRecord

logger = logging.getLogger(__name__)

STAGE = "persistence"


def collection_name_for(file_name: str) -> str:
    stem = PurePosixPath(file_name).stem or file_name or "Document"
    return f"{stem} Q&A"


def _to_new_item(item: EmbeddedQA) -> NewCollectionItem:
    qa = item.qa
    return NewCollectionItem(
        question       = qa.question,
        answer         = qa.answer,
        question_type  = qa.question_type,
        quality_score  = qa.quality_score,
        confidence     = qa.confidence,
        source_excerpt = qa.source_excerpt or None,
        embedding      = item.vector,
        key_terms      = list(item.key_terms),
        review_status  = "pending",
    )


class CollectionPersister:

    def __init__(self, store: PipelineStore) -> None:
        self._store = store

    async def persist(self, session: SessionRecord, items: Sequence[EmbeddedQA]) -> UUID:
        """Create the collection and its items; returns the collection id."""
        try:
            collection = await self._store.create_collection(
                user_id           = session.user_id,
                name              = collection_name_for(session.file_name),
                description       = f"Generated from {session.file_name}",
                source_session_id = session.id,
            )
        except Exception as exc:
            raise PersistError(
                f"Could not create collection: {exc}", stage=STAGE,
            ) from exc

        rows = [_to_new_item(i) for i in items]
        try:
            inserted = await self._store.insert_items(collection.id, rows)
        except Exception as exc:
            detail = {"collection_id": str(collection.id), "items": len(rows)}
            if not await self._discard(collection.id):
                detail["orphaned_collection_id"] = str(collection.id)
            raise PersistError(
                f"Could not insert {len(rows)} collection items: {exc}",
                stage=STAGE, detail=detail,
            ) from exc

        logger.info(
            "CollectionPersister | session=%s collection=%s items=%d null_vectors=%d",
            session.id, collection.id, inserted, sum(1 for r in rows if r.embedding is None),
        )
        return collection.id

    async def list_items(
        self,
        collection_id: UUID,
        user_id:       UUID | None = None,
    ) -> list[CollectionItemRecord] | None:
        """Items in creation order; None when the collection is missing or not the user's."""
        collection = await self._store.get_collection(collection_id)
        if collection is None or (user_id is not None and collection.user_id != user_id):
            return None
        return await self._store.list_items(collection_id)

    async def _discard(self, collection_id: UUID) -> bool:
        try:
            await self._store.delete_collection(collection_id)
        except Exception:
            logger.exception(
                "CollectionPersister | orphaned collection=%s could not be removed", collection_id,
            )
            return False
        logger.warning("CollectionPersister | removed empty collection=%s after insert failure", collection_id)
        return True
