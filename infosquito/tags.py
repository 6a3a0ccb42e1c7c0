"""Reindexing of tags from the discovery environment database."""

from __future__ import annotations

import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping

from infosquito.document import _integer, _object, _string, _encode
from infosquito.es import BulkDeleteRequest
from infosquito.reindex import BULK_SIZE, RowMetadata, _rollback, index_document

log = logging.getLogger(__name__)

TAG_QUERY = {"bool": {"must": [{"term": {"doc_type": "tag"}}]}}


@dataclass
class ElasticsearchTag:
    """The indexed form of a tag."""

    doc_type: str = ""
    id: str = ""
    value: str = ""
    description: str = ""
    creator: str = ""
    file_type: str = ""
    date_created: int = 0
    date_modified: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> ElasticsearchTag:
        """Build a tag from decoded JSON; raises ValueError on bad field types."""
        data = _object(data, "tag")
        return cls(
            doc_type=_string(data, "doc_type"),
            id=_string(data, "id"),
            value=_string(data, "value"),
            description=_string(data, "description"),
            creator=_string(data, "creator"),
            file_type=_string(data, "fileType"),
            date_created=_integer(data, "dateCreated"),
            date_modified=_integer(data, "dateModified"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "doc_type": self.doc_type,
            "id": self.id,
            "value": self.value,
            "description": self.description,
            "creator": self.creator,
            "fileType": self.file_type,
            "dateCreated": self.date_created,
            "dateModified": self.date_modified,
        }

    def to_json(self) -> str:
        """Compact JSON encoding of the tag."""
        return _encode(self.to_dict())


def _log_tag_time(start: float, rows: RowMetadata) -> None:
    log.info(
        "[indexTags] Processed %d entries (%d rows, %d documents, %d tags indexed, "
        "%d tags removed) in %.3fs",
        rows.processed,
        rows.rows,
        rows.documents,
        rows.tags,
        rows.tags_removed,
        time.monotonic() - start,
    )


def get_indexed_tags(es: Any) -> tuple[int, dict[str, ElasticsearchTag]]:
    """Tags currently in the index: (total hits, tags by id).

    Hits that cannot be decoded are left out so that they get reindexed.
    """
    total, hits = es.search(TAG_QUERY, "id", None)
    docs: dict[str, ElasticsearchTag] = {}
    for hit in hits:
        try:
            doc = ElasticsearchTag.from_dict(hit.get("_source"))
        except ValueError:
            continue
        docs[hit.get("_id", "")] = doc
    return total, docs


def process_tags(
    rows: RowMetadata,
    seen_docs: set[str],
    indexer: Any,
    es: Any,
    tx: Any,
    irods_zone: str,
) -> None:
    """Index every tag in the database, whether or not it changed."""
    for tag_id, selected in tx.get_tags(irods_zone):
        if isinstance(selected, (bytes, bytearray)):
            selected = selected.decode("utf-8")
        seen_docs.add(tag_id)
        index_document(indexer, es.index, tag_id, selected)
        rows.processed += 1
        rows.tags += 1


def process_tag_deletions(
    rows: RowMetadata,
    es_docs: Mapping[str, ElasticsearchTag],
    seen_docs: set[str],
    indexer: Any,
    es: Any,
) -> None:
    """Delete indexed tags that were not seen in the database."""
    for tag_id in es_docs:
        if tag_id in seen_docs:
            continue
        rows.tags_removed += 1
        indexer.add(BulkDeleteRequest(es.index, tag_id))


def reindex_tags(db: Any, es: Any, irods_zone: str) -> RowMetadata:
    """Bring the indexed tags in line with the database."""
    rows = RowMetadata()
    log.debug("Indexing tags")
    start = time.monotonic()
    try:
        total, es_docs = get_indexed_tags(es)
        rows.documents = total
        seen_docs: set[str] = set()

        tx = db.begin_tx()
        try:
            indexer = es.new_bulk_indexer(BULK_SIZE)
            try:
                process_tags(rows, seen_docs, indexer, es, tx, irods_zone)
                _rollback(tx, "DE")
                process_tag_deletions(rows, es_docs, seen_docs, indexer, es)
            except BaseException:
                with contextlib.suppress(Exception):
                    indexer.flush()
                raise
            if indexer.can_flush():
                indexer.flush()
        finally:
            _rollback(tx, "DE")
    finally:
        _log_tag_time(start, rows)
    return rows