"""Reindexing of data objects and collections whose UUIDs share a prefix."""

from __future__ import annotations

import contextlib
import enum
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Mapping

from infosquito.document import BothMetadata, ElasticsearchDocument, Metadatum
from infosquito.es import BulkDeleteRequest, BulkIndexRequest

log = logging.getLogger(__name__)

UUIDS_TABLE = "object_uuids"
PERMS_TABLE = "object_perms"
METADATA_TABLE = "object_metadata"
BULK_SIZE = 1000


class TooManyResultsError(Exception):
    """More results in a prefix than may be handled at once."""

    def __init__(self, count: int) -> None:
        super().__init__("Too many results in prefix")
        self.count = count


class DocumentClassification(enum.IntEnum):
    """What to do with a document found in the catalog."""

    NO_ACTION = 0
    INDEX_DOCUMENT = 1
    UPDATE_DOCUMENT = 2


@dataclass
class RowMetadata:
    """Counters describing one reindexing run."""

    rows: int = 0
    documents: int = 0
    processed: int = 0
    dataobjects: int = 0
    dataobjects_added: int = 0
    dataobjects_updated: int = 0
    dataobjects_removed: int = 0
    colls: int = 0
    colls_added: int = 0
    colls_updated: int = 0
    colls_removed: int = 0
    tags: int = 0
    tags_removed: int = 0


def _log_time(prefix: str, start: float, rows: RowMetadata) -> None:
    log.info(
        "[prefix %s] Processed %d entries (%d rows, %d documents, processed %d data objects "
        "(+%d,U%d,-%d), %d colls (+%d,U%d,-%d)) in %.3fs",
        prefix,
        rows.processed,
        rows.rows,
        rows.documents,
        rows.dataobjects,
        rows.dataobjects_added,
        rows.dataobjects_updated,
        rows.dataobjects_removed,
        rows.colls,
        rows.colls_added,
        rows.colls_updated,
        rows.colls_removed,
        time.monotonic() - start,
    )


def _decode(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        return json.loads(value)
    return value


def _cyverse_metadata(value: Any) -> list[Metadatum]:
    data = _decode(value)
    if data is None:
        return []
    if not isinstance(data, dict):
        raise ValueError(f"CyVerse metadata must be an object, got {type(data).__name__}")
    return BothMetadata.from_dict({"cyverse": data.get("cyverse")}).cyverse


def _rollback(tx: Any, what: str) -> None:
    try:
        tx.rollback()
    except Exception as err:  # a failed rollback only matters to the logs
        log.debug("Failed rolling back %s transaction: %s", what, err)


def create_uuids_table(tx: Any, prefix: str, max_in_prefix: int) -> int:
    """Create the temporary tables of object UUIDs for a prefix; return the UUID row count."""
    count = tx.create_temporary_table(
        "base_object_uuids",
        "SELECT meta.meta_id, lower(meta.meta_attr_value) as id FROM r_meta_main meta "
        "WHERE meta.meta_attr_name = 'ipc_UUID' AND meta.meta_attr_value LIKE %s || '%%'",
        prefix,
    )
    if count > max_in_prefix:
        raise TooManyResultsError(count)
    log.debug(
        "Got %d rows for prefix %s (note that this may include stale unused metadata)",
        count,
        prefix,
    )
    tx.create_temporary_table(
        UUIDS_TABLE,
        "SELECT map.object_id as object_id, meta.id FROM r_objt_metamap map "
        "JOIN base_object_uuids meta ON map.meta_id = meta.meta_id",
    )
    return count


def create_perms_table(tx: Any) -> int:
    """Create the temporary table of user permissions per object."""
    count = tx.create_temporary_table(
        PERMS_TABLE,
        """select object_id, json_agg(format('{"user": %s, "permission": %s}', to_json(u.user_name || '#' || u.zone_name), (
                                 CASE a.access_type_id
                                   WHEN 1050 THEN to_json('read'::text)
                                   WHEN 1120 THEN to_json('write'::text)
                                   WHEN 1200 THEN to_json('own'::text)
                                   ELSE 'null'::json
                                 END))::json ORDER BY u.user_name, u.zone_name) AS "userPermissions" from r_objt_access a join r_user_main u on (a.user_id = u.user_id) where a.object_id IN (select object_id from object_uuids) group by object_id""",
    )
    log.debug("Got %d rows for perms", count)
    return count


def create_metadata_table(tx: Any) -> int:
    """Create the temporary table of catalog metadata per object."""
    count = tx.create_temporary_table(
        METADATA_TABLE,
        """select object_id, json_build_object('irods', json_agg(format('{"attribute": %s, "value": %s, "unit": %s}',
                        coalesce(to_json(m2.meta_attr_name), 'null'::json),
                        coalesce(to_json(m2.meta_attr_value), 'null'::json),
                        coalesce(to_json(m2.meta_attr_unit), 'null'::json))::json ORDER BY meta_attr_name, meta_attr_value, meta_attr_unit))
                       AS "metadata" from r_objt_metamap map2 left join r_meta_main m2 on map2.meta_id = m2.meta_id where m2.meta_attr_name <> 'ipc_UUID' and object_id IN (select object_id from object_uuids) group by object_id""",
    )
    log.debug("Got %d rows for metadata", count)
    return count


def get_search_results(
    es: Any, prefix: str, max_in_prefix: int
) -> tuple[int, dict[str, ElasticsearchDocument], dict[str, str]]:
    """Indexed files and folders whose id starts with prefix.

    Returns (total hits, documents by id, document types by id). Hits that
    cannot be decoded are left out so that they get reindexed.
    """
    query = {
        "bool": {
            "must": [
                {
                    "bool": {
                        "should": [
                            {"term": {"doc_type": "file"}},
                            {"term": {"doc_type": "folder"}},
                        ]
                    }
                }
            ],
            "should": [
                {"prefix": {"id": prefix.upper()}},
                {"prefix": {"id": prefix.lower()}},
            ],
            "minimum_should_match": 1,
        }
    }
    total, hits = es.search(query, "id", max_in_prefix)
    log.debug("Got %d documents for prefix %s (ES)", total, prefix)
    if total > max_in_prefix:
        raise TooManyResultsError(total)

    es_docs: dict[str, ElasticsearchDocument] = {}
    es_doc_types: dict[str, str] = {}
    for hit in hits:
        try:
            doc = ElasticsearchDocument.from_dict(hit.get("_source"))
        except ValueError:
            continue
        hit_id = hit.get("_id", "")
        es_docs[hit_id] = doc
        es_doc_types[hit_id] = hit.get("_type") or ""
    return total, es_docs, es_doc_types


def classify(
    id: str, doc: ElasticsearchDocument, es_docs: Mapping[str, ElasticsearchDocument]
) -> DocumentClassification:
    """Decide whether a document must be indexed, updated, or left alone."""
    existing = es_docs.get(id)
    if existing is None:
        return DocumentClassification.INDEX_DOCUMENT
    if not doc.equal(existing):
        return DocumentClassification.UPDATE_DOCUMENT
    return DocumentClassification.NO_ACTION


def index_document(indexer: Any, index: str, id: str, document: Any) -> None:
    """Queue a document for indexing under the given id."""
    indexer.add(BulkIndexRequest(index, id, document))


def preprocess_metadata(rows: Iterable[tuple[Any, Any]]) -> dict[str, Any]:
    """Map each (target id, metadata JSON) row by its target id."""
    return {target_id: selected for target_id, selected in rows}


def _sync_objects(
    db_rows: Iterable[tuple[Any, Any]],
    avus: Mapping[str, Any],
    es_docs: Mapping[str, ElasticsearchDocument],
    seen_es_docs: set[str],
    indexer: Any,
    index: str,
    *,
    metadata_first: bool,
    kind: str,
) -> Iterator[DocumentClassification]:
    for object_id, selected in db_rows:
        seen_es_docs.add(object_id)
        doc = ElasticsearchDocument.from_dict(_decode(selected))

        if not metadata_first:
            classification = classify(object_id, doc, es_docs)
        if object_id in avus:
            doc.metadata.cyverse = _cyverse_metadata(avus[object_id])
            log.debug("Integrated CyVerse metadata: %r", doc)
        if metadata_first:
            classification = classify(object_id, doc, es_docs)

        if classification is DocumentClassification.UPDATE_DOCUMENT:
            log.debug("%s %s, documents differ, indexing", kind, object_id)
        elif classification is DocumentClassification.INDEX_DOCUMENT:
            log.debug("%s %s not in ES, indexing", kind, object_id)
        if classification is not DocumentClassification.NO_ACTION:
            index_document(indexer, index, object_id, doc.to_json())
        yield classification


def process_dataobjects(
    rows: RowMetadata,
    avus: Mapping[str, Any],
    es_docs: Mapping[str, ElasticsearchDocument],
    seen_es_docs: set[str],
    indexer: Any,
    es: Any,
    tx: Any,
    irods_zone: str,
) -> None:
    """Index data objects that are missing from or differ in the index."""
    db_rows = tx.get_data_objects(UUIDS_TABLE, PERMS_TABLE, METADATA_TABLE, irods_zone)
    for classification in _sync_objects(
        db_rows, avus, es_docs, seen_es_docs, indexer, es.index,
        metadata_first=True, kind="data-object",
    ):
        if classification is DocumentClassification.UPDATE_DOCUMENT:
            rows.dataobjects_updated += 1
        elif classification is DocumentClassification.INDEX_DOCUMENT:
            rows.dataobjects_added += 1
        rows.processed += 1
        rows.dataobjects += 1
    log.debug(
        "%d data-objects missing, %d data-objects to update",
        rows.dataobjects_added,
        rows.dataobjects_updated,
    )


def process_collections(
    rows: RowMetadata,
    avus: Mapping[str, Any],
    es_docs: Mapping[str, ElasticsearchDocument],
    seen_es_docs: set[str],
    indexer: Any,
    es: Any,
    tx: Any,
    irods_zone: str,
) -> None:
    """Index collections that are missing from or differ in the index.

    Collections are classified before their CyVerse metadata is merged in.
    """
    db_rows = tx.get_collections(UUIDS_TABLE, PERMS_TABLE, METADATA_TABLE, irods_zone)
    for classification in _sync_objects(
        db_rows, avus, es_docs, seen_es_docs, indexer, es.index,
        metadata_first=False, kind="collection",
    ):
        if classification is DocumentClassification.UPDATE_DOCUMENT:
            rows.colls_updated += 1
        elif classification is DocumentClassification.INDEX_DOCUMENT:
            rows.colls_added += 1
        rows.processed += 1
        rows.colls += 1
    log.debug(
        "%d collections missing, %d collections to update",
        rows.colls_added,
        rows.colls_updated,
    )


def process_deletions(
    rows: RowMetadata,
    es_docs: Mapping[str, ElasticsearchDocument],
    es_doc_types: Mapping[str, str],
    seen_es_docs: set[str],
    indexer: Any,
    es: Any,
) -> None:
    """Delete indexed documents that were not seen in the catalog."""
    for doc_id in es_docs:
        if doc_id in seen_es_docs:
            continue
        doc_type = es_doc_types.get(doc_id)
        if doc_type is None:
            log.error("Could not find type for document %s, making rash assumptions", doc_id)
            doc_type = "file"
        if doc_type == "file":
            log.debug("data-object %s not seen in ICAT, deleting", doc_id)
            rows.dataobjects_removed += 1
        elif doc_type == "folder":
            log.debug("collection %s not seen in ICAT, deleting", doc_id)
            rows.colls_removed += 1
        indexer.add(BulkDeleteRequest(es.index, doc_id))
    log.debug(
        "%d data-objects to delete, %d collections to delete",
        rows.dataobjects_removed,
        rows.colls_removed,
    )


def reindex_prefix(
    icat: Any, dedb: Any, es: Any, prefix: str, irods_zone: str, max_in_prefix: int
) -> RowMetadata:
    """Bring the index in line with the catalog for every UUID starting with prefix."""
    rows = RowMetadata()
    log.debug("Indexing prefix %s", prefix)
    start = time.monotonic()
    try:
        _reindex(rows, icat, dedb, es, prefix, irods_zone, max_in_prefix)
    finally:
        _log_time(prefix, start, rows)
    return rows


def _reindex(
    rows: RowMetadata,
    icat: Any,
    dedb: Any,
    es: Any,
    prefix: str,
    irods_zone: str,
    max_in_prefix: int,
) -> None:
    try:
        total, es_docs, es_doc_types = get_search_results(es, prefix, max_in_prefix)
    except TooManyResultsError as err:
        rows.documents = err.count
        raise
    rows.documents = total
    seen_es_docs: set[str] = set()

    de_tx = dedb.begin_tx()
    try:
        avus = preprocess_metadata(de_tx.get_avus(prefix))
    finally:
        _rollback(de_tx, "DE")

    icat_tx = icat.begin_tx()
    try:
        rows.rows = create_uuids_table(icat_tx, prefix, max_in_prefix)
        create_perms_table(icat_tx)
        create_metadata_table(icat_tx)

        indexer = es.new_bulk_indexer(BULK_SIZE)
        try:
            process_dataobjects(
                rows, avus, es_docs, seen_es_docs, indexer, es, icat_tx, irods_zone
            )
            process_collections(
                rows, avus, es_docs, seen_es_docs, indexer, es, icat_tx, irods_zone
            )
            _rollback(icat_tx, "ICAT")
            process_deletions(rows, es_docs, es_doc_types, seen_es_docs, indexer, es)
        except BaseException:
            with contextlib.suppress(Exception):
                indexer.flush()
            raise
        if indexer.can_flush():
            indexer.flush()
    finally:
        _rollback(icat_tx, "ICAT")