import json

import pytest
import responses

from infosquito.dedb import DEDBConnection
from infosquito.document import BothMetadata, ElasticsearchDocument, Metadatum
from infosquito.es import BulkDeleteRequest, BulkIndexRequest, ESConnection
from infosquito.icat import ICATConnection, ICATTx
from infosquito.reindex import (
    DocumentClassification,
    RowMetadata,
    TooManyResultsError,
    classify,
    create_metadata_table,
    create_perms_table,
    create_uuids_table,
    get_search_results,
    index_document,
    preprocess_metadata,
    process_collections,
    process_dataobjects,
    process_deletions,
    reindex_prefix,
)

BASE = "http://localhost:9200"


class FakeCursor:
    def __init__(self, conn):
        self._conn = conn
        self.rowcount = -1
        self._rows = []

    def execute(self, sql, params=None):
        self._conn.executed.append((sql, params))
        self.rowcount, rows = self._conn.lookup(sql)
        self._rows = list(rows)

    def fetchmany(self, size):
        batch, self._rows = self._rows[:size], self._rows[size:]
        return batch

    def fetchall(self):
        batch, self._rows = self._rows, []
        return batch

    def close(self):
        pass


class FakeConnection:
    def __init__(self, rules=()):
        self.rules = list(rules)
        self.executed = []
        self.rollbacks = 0

    def lookup(self, sql):
        for needle, rowcount, rows in self.rules:
            if needle in sql:
                return rowcount, rows
        return 0, []

    def cursor(self):
        return FakeCursor(self)

    def rollback(self):
        self.rollbacks += 1


class RecordingIndexer:
    def __init__(self):
        self.requests = []

    def add(self, request):
        self.requests.append(request)


class FakeES:
    index = "data"


def make_doc(doc_id, doc_type="file", **kwargs):
    return ElasticsearchDocument(doc_type=doc_type, id=doc_id, path=f"/zone/{doc_id}", **kwargs)


CYVERSE_JSON = json.dumps({"cyverse": [{"attribute": "a", "value": "v", "unit": "u"}]})


def test_classify_missing_document_is_indexed():
    assert classify("x", make_doc("x"), {}) is DocumentClassification.INDEX_DOCUMENT


def test_classify_equal_document_needs_nothing():
    assert classify("x", make_doc("x"), {"x": make_doc("x")}) is DocumentClassification.NO_ACTION


def test_classify_changed_document_is_updated():
    result = classify("x", make_doc("x", file_size=4), {"x": make_doc("x", file_size=5)})
    assert result is DocumentClassification.UPDATE_DOCUMENT


def test_index_document_adds_index_request():
    indexer = RecordingIndexer()
    index_document(indexer, "data", "id1", '{"a":1}')
    assert indexer.requests == [BulkIndexRequest("data", "id1", '{"a":1}')]


def test_preprocess_metadata_maps_by_id():
    rows = [("a", CYVERSE_JSON), ("b", "{}")]
    assert preprocess_metadata(rows) == {"a": CYVERSE_JSON, "b": "{}"}


def test_create_uuids_table_within_limit():
    conn = FakeConnection([("TABLE base_object_uuids", 5, [])])
    tx = ICATTx(conn)
    assert create_uuids_table(tx, "abc", 10) == 5
    statements = [sql for sql, _ in conn.executed]
    assert statements[0].startswith("CREATE TEMPORARY TABLE base_object_uuids ON COMMIT DROP AS")
    assert conn.executed[0][1] == ("abc",)
    assert any(s.startswith("CREATE TEMPORARY TABLE object_uuids") for s in statements)


def test_create_uuids_table_too_many():
    conn = FakeConnection([("TABLE base_object_uuids", 11, [])])
    with pytest.raises(TooManyResultsError) as info:
        create_uuids_table(ICATTx(conn), "abc", 10)
    assert info.value.count == 11
    assert not any("TABLE object_uuids" in sql for sql, _ in conn.executed)


def test_create_perms_and_metadata_tables():
    conn = FakeConnection([("TABLE object_perms", 3, []), ("TABLE object_metadata", 4, [])])
    tx = ICATTx(conn)
    assert create_perms_table(tx) == 3
    assert create_metadata_table(tx) == 4
    statements = [sql for sql, _ in conn.executed]
    assert statements[1] == "ANALYZE object_perms"
    assert statements[3] == "ANALYZE object_metadata"


def test_get_search_results_decodes_hits():
    es = ESConnection(BASE, "data")
    good = make_doc("abc1")
    body = {
        "hits": {
            "total": {"value": 2},
            "hits": [
                {"_id": "abc1", "_type": "_doc", "_source": good.to_dict()},
                {"_id": "abc2", "_type": "_doc", "_source": {"dateCreated": "x"}},
            ],
        }
    }
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, f"{BASE}/data/_search", json=body)
        total, docs, types = get_search_results(es, "AbC", 10)
        sent = json.loads(rsps.calls[0].request.body)
    assert total == 2
    assert set(docs) == {"abc1"}
    assert docs["abc1"].equal(good)
    assert types == {"abc1": "_doc"}
    assert sent["size"] == 10
    prefixes = [clause["prefix"]["id"] for clause in sent["query"]["bool"]["should"]]
    assert prefixes == ["ABC", "abc"]


def test_get_search_results_too_many():
    es = ESConnection(BASE, "data")
    with responses.RequestsMock() as rsps:
        rsps.add(
            responses.POST,
            f"{BASE}/data/_search",
            json={"hits": {"total": {"value": 7}, "hits": []}},
        )
        with pytest.raises(TooManyResultsError) as info:
            get_search_results(es, "abc", 3)
    assert info.value.count == 7


def _objects_setup(doc_type):
    needle = f"'{doc_type}' \"doc_type\""
    id1, id2, id3 = make_doc("id1", doc_type), make_doc("id2", doc_type), make_doc("id3", doc_type)
    conn = FakeConnection(
        [(needle, 3, [("id1", id1.to_json()), ("id2", id2.to_json()), ("id3", id3.to_json())])]
    )
    es_docs = {"id1": make_doc("id1", doc_type), "id3": make_doc("id3", doc_type)}
    avus = {"id2": CYVERSE_JSON, "id3": CYVERSE_JSON}
    return ICATTx(conn), es_docs, avus


def test_process_dataobjects_merges_metadata_before_classifying():
    tx, es_docs, avus = _objects_setup("file")
    rows, seen, indexer = RowMetadata(), set(), RecordingIndexer()
    process_dataobjects(rows, avus, es_docs, seen, indexer, FakeES(), tx, "zone")
    assert seen == {"id1", "id2", "id3"}
    assert (rows.dataobjects, rows.processed) == (3, 3)
    assert (rows.dataobjects_added, rows.dataobjects_updated) == (1, 1)
    assert [r.id for r in indexer.requests] == ["id2", "id3"]
    indexed = ElasticsearchDocument.from_dict(json.loads(indexer.requests[1].doc))
    assert indexed.metadata.cyverse == [Metadatum("a", "v", "u")]


def test_process_collections_classifies_before_merging_metadata():
    tx, es_docs, avus = _objects_setup("folder")
    rows, seen, indexer = RowMetadata(), set(), RecordingIndexer()
    process_collections(rows, avus, es_docs, seen, indexer, FakeES(), tx, "zone")
    assert seen == {"id1", "id2", "id3"}
    assert (rows.colls, rows.processed) == (3, 3)
    assert (rows.colls_added, rows.colls_updated) == (1, 0)
    assert [r.id for r in indexer.requests] == ["id2"]
    indexed = ElasticsearchDocument.from_dict(json.loads(indexer.requests[0].doc))
    assert indexed.metadata.cyverse == [Metadatum("a", "v", "u")]


def test_process_dataobjects_rejects_bad_json():
    conn = FakeConnection([("'file' \"doc_type\"", 1, [("id1", "not json")])])
    with pytest.raises(ValueError):
        process_dataobjects(
            RowMetadata(), {}, {}, set(), RecordingIndexer(), FakeES(), ICATTx(conn), "zone"
        )


def test_process_deletions():
    es_docs = {"a": make_doc("a"), "b": make_doc("b"), "c": make_doc("c")}
    types = {"a": "file", "b": "folder"}
    rows, indexer = RowMetadata(), RecordingIndexer()
    process_deletions(rows, es_docs, types, {"a"}, indexer, FakeES())
    assert indexer.requests == [BulkDeleteRequest("data", "b"), BulkDeleteRequest("data", "c")]
    assert rows.dataobjects_removed == 1
    assert rows.colls_removed == 1


def test_reindex_prefix_end_to_end():
    kept = make_doc("abc1", "file")
    folder = make_doc("abc2", "folder")
    icat_conn = FakeConnection(
        [
            ("TABLE base_object_uuids", 2, []),
            ("'file' \"doc_type\"", 1, [("abc1", kept.to_json())]),
            ("'folder' \"doc_type\"", 1, [("abc2", folder.to_json())]),
        ]
    )
    dedb_conn = FakeConnection([("WITH RECURSIVE all_avus", 1, [("abc2", CYVERSE_JSON)])])
    search_body = {
        "hits": {
            "total": {"value": 2},
            "hits": [
                {"_id": "abc1", "_type": "file", "_source": kept.to_dict()},
                {"_id": "abcgone", "_type": "file", "_source": make_doc("abcgone").to_dict()},
            ],
        }
    }
    es = ESConnection(BASE, "data")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, f"{BASE}/data/_search", json=search_body)
        rsps.add(responses.POST, f"{BASE}/_bulk", json={"errors": False, "items": []})
        rows = reindex_prefix(
            ICATConnection(icat_conn), DEDBConnection(dedb_conn, "public"), es, "abc", "zone", 10
        )
        bulk_body = rsps.calls[-1].request.body.decode("utf-8")

    lines = [json.loads(line) for line in bulk_body.splitlines()]
    assert lines[0] == {"index": {"_index": "data", "_id": "abc2"}}
    assert ElasticsearchDocument.from_dict(lines[1]).metadata == BothMetadata(
        cyverse=[Metadatum("a", "v", "u")]
    )
    assert lines[2] == {"delete": {"_index": "data", "_id": "abcgone"}}
    assert len(lines) == 3
    assert rows.documents == 2
    assert rows.rows == 2
    assert (rows.dataobjects, rows.colls, rows.processed) == (1, 1, 2)
    assert rows.colls_added == 1
    assert rows.dataobjects_removed == 1
    assert dedb_conn.rollbacks == 1
    assert icat_conn.rollbacks == 1


def test_reindex_prefix_too_many_in_index():
    es = ESConnection(BASE, "data")
    icat_conn, dedb_conn = FakeConnection(), FakeConnection()
    with responses.RequestsMock() as rsps:
        rsps.add(
            responses.POST,
            f"{BASE}/data/_search",
            json={"hits": {"total": {"value": 50}, "hits": []}},
        )
        with pytest.raises(TooManyResultsError):
            reindex_prefix(
                ICATConnection(icat_conn), DEDBConnection(dedb_conn, "public"), es, "a", "zone", 10
            )
    assert icat_conn.executed == []
    assert dedb_conn.executed == []