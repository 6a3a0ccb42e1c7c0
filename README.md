# infosquito

infosquito keeps an Elasticsearch index in step with an iRODS catalogue
(the ICAT database) and the DE database. It covers data objects (files),
collections (folders), their iRODS and CyVerse metadata, user permissions,
and tags.

Data objects and collections are reindexed one UUID prefix at a time. For
each prefix, the documents already in Elasticsearch are read and compared
with the current rows in the ICAT. Each document then gets one of three
outcomes:

- it is indexed if Elasticsearch does not have it yet,
- it is updated if it differs from the copy in Elasticsearch,
- it is deleted if it is in Elasticsearch but no longer in the ICAT.

Tags are always reindexed in full. Any tag that is gone from the DE
database is removed from the index.

## Installation

```
pip install .
```

To run the test suite, install the `test` extra:

```
pip install ".[test]"
pytest
```

## Usage

You open the database connections yourself and pass them in. Any DB-API
connection to PostgreSQL works, as long as its placeholders use the `%s`
style, as psycopg2 does. infosquito talks to Elasticsearch over HTTP
through `requests`.

```python
from infosquito.es import setup_es
from infosquito.icat import setup_icat
from infosquito.dedb import setup_dedb
from infosquito.reindex import reindex_prefix
from infosquito.tags import reindex_tags

password = "password"
es = setup_es("http://localhost:9200", "elastic", password, "data")
icat = setup_icat(icat_connection)
dedb = setup_dedb(de_connection, "metadata")

with es:
    # Reindex every object whose UUID starts with "0a".
    counts = reindex_prefix(icat, dedb, es, "0a", "iplant", 10000)
    print(counts.dataobjects_added, counts.colls_updated, counts.dataobjects_removed)

    # Reindex all tags.
    tag_counts = reindex_tags(dedb, es, "iplant")
    print(tag_counts.tags, tag_counts.tags_removed)
```

`setup_es` sends HTTP basic authentication and does not verify TLS
certificates. It waits up to 10 seconds for the cluster to report yellow
or better health. If that does not happen, it raises `ConnectionError`.

`setup_icat` and `setup_dedb` send `SELECT 1` on the connection before
wrapping it. Transactions from `begin_tx()` are only ever rolled back,
because all the work happens in temporary tables and reads.

`reindex_prefix` and `reindex_tags` both return a
`infosquito.reindex.RowMetadata` with counters for the run. Each also
logs a summary through the standard `logging` module.

If a prefix matches more than `max_in_prefix` objects, either in
Elasticsearch or in the ICAT, `reindex_prefix` raises
`infosquito.reindex.TooManyResultsError`. Its `count` attribute holds the
number that was found. Use longer prefixes to split the work.

### Comparing documents

`ElasticsearchDocument.equal` in `infosquito.document` compares two
documents the way the reindexer does. The order of metadata and permission
entries does not matter:

```python
from infosquito.document import ElasticsearchDocument

a = ElasticsearchDocument.from_dict({"id": "12345", "path": "/foo"})
b = ElasticsearchDocument.from_dict({"id": "12345", "path": "/foo"})
assert a.equal(b)
```

`from_dict` raises `ValueError` when a field has the wrong JSON type.
`to_json` gives a compact JSON encoding of the document.

### Bulk requests

`ESConnection.new_bulk_indexer(bulk_size)` returns a `BulkIndexer`. It
collects `BulkIndexRequest` and `BulkDeleteRequest` items. It sends them to
the `_bulk` endpoint when `bulk_size` requests are pending, or when you
call `flush()`. Used as a context manager, it flushes on exit.

## What it does not do

infosquito is a library only. It has no command-line program and does not
read configuration files. It does not listen on a message queue or run on
a schedule. It does not open database connections by itself. To reindex
everything, your own code has to walk through the prefixes and call
`reindex_prefix` for each one.