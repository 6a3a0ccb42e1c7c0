"""Access to the discovery environment database: tags and metadata AVUs."""

from __future__ import annotations

import logging
from contextlib import closing
from typing import Any, Iterator

log = logging.getLogger(__name__)

_FETCH_BATCH = 500


def _ping(connection: Any) -> None:
    with closing(connection.cursor()) as cursor:
        cursor.execute("SELECT 1")
        cursor.fetchall()


def _fetch(cursor: Any) -> Iterator[tuple[Any, ...]]:
    try:
        while True:
            batch = cursor.fetchmany(_FETCH_BATCH)
            if not batch:
                return
            for row in batch:
                yield tuple(row)
    finally:
        cursor.close()


class _Transaction:
    """A transaction on a DB-API connection that is only ever rolled back."""

    def __init__(self, connection: Any) -> None:
        self._connection = connection
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def _check_open(self) -> None:
        if self._finished:
            raise RuntimeError("transaction has already been committed or rolled back")

    def _create_table(self, name: str, query: str, args: tuple[Any, ...]) -> int:
        self._check_open()
        statement = f"CREATE TEMPORARY TABLE {name} ON COMMIT DROP AS {query}"
        with closing(self._connection.cursor()) as cursor:
            if args:
                cursor.execute(statement, args)
            else:
                cursor.execute(statement)
            rows_affected = cursor.rowcount
            if rows_affected is None or rows_affected < 0:
                raise RuntimeError(f"row count of temporary table {name} is not available")
            cursor.execute(f"ANALYZE {name}")
        return rows_affected

    def _query(self, sql: str) -> Iterator[tuple[Any, ...]]:
        self._check_open()
        cursor = self._connection.cursor()
        try:
            cursor.execute(sql)
        except BaseException:
            cursor.close()
            raise
        return _fetch(cursor)

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._connection.rollback()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._finish()


class DEDBTx(_Transaction):
    """A transaction on the discovery environment database."""

    def __init__(self, connection: Any, schema: str) -> None:
        super().__init__(connection)
        self.schema = schema

    def create_temporary_table(self, name: str, query: str, *args: Any) -> int:
        """Create a table dropped on commit from a query, analyze it, return its row count.

        Placeholders in the query follow the connection's parameter style.
        """
        return self._create_table(name, query, args)

    def rollback(self) -> None:
        """Roll the transaction back; later calls do nothing."""
        self._finish()

    def get_tags(self, irods_zone: str) -> Iterator[tuple[Any, ...]]:
        """Rows of (id, JSON document) for every tag, ordered by id."""
        query = f"""WITH attached (tag_id, targets) AS (
SELECT tag_id,
       json_agg(format('{{"id": %s, "type": %s}}',
           coalesce(to_json(a_t.target_id::text), 'null'::json),
           coalesce(to_json(a_t.target_type::text), 'null'::json))::json) "targets"
  FROM attached_tags a_t WHERE a_t.target_type IN ('file', 'folder') GROUP BY a_t.tag_id
)
SELECT id, to_json(q.*) FROM (
SELECT t.id::text,
       'tag' "doc_type",
       t.value,
       t.description,
       t.owner_id || '#{irods_zone}' "creator",
       t.created_on "dateCreated",
       t.modified_on "dateModified",
       coalesce(attached.targets, json_build_array()) "targets"
  FROM {self.schema}.tags t
  LEFT JOIN attached ON (t.id = attached.tag_id)) q ORDER BY id"""
        log.debug("Tags query: %s", query)
        return self._query(query)

    def get_avus(self, root_target_id_prefix: str) -> Iterator[tuple[Any, ...]]:
        """Rows of (target id, JSON metadata) for AVUs, nested AVUs included.

        An empty prefix selects every target.
        """
        where = ""
        if root_target_id_prefix:
            escaped = root_target_id_prefix.replace("'", "''")
            where = f"WHERE target_id::text LIKE '{escaped}%'"
        query = f"""WITH RECURSIVE all_avus AS (
SELECT cast(id as varchar),
       attribute,
       value,
       unit,
       cast(target_id as varchar),
       cast(target_type as varchar),
       created_by,
       modified_by,
       created_on,
       modified_on
  FROM {self.schema}.avus
  {where}
UNION ALL
SELECT cast(avus.id as varchar),
       avus.attribute,
       avus.value,
       avus.unit,
       cast(aa.target_id as varchar),
       cast(aa.target_type as varchar),
       avus.created_by,
       avus.modified_by,
       avus.created_on,
       avus.modified_on
  FROM {self.schema}.avus
  JOIN all_avus aa ON (avus.target_id = cast(aa.id as uuid) AND avus.target_type = 'avu')
)
SELECT target_id, json_build_object('cyverse', json_agg(format('{{"attribute": %s, "value": %s, "unit": %s}}',
        coalesce(to_json(attribute), 'null'::json),
        coalesce(to_json(value), 'null'::json),
        coalesce(to_json(unit), 'null'::json))::json ORDER BY attribute, value, unit))
  AS "metadata"
  FROM all_avus
  GROUP BY target_id
  ORDER BY target_id
"""
        log.debug("AVUs query: %s", query)
        return self._query(query)


class DEDBConnection:
    """A connection to the discovery environment database and its schema."""

    def __init__(self, connection: Any, schema: str) -> None:
        self.connection = connection
        self.schema = schema

    def begin_tx(self) -> DEDBTx:
        tx = DEDBTx(self.connection, self.schema)
        log.info("Started DEDB transaction")
        return tx


def setup_dedb(connection: Any, schema: str) -> DEDBConnection:
    """Wrap an open DB-API connection after checking that it answers."""
    log.info("Connected to the database")
    _ping(connection)
    log.info("Successfully pinged the database")
    return DEDBConnection(connection, schema)