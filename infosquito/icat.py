"""Access to the data store catalog: data objects and collections."""

from __future__ import annotations

import logging
from typing import Any, Iterator, Sequence

from infosquito.dedb import _ping, _Transaction

log = logging.getLogger(__name__)

# Each document column is an SQL expression and the JSON key it is exported as.
_Column = tuple[str, str]

_DATA_OBJECT_COLUMNS: Sequence[_Column] = (
    ("ou.id", "id"),
    ("'file'", "doc_type"),
    ("(c.coll_name || '/' || d1.data_name)", "path"),
    ("d1.data_name", "label"),
    ("(d1.data_owner_name || '#' || d1.data_owner_zone)", "creator"),
    ("cast(d1.create_ts AS BIGINT) * 1000", "dateCreated"),
    ("cast(d1.modify_ts AS BIGINT) * 1000", "dateModified"),
    ("d1.data_size", "fileSize"),
    ("d1.data_type_name", "fileType"),
    ('op."userPermissions"', "userPermissions"),
    ("om.metadata", "metadata"),
)

_COLLECTION_COLUMNS: Sequence[_Column] = (
    ("ou.id", "id"),
    ("'folder'", "doc_type"),
    ("coll_name", "path"),
    ("REPLACE(coll_name, parent_coll_name || '/', '')", "label"),
    ("(coll_owner_name || '#' || coll_owner_zone)", "creator"),
    ("cast(create_ts AS BIGINT) * 1000", "dateCreated"),
    ("cast(modify_ts AS BIGINT) * 1000", "dateModified"),
    ("0", "fileSize"),
    ("''", "fileType"),
    ('op."userPermissions"', "userPermissions"),
    ("om.metadata", "metadata"),
)


def _document_query(
    columns: Sequence[_Column],
    source: str,
    uuid_join: str,
    perms_table: str,
    meta_table: str,
    conditions: Sequence[str],
) -> str:
    """Build a query yielding (id, JSON document) rows ordered by id."""
    select_list = ",\n    ".join(f'{expr} AS "{alias}"' for expr, alias in columns)
    joins = "\n".join(
        (
            uuid_join,
            f"LEFT JOIN {perms_table} op USING (object_id)",
            f"LEFT JOIN {meta_table} om USING (object_id)",
        )
    )
    where = " AND ".join(conditions)
    inner = f"SELECT\n    {select_list}\nFROM {source}\n{joins}\nWHERE {where}"
    return f"SELECT id, to_json(q.*) FROM (\n{inner}\n) q ORDER BY id"


class ICATTx(_Transaction):
    """A transaction on the data store catalog."""

    def create_temporary_table(self, name: str, query: str, *args: Any) -> int:
        """Create a table dropped on commit from a query, analyze it, return its row count.

        Placeholders in the query follow the connection's parameter style.
        """
        return self._create_table(name, query, args)

    def rollback(self) -> None:
        """Roll the transaction back; later calls do nothing."""
        self._finish()

    def get_data_objects(
        self, uuid_table: str, perms_table: str, meta_table: str, folder_base: str
    ) -> Iterator[tuple[Any, ...]]:
        """Rows of (id, JSON document) for data objects, using prepared temporary tables.

        Only the lowest-numbered replica of each data object is reported.
        """
        query = _document_query(
            _DATA_OBJECT_COLUMNS,
            "r_data_main d1\nJOIN r_coll_main c USING (coll_id)",
            f"JOIN {uuid_table} ou on d1.data_id = ou.object_id",
            perms_table,
            meta_table,
            (
                f"c.coll_name LIKE '/{folder_base}/%'",
                "d1.data_repl_num = ("
                "SELECT min(d2.data_repl_num) FROM r_data_main d2 "
                "WHERE d2.data_id = d1.data_id)",
            ),
        )
        return self._query(query)

    def get_collections(
        self, uuid_table: str, perms_table: str, meta_table: str, folder_base: str
    ) -> Iterator[tuple[Any, ...]]:
        """Rows of (id, JSON document) for plain collections, using prepared temporary tables."""
        query = _document_query(
            _COLLECTION_COLUMNS,
            "r_coll_main c",
            f"JOIN {uuid_table} ou on coll_id = ou.object_id",
            perms_table,
            meta_table,
            (f"coll_name LIKE '/{folder_base}/%'", "coll_type = ''"),
        )
        return self._query(query)


class ICATConnection:
    """A connection to the data store catalog."""

    def __init__(self, connection: Any) -> None:
        self.connection = connection

    def begin_tx(self) -> ICATTx:
        tx = ICATTx(self.connection)
        log.info("Started ICAT transaction")
        return tx


def setup_icat(connection: Any) -> ICATConnection:
    """Wrap an open DB-API connection after checking that it answers."""
    log.info("Connected to the database")
    _ping(connection)
    log.info("Successfully pinged the database")
    return ICATConnection(connection)