"""Elasticsearch connection, searching and bulk indexing over HTTP."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import requests


def _compact(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


@dataclass(frozen=True)
class BulkIndexRequest:
    """Index (create or replace) one document in a bulk request."""

    index: str
    id: str
    doc: Any

    def lines(self) -> list[str]:
        action = _compact({"index": {"_index": self.index, "_id": self.id}})
        body = self.doc if isinstance(self.doc, str) else _compact(self.doc)
        return [action, body]


@dataclass(frozen=True)
class BulkDeleteRequest:
    """Delete one document in a bulk request."""

    index: str
    id: str

    def lines(self) -> list[str]:
        return [_compact({"delete": {"_index": self.index, "_id": self.id}})]


class BulkIndexer:
    """Collects bulk requests and sends them once bulk_size are pending."""

    def __init__(self, es: ESConnection, bulk_size: int) -> None:
        if bulk_size < 1:
            raise ValueError("bulk_size must be at least 1")
        self._es = es
        self._bulk_size = bulk_size
        self._pending: list[BulkIndexRequest | BulkDeleteRequest] = []

    def __len__(self) -> int:
        return len(self._pending)

    def add(self, request: BulkIndexRequest | BulkDeleteRequest) -> None:
        self._pending.append(request)
        if len(self._pending) >= self._bulk_size:
            self.flush()

    def can_flush(self) -> bool:
        return bool(self._pending)

    def flush(self) -> None:
        """Send every pending request; does nothing when none are pending."""
        if not self._pending:
            return
        body = "".join(
            line + "\n" for request in self._pending for line in request.lines()
        )
        self._pending = []
        self._es._bulk(body)

    def __enter__(self) -> BulkIndexer:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.flush()


class ESConnection:
    """An Elasticsearch cluster together with the index to work on."""

    def __init__(self, base: str, index: str, session: requests.Session | None = None) -> None:
        self.base = base.rstrip("/")
        self.index = index
        self._session = session if session is not None else requests.Session()

    def wait_for_yellow_status(self, timeout: str) -> None:
        """Wait for yellow or better cluster health; raises TimeoutError if not reached."""
        response = self._session.get(
            f"{self.base}/_cluster/health",
            params={"wait_for_status": "yellow", "timeout": timeout},
        )
        try:
            body = response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict) and body.get("timed_out"):
            raise TimeoutError(f"cluster health request timed out after {timeout}")
        response.raise_for_status()

    def search(
        self, query: dict[str, Any], sort: str | None = None, size: int | None = None
    ) -> tuple[int, list[dict[str, Any]]]:
        """Search the index, sorting ascending on a field; returns (total hits, raw hits)."""
        body: dict[str, Any] = {"query": query}
        if sort is not None:
            body["sort"] = [{sort: {"order": "asc"}}]
        if size is not None:
            body["size"] = size
        response = self._session.post(f"{self.base}/{self.index}/_search", json=body)
        response.raise_for_status()
        hits = response.json().get("hits") or {}
        total = hits.get("total")
        if isinstance(total, dict):
            total_hits = int(total.get("value", 0))
        elif total is None:
            total_hits = 0
        else:
            total_hits = int(total)
        return total_hits, list(hits.get("hits") or [])

    def new_bulk_indexer(self, bulk_size: int) -> BulkIndexer:
        return BulkIndexer(self, bulk_size)

    def _bulk(self, body: str) -> dict[str, Any]:
        response = self._session.post(
            f"{self.base}/_bulk",
            data=body.encode("utf-8"),
            headers={"Content-Type": "application/x-ndjson"},
        )
        response.raise_for_status()
        return response.json()

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> ESConnection:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def setup_es(base: str, user: str, password: str, index: str) -> ESConnection:
    """Connect to a cluster and wait for it to become usable."""
    session = requests.Session()
    session.auth = (user, password)
    session.verify = False
    connection = ESConnection(base, index, session)
    wait = "10s"
    try:
        connection.wait_for_yellow_status(wait)
    except (requests.RequestException, TimeoutError) as err:
        connection.close()
        raise ConnectionError(
            f"Cluster did not report yellow or better status within {wait}: {err}"
        ) from err
    return connection