"""PostgreSQL-backed document store: one JSONB row per item plus indexed columns."""

from typing import Any, Dict, List, Optional

import psycopg
from psycopg.types.json import Jsonb
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import ConflictError, InvalidRequestError, StoreError, TransientStoreError
from .logging_config import get_audit_logger
from .store import DocumentStore, KEY_FIELDS

logger = get_audit_logger("pg_store")

TABLE_NAME = "lotg_item"

# item attribute -> indexed column
INDEXED_COLUMNS = {
    "Type": "item_type",
    "status": "status",
    "law": "law",
    "hash": "hash",
    "jobId": "job_id",
    "createdAt": "created_at",
}

_retry_operational = retry(
    retry=retry_if_exception_type(psycopg.OperationalError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    reraise=True,
)


def _row_values(item: Dict[str, Any]) -> Dict[str, Any]:
    values = {column: item.get(attr) for attr, column in INDEXED_COLUMNS.items()}
    values.update({"pk": item["PK"], "sk": item["SK"], "data": Jsonb(item)})
    return values


_UPSERT_SQL = f"""
    INSERT INTO {TABLE_NAME} (pk, sk, item_type, status, law, hash, job_id, created_at, data)
    VALUES (%(pk)s, %(sk)s, %(item_type)s, %(status)s, %(law)s, %(hash)s, %(job_id)s, %(created_at)s, %(data)s)
    ON CONFLICT (pk, sk) DO UPDATE SET
        item_type = EXCLUDED.item_type,
        status = EXCLUDED.status,
        law = EXCLUDED.law,
        hash = EXCLUDED.hash,
        job_id = EXCLUDED.job_id,
        created_at = EXCLUDED.created_at,
        data = EXCLUDED.data
"""

_INSERT_NEW_SQL = f"""
    INSERT INTO {TABLE_NAME} (pk, sk, item_type, status, law, hash, job_id, created_at, data)
    VALUES (%(pk)s, %(sk)s, %(item_type)s, %(status)s, %(law)s, %(hash)s, %(job_id)s, %(created_at)s, %(data)s)
    ON CONFLICT (pk, sk) DO NOTHING
    RETURNING pk
"""

_UPDATE_SQL = f"""
    UPDATE {TABLE_NAME} SET
        data = data || %(patch)s,
        status = (data || %(patch)s)->>'status',
        law = (data || %(patch)s)->>'law',
        hash = (data || %(patch)s)->>'hash'
    WHERE pk = %(pk)s AND sk = %(sk)s
    RETURNING data
"""


class PostgresDocumentStore(DocumentStore):
    """
    Document store on a single PostgreSQL table.

    Partial updates merge into the JSONB document at field level, so two
    writers touching different attributes do not clobber each other.
    """

    def __init__(self, db_url: str, connect_timeout: int = 10):
        self.db_url = db_url
        self.connect_timeout = connect_timeout

    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(self.db_url, connect_timeout=self.connect_timeout)

    @_retry_operational
    def _run(self, sql: str, params: Dict[str, Any], fetch: str = "none"):
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                if fetch == "one":
                    row = cur.fetchone()
                elif fetch == "all":
                    row = cur.fetchall()
                else:
                    row = None
            conn.commit()
        return row

    def _execute(self, sql: str, params: Dict[str, Any], fetch: str = "none"):
        try:
            return self._run(sql, params, fetch)
        except psycopg.OperationalError as e:
            raise TransientStoreError(f"Database unavailable: {e}") from e
        except psycopg.Error as e:
            raise StoreError(f"Database error: {e}") from e

    def get(self, pk: str, sk: str = "METADATA") -> Optional[Dict[str, Any]]:
        row = self._execute(
            f"SELECT data FROM {TABLE_NAME} WHERE pk = %(pk)s AND sk = %(sk)s",
            {"pk": pk, "sk": sk},
            fetch="one",
        )
        return row[0] if row else None

    def put(self, item: Dict[str, Any]) -> None:
        self._execute(_UPSERT_SQL, _row_values(item))

    def put_new(self, item: Dict[str, Any]) -> None:
        row = self._execute(_INSERT_NEW_SQL, _row_values(item), fetch="one")
        if row is None:
            raise ConflictError(f"Item already exists: {item['PK']}")

    def update(self, pk: str, sk: str, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        patch = {k: v for k, v in attrs.items() if k not in KEY_FIELDS}
        if not patch:
            return self.get(pk, sk)
        row = self._execute(
            _UPDATE_SQL,
            {"pk": pk, "sk": sk, "patch": Jsonb(patch)},
            fetch="one",
        )
        return row[0] if row else None

    def query(
        self,
        index: str,
        value: Any,
        sort_value: Any = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        partition_attr, sort_attr = self._check_index(index)
        clauses = [f"{INDEXED_COLUMNS[partition_attr]} = %(value)s"]
        params: Dict[str, Any] = {"value": value}

        if sort_attr is not None and sort_value is not None:
            clauses.append(f"{INDEXED_COLUMNS[sort_attr]} = %(sort_value)s")
            params["sort_value"] = sort_value

        for n, (attr, expected) in enumerate((filters or {}).items()):
            if attr in INDEXED_COLUMNS:
                clauses.append(f"{INDEXED_COLUMNS[attr]} = %(f{n})s")
            else:
                clauses.append(f"data->>'{self._safe_attr(attr)}' = %(f{n})s")
            params[f"f{n}"] = expected

        direction = "DESC" if newest_first else "ASC"
        sql = (
            f"SELECT data FROM {TABLE_NAME} WHERE {' AND '.join(clauses)} "
            f"ORDER BY created_at {direction}, pk {direction}"
        )
        if limit is not None:
            sql += " LIMIT %(limit)s"
            params["limit"] = limit

        rows = self._execute(sql, params, fetch="all")
        return [row[0] for row in rows]

    def _write_chunk(self, items: List[Dict[str, Any]]) -> None:
        try:
            self._write_chunk_once(items)
        except psycopg.OperationalError as e:
            raise TransientStoreError(f"Batch write failed: {e}") from e
        except psycopg.Error as e:
            raise StoreError(f"Batch write rejected: {e}") from e

    @_retry_operational
    def _write_chunk_once(self, items: List[Dict[str, Any]]) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.executemany(_UPSERT_SQL, [_row_values(item) for item in items])
            conn.commit()

    @staticmethod
    def _safe_attr(attr: str) -> str:
        if not attr.isidentifier():
            raise InvalidRequestError(f"Invalid filter attribute: {attr}")
        return attr
