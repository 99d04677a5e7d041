"""
External Datastore — storage behind the Database node.

A flow's Database node describes a query (table or collection, filter,
payload, ordering) and hands it to an ``ExternalDatastore``. Two
implementations:

  - RESTDatastore: forwards the query to a storage service over HTTP
  - InMemoryDatastore: per-bot tables of dict records, with a small
    ``where`` grammar: ``field op value [AND field op value ...]`` where
    op is one of ``= != > < >= <= LIKE``
"""
from __future__ import annotations

import abc
import re
import uuid
import structlog
from typing import Any, Callable, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import DatastoreConfig, get_settings
from models.schemas import DatabaseQueryConfig, DatabaseQueryResult

logger = structlog.get_logger()


class ExternalDatastore(abc.ABC):
    """Abstract base for all datastores."""

    @abc.abstractmethod
    async def execute_query(self, bot_id: str, config: DatabaseQueryConfig) -> DatabaseQueryResult:
        """Run one query on behalf of a bot. Failures are reported in the result, not raised."""
        ...

    async def close(self):
        pass


# ──────────────────────────────────────────────────────────────
#  REST
# ──────────────────────────────────────────────────────────────

class RESTDatastore(ExternalDatastore):
    """
    Datastore service reached over HTTP.
    ``POST {base_url}/bots/{bot_id}/query`` with the query as JSON,
    answering ``{success, data, count, error}``.
    """

    def __init__(self, config: DatastoreConfig = None, client: httpx.AsyncClient = None):
        self.config = config or get_settings().datastore
        self.client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout,
            )
        return self.client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10))
    async def _request(self, bot_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post(f"/bots/{bot_id}/query", json=payload)
        response.raise_for_status()
        return response.json()

    async def execute_query(self, bot_id: str, config: DatabaseQueryConfig) -> DatabaseQueryResult:
        payload = config.model_dump(by_alias=True, exclude_none=True)
        try:
            body = await self._request(bot_id, payload)
        except Exception as e:
            logger.error("datastore_query_failed", bot_id=bot_id, operation=config.operation, error=str(e))
            return DatabaseQueryResult(success=False, error=str(e))
        return DatabaseQueryResult(
            success=bool(body.get("success", False)),
            data=body.get("data"),
            count=int(body.get("count") or 0),
            error=body.get("error"),
        )

    async def close(self):
        if self.client:
            await self.client.aclose()


# ──────────────────────────────────────────────────────────────
#  In-memory
# ──────────────────────────────────────────────────────────────

_CLAUSE_RE = re.compile(
    r"^\s*([A-Za-z_][\w.]*)\s*(>=|<=|!=|=|>|<|LIKE)\s*(.+?)\s*$",
    re.IGNORECASE,
)


def _literal(raw: str) -> Any:
    raw = raw.strip()
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "'\"":
        return raw[1:-1]
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "like":
        pattern = "^" + re.escape(str(right)).replace("%", ".*").replace("_", ".") + "$"
        return left is not None and re.match(pattern, str(left), re.IGNORECASE) is not None
    if left is None:
        return op == "!="
    if isinstance(right, (int, float)) and not isinstance(left, (int, float)):
        try:
            left = float(left)
        except (TypeError, ValueError):
            return op == "!="
    elif isinstance(left, (int, float)) and isinstance(right, str):
        right = str(right)
        left = str(left)
    try:
        return {
            "=": lambda a, b: a == b,
            "!=": lambda a, b: a != b,
            ">": lambda a, b: a > b,
            "<": lambda a, b: a < b,
            ">=": lambda a, b: a >= b,
            "<=": lambda a, b: a <= b,
        }[op](left, right)
    except TypeError:
        return False


def parse_where(where: Optional[str]) -> Callable[[dict[str, Any]], bool]:
    """Compile a ``where`` string into a record predicate. Raises ValueError on bad syntax."""
    if not where or not where.strip():
        return lambda record: True
    clauses = []
    for part in re.split(r"\s+AND\s+", where.strip(), flags=re.IGNORECASE):
        match = _CLAUSE_RE.match(part)
        if not match:
            raise ValueError(f"Unsupported where clause: '{part}'")
        field_name, op, raw = match.groups()
        clauses.append((field_name, op.lower(), _literal(raw)))

    def predicate(record: dict[str, Any]) -> bool:
        return all(_compare(op, record.get(f), value) for f, op, value in clauses)

    return predicate


class InMemoryDatastore(ExternalDatastore):
    """Per-bot tables of dict records. Development and testing."""

    def __init__(self):
        self._tables: dict[tuple[str, str], list[dict[str, Any]]] = {}

    def table(self, bot_id: str, name: str) -> list[dict[str, Any]]:
        return self._tables.setdefault((bot_id, name), [])

    async def execute_query(self, bot_id: str, config: DatabaseQueryConfig) -> DatabaseQueryResult:
        name = config.table or config.collection
        if not name:
            return DatabaseQueryResult(success=False, error="Table or collection is required")
        try:
            matches = parse_where(config.where)
        except ValueError as e:
            return DatabaseQueryResult(success=False, error=str(e))

        rows = self.table(bot_id, f"{config.data_source}:{name}")

        def selected() -> list[dict[str, Any]]:
            return [r for r in rows if matches(r) and (config.key is None or r.get("key") == config.key)]

        op = config.operation.lower()
        if op == "select":
            found = selected()
            if config.order_by:
                field_name, _, direction = config.order_by.partition(" ")
                found.sort(key=lambda r: (r.get(field_name) is None, r.get(field_name)),
                           reverse=direction.strip().upper() == "DESC")
            start = config.offset or 0
            found = found[start:start + config.limit] if config.limit else found[start:]
            return DatabaseQueryResult(success=True, data=found, count=len(found))

        if op == "count":
            found = selected()
            return DatabaseQueryResult(success=True, data=len(found), count=len(found))

        if op == "insert":
            payload = config.data if isinstance(config.data, list) else [config.data]
            if not all(isinstance(item, dict) for item in payload):
                return DatabaseQueryResult(success=False, error="Insert data must be an object or a list of objects")
            inserted = []
            for item in payload:
                record = {"id": uuid.uuid4().hex[:12], **item}
                if config.key is not None:
                    record.setdefault("key", config.key)
                rows.append(record)
                inserted.append(record)
            return DatabaseQueryResult(success=True, data=inserted, count=len(inserted))

        if op == "update":
            if not isinstance(config.data, dict):
                return DatabaseQueryResult(success=False, error="Update data must be an object")
            found = selected()
            for record in found:
                record.update(config.data)
            return DatabaseQueryResult(success=True, data=found, count=len(found))

        if op == "delete":
            found = selected()
            ids = {id(r) for r in found}
            rows[:] = [r for r in rows if id(r) not in ids]
            return DatabaseQueryResult(success=True, data=found, count=len(found))

        return DatabaseQueryResult(success=False, error=f"Unsupported operation '{config.operation}'")


def create_datastore(config: DatastoreConfig = None) -> ExternalDatastore:
    """Factory: create the configured datastore."""
    config = config or get_settings().datastore
    if config.type == "rest":
        return RESTDatastore(config)
    return InMemoryDatastore()
