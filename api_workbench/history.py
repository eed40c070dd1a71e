"""History - Recording, querying and aggregating executed requests.

Filtering is built as an explicit list of predicate closures, one per set
filter field, combined with AND by the repository. Status filtering is
bucketed into bands by default so it agrees with the stats success/error
split:

    status < 300         -> 2xx band   [200, 300)
    300 <= status < 400  -> 3xx band   [300, 400)
    status >= 400        -> error band [400, inf)

Stats count [200, 400) as success and >= 400 as error.
"""

from __future__ import annotations

import base64
import json
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from api_workbench.errors import EntityNotFoundError
from api_workbench.models import (
    ExecutionResponse,
    HistoryDetail,
    HistoryFilter,
    HistoryRecord,
    HistoryStats,
    Page,
    PageRequest,
    PreparedRequest,
    StatusMatch,
    utcnow,
)

logger = logging.getLogger(__name__)

Predicate = Callable[[HistoryRecord], bool]

SUCCESS_BAND = (200, 400)
ERROR_FLOOR = 400


# =============================================================================
# Record construction
# =============================================================================


def record_from_execution(
    request: PreparedRequest,
    response: ExecutionResponse,
) -> HistoryRecord:
    """Snapshot one execution (success or failure) as a HistoryRecord.

    Credentials added by auth are masked in the url, header and query
    columns, matching the masked auth_config.
    """
    body = request.body
    if isinstance(body, bytes):
        body = base64.b64encode(body).decode("ascii")

    return HistoryRecord(
        url=request.masked_url or request.url,
        method=request.method,
        request_headers=json.dumps([list(pair) for pair in request.masked_headers()]),
        query_params=json.dumps([list(pair) for pair in request.masked_query_params()]),
        request_body=body,
        body_type=request.body_type.value,
        auth_type=request.auth_type.value,
        auth_config=json.dumps(request.auth_config),
        status_code=response.status_code,
        status_text=response.status_text,
        response_headers=json.dumps([[h.key, h.value] for h in response.headers]),
        response_body=response.body,
        response_time=response.response_time_ms,
        response_size=response.body_size,
        success=response.success,
        error_message=response.error_message,
        error_type=response.error_type.value if response.error_type else None,
        request_id=request.request_id,
        request_name=request.request_name,
        collection_id=request.collection_id,
        executed_at=response.timestamp,
    )


def parse_pairs(raw: str | None, column: str = "headers") -> list[tuple[str, str]]:
    """Parse a stored JSON pairs column.

    Accepts [[key, value], ...] and the older {key: value} form. Blank,
    empty or invalid JSON yields an empty list.
    """
    data = _load_json(raw, column)
    if isinstance(data, dict):
        return [(str(k), "" if v is None else str(v)) for k, v in data.items()]
    if isinstance(data, list):
        pairs = []
        for item in data:
            if isinstance(item, (list, tuple)) and len(item) == 2:
                pairs.append((str(item[0]), "" if item[1] is None else str(item[1])))
        return pairs
    return []


def parse_mapping(raw: str | None, column: str = "auth_config") -> dict[str, Any]:
    data = _load_json(raw, column)
    return data if isinstance(data, dict) else {}


def _load_json(raw: str | None, column: str) -> Any:
    if raw is None or not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring unparseable JSON in history column '%s'", column)
        return None


# =============================================================================
# Query engine
# =============================================================================


def status_band(status_code: int) -> tuple[int, int | None]:
    """Return the [low, high) band a status filter value selects (high None = open)."""
    if status_code < 300:
        return 200, 300
    if status_code < ERROR_FLOOR:
        return 300, ERROR_FLOOR
    return ERROR_FLOOR, None


def build_predicates(history_filter: HistoryFilter) -> list[Predicate]:
    """One predicate per set filter field. An empty filter yields no predicates."""
    predicates: list[Predicate] = []

    if history_filter.method is not None:
        method = history_filter.method
        predicates.append(lambda r: r.method == method)

    if history_filter.status_code is not None:
        if history_filter.status_match == StatusMatch.EXACT:
            exact = history_filter.status_code
            predicates.append(lambda r: r.status_code == exact)
        else:
            low, high = status_band(history_filter.status_code)
            predicates.append(
                lambda r: r.status_code is not None
                and r.status_code >= low
                and (high is None or r.status_code < high)
            )

    if history_filter.search:
        needle = history_filter.search.lower()
        predicates.append(lambda r: needle in r.url.lower())

    if history_filter.start is not None:
        start = history_filter.start
        predicates.append(lambda r: r.executed_at >= start)

    if history_filter.end is not None:
        end = history_filter.end
        predicates.append(lambda r: r.executed_at <= end)

    return predicates


def matches_all(record: HistoryRecord, predicates: Iterable[Predicate]) -> bool:
    return all(predicate(record) for predicate in predicates)


def paginate(
    records: Iterable[HistoryRecord],
    predicates: list[Predicate],
    page_request: PageRequest,
) -> Page[HistoryRecord]:
    """Filter, sort newest first, and cut one page.

    Used by repositories that hold records in memory. A page index past the
    end yields an empty page with the correct total.
    """
    matching = [r for r in records if matches_all(r, predicates)]
    matching.sort(key=lambda r: (r.executed_at, r.id or 0), reverse=True)
    start = page_request.offset
    return Page[HistoryRecord](
        items=matching[start:start + page_request.size],
        total=len(matching),
        page=page_request.page,
        size=page_request.size,
    )


# =============================================================================
# Stats aggregator
# =============================================================================


def compute_stats(records: Iterable[HistoryRecord]) -> HistoryStats:
    """Aggregate counts, mean response time and method breakdown in one pass.

    Records without a response time are left out of the mean entirely;
    records without a status count toward neither band; records without a
    method are left out of the breakdown.
    """
    total = 0
    success = 0
    errors = 0
    time_sum = 0
    time_count = 0
    methods: Counter[str] = Counter()

    for record in records:
        total += 1
        status = record.status_code
        if status is not None:
            if SUCCESS_BAND[0] <= status < SUCCESS_BAND[1]:
                success += 1
            elif status >= ERROR_FLOOR:
                errors += 1
        if record.response_time is not None:
            time_sum += record.response_time
            time_count += 1
        if record.method is not None:
            methods[record.method.value] += 1

    return HistoryStats(
        total_requests=total,
        success_count=success,
        error_count=errors,
        avg_response_time=time_sum / time_count if time_count else 0.0,
        method_breakdown=dict(methods),
    )


# =============================================================================
# Service
# =============================================================================


class HistoryService:
    """History operations over a HistoryRepository.

    Usage:
        service = HistoryService(history_repo, request_repo, collection_repo)
        page = service.query(HistoryFilter(status_code=400), PageRequest(page=0, size=20))
        stats = service.get_stats()
    """

    def __init__(
        self,
        repository,
        request_repository=None,
        collection_repository=None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the service.

        Args:
            repository: HistoryRepository holding the records.
            request_repository: Optional request repository, for detail names.
            collection_repository: Optional collection repository, for detail names.
            clock: Returns "now"; injectable for retention tests.
        """
        self._repository = repository
        self._requests = request_repository
        self._collections = collection_repository
        self._clock = clock

    def save(self, record: HistoryRecord) -> HistoryRecord:
        return self._repository.save(record)

    def record(self, request: PreparedRequest, response: ExecutionResponse) -> HistoryRecord:
        """Build and store the record for one execution."""
        return self.save(record_from_execution(request, response))

    def query(self, history_filter: HistoryFilter | None, page_request: PageRequest) -> Page[HistoryRecord]:
        predicates = build_predicates(history_filter or HistoryFilter())
        return self._repository.find(predicates, page_request)

    def get(self, record_id: int) -> HistoryRecord:
        record = self._repository.find_by_id(record_id)
        if record is None:
            raise EntityNotFoundError("History", record_id)
        return record

    def get_by_id(self, record_id: int) -> HistoryDetail:
        """Return the record with JSON columns parsed and display names looked up."""
        record = self.get(record_id)
        request_name = record.request_name
        collection_id = record.collection_id

        if record.request_id is not None and self._requests is not None:
            definition = self._requests.find_by_id(record.request_id)
            if definition is not None:
                request_name = definition.name
                if collection_id is None:
                    collection_id = definition.collection_id

        collection_name = None
        if collection_id is not None and self._collections is not None:
            collection = self._collections.find_by_id(collection_id)
            if collection is not None:
                collection_name = collection.name

        return HistoryDetail(
            record=record,
            request_headers=parse_pairs(record.request_headers, "request_headers"),
            query_params=parse_pairs(record.query_params, "query_params"),
            auth_config=parse_mapping(record.auth_config, "auth_config"),
            response_headers=parse_pairs(record.response_headers, "response_headers"),
            request_name=request_name,
            collection_name=collection_name,
        )

    def delete_by_id(self, record_id: int) -> None:
        if not self._repository.exists(record_id):
            raise EntityNotFoundError("History", record_id)
        self._repository.delete(record_id)

    def clear_all(self) -> int:
        return self._repository.clear()

    def get_stats(self) -> HistoryStats:
        return compute_stats(self._repository.list_all())

    def delete_older_than(self, days: int) -> int:
        """Remove records executed strictly before now - days. Returns the count removed."""
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")
        cutoff = self._clock() - timedelta(days=days)
        removed = self._repository.delete_where(lambda r: r.executed_at < cutoff)
        logger.debug("Pruned %d history records older than %s", removed, cutoff.isoformat())
        return removed
