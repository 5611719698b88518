"""
Leaf Data Sources

Report leaves come from upstream systems: the credit management system
(CMS) over HTTP, static fixtures, or the general ledger itself. Fetches go
through a SnapshotCache that keeps the last good snapshot per report; when
the upstream fails, the cached snapshot is served with a StaleDataWarning
instead of an error.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union
import copy
import logging
import threading
import time

import httpx

from .audit import AuditTrail, AuditEventType
from .cells import CellRef, Workbook
from .events import EventDispatcher, EventPayload, DomainEvent
from .exceptions import StaleDataWarning
from .ledger import GeneralLedger
from . import regulatory

logger = logging.getLogger("ripoti.sources")


@dataclass
class FetchResult:
    """Snapshot returned by SnapshotCache.get"""
    report_id: str
    data: Dict[str, Any]
    origin: str  # upstream, cache, stale, empty
    fetched_at: Optional[datetime] = None
    warning: Optional[StaleDataWarning] = None

    @property
    def is_stale(self) -> bool:
        return self.warning is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'report_id': self.report_id,
            'origin': self.origin,
            'fetched_at': self.fetched_at.isoformat() if self.fetched_at else None,
            'stale': self.is_stale,
            'warning': str(self.warning) if self.warning else None
        }


class StaticReportSource:
    """Fixture-backed source keyed by report id"""

    def __init__(self, fixtures: Optional[Mapping[str, Dict[str, Any]]] = None):
        self.fixtures = dict(fixtures) if fixtures is not None else default_fixtures()

    def fetch(self, report_id: str) -> Dict[str, Any]:
        if report_id not in self.fixtures:
            raise KeyError(f"No fixture for report {report_id}")
        return copy.deepcopy(self.fixtures[report_id])


class CMSReportClient:
    """REST client for the credit management system's report feed"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(timeout=timeout, headers=headers, transport=transport)

    def fetch(self, report_id: str) -> Dict[str, Any]:
        """
        GET /reports/{report_id}

        Raises:
            httpx.HTTPError: On connection failure or non-2xx status
            ValueError: If the body is not a JSON object
        """
        start = time.time()
        response = self._client.get(f"{self.base_url}/reports/{report_id}")
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError(f"CMS returned a {type(payload).__name__} for report {report_id}")
        logger.debug(f"Fetched {report_id} from CMS in {(time.time() - start) * 1000:.0f} ms")
        return payload

    def health_check(self) -> bool:
        try:
            return self._client.get(f"{self.base_url}/health").status_code == 200
        except httpx.HTTPError:
            return False

    def close(self) -> None:
        self._client.close()


@dataclass
class _CachedSnapshot:
    data: Dict[str, Any]
    fetched_at: datetime
    loaded_at: float  # clock() reading


class SnapshotCache:
    """
    Per-report cache with TTL and last-good fallback.

    ttl_seconds maps report ids to TTLs; reports without an entry use
    default_ttl_seconds.
    """

    def __init__(
        self,
        source: Any,
        default_ttl_seconds: float = 300,
        ttl_seconds: Optional[Mapping[str, float]] = None,
        dispatcher: Optional[EventDispatcher] = None,
        audit_trail: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.source = source
        self.default_ttl_seconds = default_ttl_seconds
        self.ttl_seconds = dict(ttl_seconds or {})
        self.dispatcher = dispatcher
        self.audit_trail = audit_trail
        self.clock = clock
        self._snapshots: Dict[str, _CachedSnapshot] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def ttl_for(self, report_id: str) -> float:
        return self.ttl_seconds.get(report_id, self.default_ttl_seconds)

    def _lock_for(self, report_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(report_id, threading.Lock())

    def get(self, report_id: str, force_refresh: bool = False) -> FetchResult:
        with self._lock_for(report_id):
            cached = self._snapshots.get(report_id)
            if (not force_refresh and cached
                    and self.clock() - cached.loaded_at < self.ttl_for(report_id)):
                return FetchResult(report_id, copy.deepcopy(cached.data), "cache", cached.fetched_at)

            try:
                data = self.source.fetch(report_id)
            except Exception as e:
                return self._fallback(report_id, cached, e)

            now = datetime.now(timezone.utc)
            self._snapshots[report_id] = _CachedSnapshot(data=copy.deepcopy(data), fetched_at=now,
                                                         loaded_at=self.clock())
            logger.info(f"Fetched report {report_id} from upstream")
            return FetchResult(report_id, data, "upstream", now)

    def _fallback(self, report_id: str, cached: Optional[_CachedSnapshot], error: Exception) -> FetchResult:
        if cached:
            warning = StaleDataWarning(
                f"Fetch of {report_id} failed ({error}); serving snapshot from {cached.fetched_at.isoformat()}"
            )
            result = FetchResult(report_id, copy.deepcopy(cached.data), "stale", cached.fetched_at, warning)
        else:
            warning = StaleDataWarning(f"Fetch of {report_id} failed ({error}); no snapshot available")
            result = FetchResult(report_id, {}, "empty", None, warning)

        logger.warning(str(warning))
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.STALE_DATA_SERVED,
                entity_type="report",
                entity_id=report_id,
                metadata={"error": str(error), "origin": result.origin}
            )
        if self.dispatcher:
            self.dispatcher.publish(EventPayload(
                event_type=DomainEvent.DATA_STALE,
                entity_type="report",
                entity_id=report_id,
                data=result.to_dict()
            ))
        return result

    def invalidate(self, report_id: Optional[str] = None) -> None:
        """Drop one snapshot, or all of them"""
        with self._guard:
            if report_id is None:
                self._snapshots.clear()
            else:
                self._snapshots.pop(report_id, None)


RowPublisher = Callable[[Workbook, List[Dict[str, Any]]], Any]


def _publish_sectors(workbook: Workbook, rows: List[Dict[str, Any]]) -> Any:
    return regulatory.publish_sector_classification(workbook, regulatory.sector_entries(rows))


def _publish_regions(workbook: Workbook, rows: List[Dict[str, Any]]) -> Any:
    return regulatory.publish_geographic_distribution(workbook, regulatory.region_entries(rows))


DEFAULT_ROW_PUBLISHERS: Dict[str, RowPublisher] = {
    regulatory.LOAN_PORTFOLIO: _publish_sectors,
    regulatory.GEOGRAPHIC: _publish_regions,
}


class SheetLoader:
    """
    Populates sheet leaves from cached snapshots.

    A payload is either {"cells": {cell_id: value}} written straight into
    leaves, or {"rows": [...]} handed to the sheet's row publisher (sector
    and regional rows are rolled up before they reach the sheet).
    """

    def __init__(self, cache: SnapshotCache, row_publishers: Optional[Mapping[str, RowPublisher]] = None):
        self.cache = cache
        self.row_publishers = dict(DEFAULT_ROW_PUBLISHERS)
        if row_publishers:
            self.row_publishers.update(row_publishers)

    def load(self, workbook: Workbook, sheet_id: str, force_refresh: bool = False) -> FetchResult:
        result = self.cache.get(sheet_id, force_refresh=force_refresh)
        data = result.data
        if 'cells' in data:
            workbook.set_leaves(sheet_id, data['cells'])
        if 'rows' in data:
            publisher = self.row_publishers.get(sheet_id)
            if publisher is None:
                raise ValueError(f"No row publisher registered for sheet {sheet_id}")
            publisher(workbook, data['rows'])
        return result

    def load_all(self, workbook: Workbook, force_refresh: bool = False) -> Dict[str, FetchResult]:
        """Load every defined sheet in definition order"""
        return {
            sheet_id: self.load(workbook, sheet_id, force_refresh)
            for sheet_id in workbook.list_sheets()
        }


def default_fixtures() -> Dict[str, Dict[str, Any]]:
    """Sample quarter for all four returns"""
    return {
        regulatory.BALANCE_SHEET: {'cells': dict(regulatory.SAMPLE_BALANCE_SHEET)},
        regulatory.LOAN_PORTFOLIO: {'rows': copy.deepcopy(regulatory.SAMPLE_SECTORS)},
        regulatory.AGENT_BANKING: {'cells': dict(regulatory.SAMPLE_AGENT_BANKING)},
        regulatory.GEOGRAPHIC: {'rows': copy.deepcopy(regulatory.SAMPLE_REGIONS)},
    }


# Balance sheet leaves derived from ledger accounts
DEFAULT_LEDGER_BINDINGS: Dict[str, List[str]] = {
    f"{regulatory.BALANCE_SHEET}.C2": ["1001"],
    f"{regulatory.BALANCE_SHEET}.C4": ["1002"],
    f"{regulatory.BALANCE_SHEET}.C18": ["1017"],
    f"{regulatory.BALANCE_SHEET}.C21": ["1018"],
    f"{regulatory.BALANCE_SHEET}.C22": ["1022"],
    f"{regulatory.BALANCE_SHEET}.C46": ["2001"],
    f"{regulatory.BALANCE_SHEET}.C52": ["3001"],
}


class LedgerBalanceFeed:
    """
    Keeps leaf cells equal to the sum of bound accounts' balances, adjusted
    to each account's normal side, by listening for JOURNAL_ENTRY_POSTED.
    """

    def __init__(self, ledger: GeneralLedger, workbook: Workbook, dispatcher: EventDispatcher):
        self.ledger = ledger
        self.workbook = workbook
        self.dispatcher = dispatcher
        self._bindings: Dict[CellRef, List[str]] = {}
        self._lock = threading.Lock()
        dispatcher.subscribe(DomainEvent.JOURNAL_ENTRY_POSTED, self._on_entry_posted)

    def bind(self, ref: Union[str, CellRef], account_codes: Iterable[str]) -> CellRef:
        """
        Bind a leaf cell to one or more accounts

        Raises:
            UnknownCellReferenceError: If the cell is not defined
            UnknownAccountError: If an account is not in the chart
            ValueError: If the cell is computed
        """
        cell_ref = self.workbook.resolve(ref)
        if not self.workbook.is_leaf(cell_ref):
            raise ValueError(f"Cell {cell_ref} is computed and cannot be fed from the ledger")
        codes = list(account_codes)
        for code in codes:
            self.ledger.chart.require(code)
        with self._lock:
            self._bindings[cell_ref] = codes
        return cell_ref

    def bind_all(self, bindings: Mapping[str, Iterable[str]]) -> None:
        for ref, codes in bindings.items():
            self.bind(ref, codes)

    def bindings(self) -> Dict[CellRef, List[str]]:
        with self._lock:
            return {ref: list(codes) for ref, codes in self._bindings.items()}

    def sync(self, refs: Optional[Iterable[CellRef]] = None) -> None:
        """Push current balances into the bound cells"""
        bindings = self.bindings()
        targets = list(bindings) if refs is None else [ref for ref in refs if ref in bindings]
        by_sheet: Dict[str, Dict[str, Decimal]] = {}
        for ref in targets:
            total = sum(
                (self.ledger.get_account_balance(code).amount for code in bindings[ref]),
                Decimal('0')
            )
            by_sheet.setdefault(ref.sheet_id, {})[ref.cell_id] = total
        for sheet_id, values in by_sheet.items():
            self.workbook.set_leaves(sheet_id, values)

    def _on_entry_posted(self, event: EventPayload) -> None:
        touched = set(event.data.get('balances', {}))
        refs = [ref for ref, codes in self.bindings().items() if touched.intersection(codes)]
        if refs:
            self.sync(refs)

    def close(self) -> None:
        self.dispatcher.unsubscribe(DomainEvent.JOURNAL_ENTRY_POSTED, self._on_entry_posted)
