"""
FastAPI REST API Module

REST endpoints over the reporting engine: sheet values, leaf updates,
cross-report validation results, journal posting and reversal, account
balances and the trial balance. Runs on port 8091.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from fastapi import FastAPI, HTTPException, Depends, Request, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
import uvicorn

from . import __version__
from .audit import AuditTrail
from .cells import CellRef, Workbook
from .chart_of_accounts import default_chart
from .config import ReportingConfig, get_config, resolve_currency
from .events import EventDispatcher
from .exceptions import (
    EntryNotFoundError, LedgerError, UnknownAccountError, UnknownCellReferenceError
)
from .ledger import GeneralLedger, JournalLine
from .loan_accounting import LoanAccountingService, LoanEventHandler
from .logging_config import log_action, setup_logging
from .regulatory import define_regulatory_sheets, register_default_rules
from .sources import (
    CMSReportClient, DEFAULT_LEDGER_BINDINGS, LedgerBalanceFeed, SheetLoader,
    SnapshotCache, StaticReportSource
)
from .storage import create_storage
from .validation import CrossReportValidator
from . import regulatory

logger = logging.getLogger("ripoti.api")


# Pydantic models for API requests
class CellUpdateRequest(BaseModel):
    value: str = Field(..., description="Decimal amount as string")


class JournalLineModel(BaseModel):
    account_code: str
    debit: str = Field("0", description="Decimal amount as string")
    credit: str = Field("0", description="Decimal amount as string")
    description: str = ""

    def to_line(self) -> JournalLine:
        return JournalLine(
            account_code=self.account_code,
            debit=self.debit,
            credit=self.credit,
            description=self.description
        )


class PostJournalEntryRequest(BaseModel):
    entry_date: str  # ISO date string
    reference: str
    description: str
    lines: List[JournalLineModel]
    prefix: str = "JE"
    created_by: Optional[str] = None


class ReverseEntryRequest(BaseModel):
    reason: str
    reversal_date: Optional[str] = None
    created_by: Optional[str] = None


# Reporting System Context
class ReportingSystem:
    """Reporting engine with all components wired from configuration"""

    def __init__(self, cfg: Optional[ReportingConfig] = None, source: Any = None):
        self.config = cfg or get_config()
        self.currency = resolve_currency(self.config)

        # Initialize storage
        self.storage = create_storage(self.config.storage_backend, self.config.storage_path)

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.dispatcher = EventDispatcher()
        self.workbook = Workbook(dispatcher=self.dispatcher, audit_trail=self.audit_trail)
        define_regulatory_sheets(self.workbook)
        self.validator = CrossReportValidator(
            self.workbook, self.dispatcher, self.audit_trail,
            default_tolerance=self.config.default_tolerance, currency=self.currency
        )
        register_default_rules(self.validator)

        self.chart = default_chart(self.storage, self.audit_trail)
        self.ledger = GeneralLedger(
            self.storage, self.chart, self.audit_trail, self.dispatcher,
            currency=self.currency, number_width=self.config.entry_number_width
        )
        self.loan_accounting = LoanAccountingService(self.ledger)
        self.loan_events = LoanEventHandler(self.loan_accounting, self.dispatcher)

        # Leaf data sources
        if source is None:
            if self.config.cms_base_url:
                source = CMSReportClient(
                    self.config.cms_base_url,
                    timeout=self.config.cms_timeout,
                    api_key=self.config.cms_api_key or None
                )
            else:
                source = StaticReportSource()
        self.source = source
        self.cache = SnapshotCache(
            source,
            default_ttl_seconds=self.config.balance_sheet_cache_ttl_seconds,
            ttl_seconds={regulatory.AGENT_BANKING: self.config.agent_banking_cache_ttl_seconds},
            dispatcher=self.dispatcher,
            audit_trail=self.audit_trail
        )
        self.loader = SheetLoader(self.cache)

        self.ledger_feed = None
        if self.config.ledger_feed_enabled:
            self.ledger_feed = LedgerBalanceFeed(self.ledger, self.workbook, self.dispatcher)
            self.ledger_feed.bind_all(DEFAULT_LEDGER_BINDINGS)

    def load_reports(self, force_refresh: bool = False) -> Dict[str, Any]:
        """Populate every sheet from its source, then overlay ledger-fed leaves"""
        results = self.loader.load_all(self.workbook, force_refresh=force_refresh)
        if self.ledger_feed:
            self.ledger_feed.sync()
        return results

    def close(self) -> None:
        self.loan_events.close()
        if self.ledger_feed:
            self.ledger_feed.close()
        if isinstance(self.source, CMSReportClient):
            self.source.close()
        self.storage.close()


# Dependency to get reporting system
def get_reporting_system(request: Request) -> ReportingSystem:
    return request.app.state.system


def _not_found(e: Exception) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


def _bad_request(e: Exception) -> HTTPException:
    return HTTPException(status_code=400, detail=str(e))


def _cell_payload(system: ReportingSystem, ref: CellRef) -> Dict[str, Any]:
    definition = system.workbook.get_sheet(ref.sheet_id).definitions[ref.cell_id]
    return {
        "ref": str(ref),
        "cell_id": ref.cell_id,
        "label": definition.label,
        "is_leaf": definition.is_leaf,
        "formula": definition.formula_text() or None,
        "value": str(system.workbook.get_value(ref))
    }


def create_app(system: Optional[ReportingSystem] = None) -> FastAPI:
    """Build the API over a ReportingSystem (configured from the environment by default)"""
    if system is None:
        system = ReportingSystem()
        if system.config.load_fixtures_on_startup:
            system.load_reports()

    app = FastAPI(
        title="Ripoti Reporting API",
        description="Regulatory report sheets, cross-report validation and double-entry ledger",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system
    logger.info(f"Reporting API ready with sheets: {', '.join(system.workbook.list_sheets())}")

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    # Sheet Endpoints
    @app.get("/sheets")
    async def list_sheets(system: ReportingSystem = Depends(get_reporting_system)):
        """List defined report sheets"""
        result = []
        for sheet_id in system.workbook.list_sheets():
            sheet = system.workbook.get_sheet(sheet_id)
            result.append({
                "id": sheet.sheet_id,
                "name": sheet.name,
                "cell_count": len(sheet.definitions),
                "leaf_count": len(sheet.leaf_ids())
            })
        return {"sheets": result}

    @app.get("/sheets/{sheet_id}")
    async def get_sheet(sheet_id: str, system: ReportingSystem = Depends(get_reporting_system)):
        """All cell values of a sheet, in schema order"""
        try:
            sheet = system.workbook.get_sheet(sheet_id)
            values = system.workbook.get_values(sheet_id)
        except UnknownCellReferenceError as e:
            raise _not_found(e)

        cells = []
        for cell_id, definition in sheet.definitions.items():
            cells.append({
                "cell_id": cell_id,
                "label": definition.label,
                "is_leaf": definition.is_leaf,
                "formula": definition.formula_text() or None,
                "value": str(values[cell_id])
            })
        return {"id": sheet.sheet_id, "name": sheet.name, "cells": cells}

    @app.post("/sheets/{sheet_id}/load")
    async def load_sheet(
        sheet_id: str,
        force_refresh: bool = False,
        system: ReportingSystem = Depends(get_reporting_system)
    ):
        """Reload a sheet's leaves from its source"""
        if not system.workbook.has_sheet(sheet_id):
            raise HTTPException(status_code=404, detail=f"Sheet {sheet_id} not found")
        try:
            result = system.loader.load(system.workbook, sheet_id, force_refresh=force_refresh)
        except ValueError as e:
            raise _bad_request(e)
        return result.to_dict()

    @app.get("/sheets/{sheet_id}/cells/{cell_id}")
    async def get_cell(sheet_id: str, cell_id: str, system: ReportingSystem = Depends(get_reporting_system)):
        """Current value of one cell"""
        try:
            ref = system.workbook.resolve(cell_id, sheet_id)
        except UnknownCellReferenceError as e:
            raise _not_found(e)
        return _cell_payload(system, ref)

    @app.put("/sheets/{sheet_id}/cells/{cell_id}")
    async def set_cell(
        sheet_id: str,
        cell_id: str,
        request: CellUpdateRequest,
        system: ReportingSystem = Depends(get_reporting_system)
    ):
        """Set a leaf cell and recompute its dependents"""
        try:
            ref = system.workbook.resolve(cell_id, sheet_id)
        except UnknownCellReferenceError as e:
            raise _not_found(e)
        try:
            changed = system.workbook.set_leaves(sheet_id, {cell_id: request.value})
        except ValueError as e:
            raise _bad_request(e)

        result = _cell_payload(system, ref)
        result["changed"] = sorted(str(r) for r in changed)
        return result

    # Validation Endpoints
    @app.get("/validations")
    async def list_validations(system: ReportingSystem = Depends(get_reporting_system)):
        """Evaluate every registered cross-report rule against current values"""
        results = system.validator.evaluate_all()
        return {
            "all_passed": all(r.passed for r in results),
            "results": [r.to_dict() for r in results]
        }

    @app.get("/validations/{rule_id}")
    async def get_validation(rule_id: str, system: ReportingSystem = Depends(get_reporting_system)):
        """Evaluate one rule"""
        try:
            rule = system.validator.get_rule(rule_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Validation rule {rule_id} not found")
        result = system.validator.evaluate(rule_id)
        return {"rule": rule.to_dict(), "result": result.to_dict()}

    # Journal Entry Endpoints
    @app.post("/journal-entries", status_code=status.HTTP_201_CREATED)
    async def post_journal_entry(
        request: PostJournalEntryRequest,
        system: ReportingSystem = Depends(get_reporting_system)
    ):
        """Validate and post a balanced journal entry"""
        try:
            entry = system.ledger.post_entry(
                entry_date=request.entry_date,
                reference=request.reference,
                description=request.description,
                lines=[line.to_line() for line in request.lines],
                prefix=request.prefix,
                created_by=request.created_by
            )
        except UnknownAccountError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except ValueError as e:
            raise _bad_request(e)
        log_action(logger, "info", f"Posted {entry.entry_number} via API", action="post_entry",
                   resource=f"journal_entry:{entry.id}")
        return entry.to_dict()

    @app.get("/journal-entries/{entry_id}")
    async def get_journal_entry(entry_id: str, system: ReportingSystem = Depends(get_reporting_system)):
        """Get journal entry by id or entry number"""
        entry = system.ledger.get_entry(entry_id) or system.ledger.get_entry_by_number(entry_id)
        if not entry:
            raise HTTPException(status_code=404, detail="Journal entry not found")
        result = entry.to_dict()
        reversal = system.ledger.find_reversal(entry.id)
        result["reversed_by"] = reversal.entry_number if reversal else None
        return result

    @app.post("/journal-entries/{entry_id}/reverse", status_code=status.HTTP_201_CREATED)
    async def reverse_journal_entry(
        entry_id: str,
        request: ReverseEntryRequest,
        system: ReportingSystem = Depends(get_reporting_system)
    ):
        """Post a reversing entry"""
        try:
            reversal = system.ledger.reverse_entry(
                entry_id,
                reason=request.reason,
                reversal_date=request.reversal_date,
                created_by=request.created_by
            )
        except EntryNotFoundError as e:
            raise _not_found(e)
        except LedgerError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ValueError as e:
            raise _bad_request(e)
        log_action(logger, "info", f"Reversed {entry_id} with {reversal.entry_number} via API",
                   action="reverse_entry", resource=f"journal_entry:{entry_id}")
        return reversal.to_dict()

    # Account Endpoints
    @app.get("/accounts/{account_code}/balance")
    async def get_account_balance(
        account_code: str,
        as_of: Optional[str] = None,
        system: ReportingSystem = Depends(get_reporting_system)
    ):
        """Balance adjusted to the account's normal side"""
        try:
            balance = system.ledger.get_account_balance(account_code, as_of)
        except UnknownAccountError as e:
            raise _not_found(e)
        except ValueError as e:
            raise _bad_request(e)
        return {
            "account_code": account_code,
            "as_of": as_of,
            "balance": {"amount": str(balance.amount), "currency": balance.currency.code},
            "formatted": balance.to_string()
        }

    @app.get("/accounts/{account_code}/ledger")
    async def get_account_ledger(
        account_code: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        system: ReportingSystem = Depends(get_reporting_system)
    ):
        """Ledger records with running balances"""
        try:
            records = system.ledger.get_account_history(account_code, start_date, end_date)
        except UnknownAccountError as e:
            raise _not_found(e)
        except ValueError as e:
            raise _bad_request(e)
        return {"account_code": account_code, "records": [r.to_dict() for r in records]}

    @app.get("/trial-balance")
    async def get_trial_balance(
        as_of: Optional[str] = None,
        system: ReportingSystem = Depends(get_reporting_system)
    ):
        """Trial balance across all accounts"""
        try:
            return system.ledger.trial_balance(as_of).to_dict()
        except ValueError as e:
            raise _bad_request(e)

    # Audit Endpoints
    @app.get("/audit/integrity")
    async def verify_audit_integrity(system: ReportingSystem = Depends(get_reporting_system)):
        """Verify audit trail integrity"""
        return system.audit_trail.verify_integrity()

    # System Information
    @app.get("/")
    async def root():
        """Root endpoint with system information"""
        return {
            "system": "Ripoti Reporting Engine",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "sheets": "/sheets",
                "validations": "/validations",
                "journal_entries": "/journal-entries",
                "accounts": "/accounts",
                "trial_balance": "/trial-balance",
                "audit": "/audit"
            }
        }

    return app


# Run server function
def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    cfg = get_config()
    setup_logging(cfg.log_level, log_format=cfg.log_format)
    uvicorn.run(
        "core_reporting.api:create_app",
        factory=True,
        host=host or cfg.api_host,
        port=port or cfg.api_port,
        reload=debug,
        log_level="info"
    )
