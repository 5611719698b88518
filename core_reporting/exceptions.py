"""
Error Taxonomy

Schema-time errors reject a sheet definition entirely; entry-time errors
reject a single journal entry with nothing written. Validation mismatches
and stale data are results, not exceptions.
"""

from decimal import Decimal
from typing import List, Optional


class ReportingError(ValueError):
    """Base class for all errors raised by the reporting engine"""


class SheetDefinitionError(ReportingError):
    """Raised when a sheet schema cannot be registered"""


class CycleError(SheetDefinitionError):
    """Formula dependency graph contains a cycle"""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Formula dependency cycle detected: {' -> '.join(cycle)}")


class UnknownCellReferenceError(SheetDefinitionError):
    """A formula, rule or caller referenced a cell that was never defined"""

    def __init__(self, ref: str, context: Optional[str] = None):
        self.ref = ref
        message = f"Unknown cell reference: {ref}"
        if context:
            message = f"{message} ({context})"
        super().__init__(message)


class LedgerError(ReportingError):
    """Base class for journal entry rejections"""


class ImbalancedEntryError(LedgerError):
    """Total debits differ from total credits"""

    def __init__(self, total_debits: Decimal, total_credits: Decimal, currency_code: str = ""):
        self.total_debits = total_debits
        self.total_credits = total_credits
        prefix = f"{currency_code} " if currency_code else ""
        super().__init__(
            f"Journal entry not balanced: debits={prefix}{total_debits:,.2f}, "
            f"credits={prefix}{total_credits:,.2f}, "
            f"difference={prefix}{total_debits - total_credits:,.2f}"
        )


class UnknownAccountError(LedgerError):
    """Account code is not in the chart of accounts"""

    def __init__(self, account_code: str):
        self.account_code = account_code
        super().__init__(f"Account {account_code} not found in chart of accounts")


class InactiveAccountError(LedgerError):
    """Account has been deactivated and accepts no new postings"""

    def __init__(self, account_code: str):
        self.account_code = account_code
        super().__init__(f"Account {account_code} is inactive")


class BackdatedEntryError(LedgerError):
    """Entry date precedes the latest posting on an affected account"""


class EntryStateError(LedgerError):
    """Operation not allowed in the entry's current state"""


class EntryNotFoundError(LedgerError):
    """No journal entry with the given id"""

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Journal entry {entry_id} not found")


class StaleDataWarning(UserWarning):
    """
    Upstream fetch failed and a cached snapshot was served instead.
    Attached to fetch results; never raised by the engine.
    """
