"""
Double-Entry Ledger Posting Engine

Every journal entry must balance exactly (total debits == total credits,
Decimal arithmetic, no tolerance). A posted entry is numbered PREFIX-NNN,
written together with one ledger record per line in a single atomic unit,
and never mutated afterwards; corrections are reversing entries.

Each ledger record carries the account's running balance:
    running_balance_n = running_balance_{n-1} + debit_n - credit_n
Postings to the same account are serialized by per-account locks taken in
sorted order, and back-dated postings are rejected, so running balances are
always in (date, insertion order).
"""

from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple, Union
import logging
import re
import threading
import uuid

from .audit import AuditTrail, AuditEventType
from .chart_of_accounts import ChartOfAccounts, NormalBalance
from .config import get_config
from .currency import Currency, Money, to_decimal, validate_decimal_precision, format_amount
from .events import EventDispatcher, EventPayload, DomainEvent
from .exceptions import (
    BackdatedEntryError, EntryNotFoundError, EntryStateError, ImbalancedEntryError, LedgerError
)
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("ripoti.ledger")

ZERO = Decimal('0')
_PREFIX_RE = re.compile(r"[A-Z][A-Z0-9]*")


class EntryStatus(Enum):
    """Journal entry states; posted is terminal"""
    DRAFT = "draft"
    POSTED = "posted"


def to_date(value: Union[date, datetime, str]) -> date:
    """Coerce an entry date given as date, datetime or ISO string"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    raise ValueError(f"Invalid entry date: {value!r}")


@dataclass
class JournalLine:
    """
    One debit/credit line. By convention exactly one side is non-zero;
    both may be present as long as the entry balances.
    """
    account_code: str
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    description: str = ""

    def __post_init__(self):
        self.debit = to_decimal(self.debit)
        self.credit = to_decimal(self.credit)
        if not self.account_code:
            raise ValueError("Journal line must name an account")
        if self.debit < 0 or self.credit < 0:
            raise ValueError(f"Journal line amounts must not be negative (account {self.account_code})")
        if self.debit == 0 and self.credit == 0:
            raise ValueError(f"Journal line for account {self.account_code} has no amount")

    @property
    def net(self) -> Decimal:
        return self.debit - self.credit

    def swapped(self, description: Optional[str] = None) -> 'JournalLine':
        """Counter-line used by reversals"""
        return JournalLine(
            account_code=self.account_code,
            debit=self.credit,
            credit=self.debit,
            description=self.description if description is None else description
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            'account_code': self.account_code,
            'debit': str(self.debit),
            'credit': str(self.credit),
            'description': self.description
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JournalLine':
        return cls(
            account_code=data['account_code'],
            debit=Decimal(data.get('debit', '0')),
            credit=Decimal(data.get('credit', '0')),
            description=data.get('description', "")
        )


@dataclass
class JournalEntry(StorageRecord):
    """Balanced set of journal lines; immutable once posted"""
    entry_date: date
    reference: str
    description: str
    lines: List[JournalLine]
    status: EntryStatus
    prefix: str = "JE"
    entry_number: Optional[str] = None
    currency: str = "TZS"
    posted_at: Optional[datetime] = None
    reverses: Optional[str] = None  # id of the entry this one reverses
    created_by: Optional[str] = None

    @property
    def total_debit(self) -> Decimal:
        return sum((line.debit for line in self.lines), ZERO)

    @property
    def total_credit(self) -> Decimal:
        return sum((line.credit for line in self.lines), ZERO)

    @property
    def is_balanced(self) -> bool:
        return self.total_debit == self.total_credit

    def affected_accounts(self) -> Set[str]:
        return {line.account_code for line in self.lines}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'entry_date': self.entry_date.isoformat(),
            'reference': self.reference,
            'description': self.description,
            'lines': [line.to_dict() for line in self.lines],
            'status': self.status.value,
            'prefix': self.prefix,
            'entry_number': self.entry_number,
            'currency': self.currency,
            'posted_at': self.posted_at.isoformat() if self.posted_at else None,
            'reverses': self.reverses,
            'created_by': self.created_by,
            'total_debit': str(self.total_debit),
            'total_credit': str(self.total_credit)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JournalEntry':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            entry_date=date.fromisoformat(data['entry_date']),
            reference=data['reference'],
            description=data['description'],
            lines=[JournalLine.from_dict(line) for line in data['lines']],
            status=EntryStatus(data['status']),
            prefix=data.get('prefix', "JE"),
            entry_number=data.get('entry_number'),
            currency=data.get('currency', "TZS"),
            posted_at=datetime.fromisoformat(data['posted_at']) if data.get('posted_at') else None,
            reverses=data.get('reverses'),
            created_by=data.get('created_by')
        )


@dataclass
class LedgerRecord(StorageRecord):
    """Append-only per-account posting with the running balance after it"""
    account_code: str
    entry_date: date
    journal_entry_id: str
    entry_number: str
    debit: Decimal
    credit: Decimal
    running_balance: Decimal
    sequence: int  # 1-based position in the account's ledger
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['entry_date'] = self.entry_date.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerRecord':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_code=data['account_code'],
            entry_date=date.fromisoformat(data['entry_date']),
            journal_entry_id=data['journal_entry_id'],
            entry_number=data['entry_number'],
            debit=Decimal(data['debit']),
            credit=Decimal(data['credit']),
            running_balance=Decimal(data['running_balance']),
            sequence=data['sequence'],
            description=data.get('description', "")
        )


@dataclass
class _AccountHead:
    entry_date: date
    running_balance: Decimal
    sequence: int


@dataclass
class TrialBalanceRow:
    account_code: str
    account_name: str
    debit: Decimal
    credit: Decimal


@dataclass
class TrialBalance:
    as_of: Optional[date]
    rows: List[TrialBalanceRow] = field(default_factory=list)

    @property
    def total_debits(self) -> Decimal:
        return sum((row.debit for row in self.rows), ZERO)

    @property
    def total_credits(self) -> Decimal:
        return sum((row.credit for row in self.rows), ZERO)

    @property
    def is_balanced(self) -> bool:
        return self.total_debits == self.total_credits

    def to_dict(self) -> Dict[str, Any]:
        return {
            'as_of': self.as_of.isoformat() if self.as_of else None,
            'rows': [
                {'account_code': r.account_code, 'account_name': r.account_name,
                 'debit': str(r.debit), 'credit': str(r.credit)}
                for r in self.rows
            ],
            'total_debits': str(self.total_debits),
            'total_credits': str(self.total_credits),
            'is_balanced': self.is_balanced
        }


class GeneralLedger:
    """
    Posting engine over an append-only store.

    Tables: journal_entries (posted, append-only), journal_drafts,
    ledger_records (append-only) and entry_sequences (last number per prefix).
    """

    def __init__(
        self,
        storage: StorageInterface,
        chart: ChartOfAccounts,
        audit_trail: Optional[AuditTrail] = None,
        dispatcher: Optional[EventDispatcher] = None,
        currency: Currency = Currency.TZS,
        number_width: Optional[int] = None
    ):
        self.storage = storage
        self.chart = chart
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher
        self.currency = currency
        self.number_width = number_width or get_config().entry_number_width

        self.entries_table = "journal_entries"
        self.drafts_table = "journal_drafts"
        self.records_table = "ledger_records"
        self.sequences_table = "entry_sequences"

        self._heads: Dict[str, Optional[_AccountHead]] = {}
        self._account_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._commit_lock = threading.Lock()
        self._state_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    def post_entry(
        self,
        entry_date: Union[date, datetime, str],
        reference: str,
        description: str,
        lines: Sequence[JournalLine],
        prefix: str = "JE",
        created_by: Optional[str] = None
    ) -> JournalEntry:
        """
        Validate and post a journal entry.

        Returns:
            The posted JournalEntry with its entry number

        Raises:
            ImbalancedEntryError: If total debits differ from total credits
            UnknownAccountError: If a line names an account not in the chart
            InactiveAccountError: If a line names a deactivated account
            BackdatedEntryError: If the date precedes an affected account's latest posting
        """
        entry = self._build_entry(entry_date, reference, description, lines, prefix, created_by)
        return self._post(entry)

    def create_draft(
        self,
        entry_date: Union[date, datetime, str],
        reference: str,
        description: str,
        lines: Sequence[JournalLine],
        prefix: str = "JE",
        created_by: Optional[str] = None
    ) -> JournalEntry:
        """Store an unnumbered draft; balance is checked when it is posted"""
        entry = self._build_entry(entry_date, reference, description, lines, prefix, created_by)
        self.storage.append(self.drafts_table, entry.id, entry.to_dict())

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.JOURNAL_ENTRY_DRAFTED,
                entity_type="journal_entry",
                entity_id=entry.id,
                metadata={"reference": reference, "line_count": len(entry.lines)},
                user_id=created_by
            )
        return entry

    def post_draft(self, draft_id: str) -> JournalEntry:
        """Post a stored draft under the same id; the draft record is marked posted"""
        with self._state_lock:
            data = self.storage.load(self.drafts_table, draft_id)
            if data is None:
                raise EntryNotFoundError(draft_id)
            draft = JournalEntry.from_dict(data)
            if draft.status != EntryStatus.DRAFT:
                raise EntryStateError(f"Cannot post journal entry in {draft.status.value} state")

            posted = self._post(draft)
            consumed = replace(draft, status=EntryStatus.POSTED, entry_number=posted.entry_number,
                               posted_at=posted.posted_at, updated_at=posted.posted_at)
            self.storage.save(self.drafts_table, draft.id, consumed.to_dict())
        return posted

    def reverse_entry(
        self,
        entry_id: str,
        reason: str,
        reversal_date: Optional[Union[date, datetime, str]] = None,
        created_by: Optional[str] = None
    ) -> JournalEntry:
        """
        Post a reversing entry (RV prefix, debits and credits swapped).
        The original entry is left untouched and can only be reversed once.
        """
        with self._state_lock:
            original = self.get_entry(entry_id)
            if original is None or original.status != EntryStatus.POSTED:
                raise EntryNotFoundError(entry_id)
            if original.reverses:
                raise EntryStateError(f"Entry {original.entry_number} is a reversal and cannot be reversed")
            existing = self.find_reversal(entry_id)
            if existing:
                raise EntryStateError(
                    f"Entry {original.entry_number} was already reversed by {existing.entry_number}"
                )

            entry = self._build_entry(
                entry_date=reversal_date or date.today(),
                reference=f"REV-{original.reference}",
                description=f"REVERSAL: {reason}",
                lines=[line.swapped(f"REVERSAL: {line.description}") for line in original.lines],
                prefix="RV",
                created_by=created_by
            )
            entry.reverses = original.id
            reversal = self._post(entry)

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.JOURNAL_ENTRY_REVERSED,
                entity_type="journal_entry",
                entity_id=original.id,
                metadata={
                    "original_number": original.entry_number,
                    "reversal_number": reversal.entry_number,
                    "reason": reason
                },
                user_id=created_by
            )
        self._publish(DomainEvent.JOURNAL_ENTRY_REVERSED, original, {
            "reversal_id": reversal.id,
            "reversal_number": reversal.entry_number,
            "reason": reason
        })
        return reversal

    def _build_entry(self, entry_date, reference, description, lines, prefix, created_by) -> JournalEntry:
        if not _PREFIX_RE.fullmatch(prefix or ""):
            raise ValueError(f"Invalid entry prefix: {prefix!r}")
        lines = list(lines)
        if not lines:
            raise ValueError("Journal entry must have at least one line")
        now = datetime.now(timezone.utc)
        return JournalEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            entry_date=to_date(entry_date),
            reference=reference,
            description=description,
            lines=lines,
            status=EntryStatus.DRAFT,
            prefix=prefix,
            currency=self.currency.code,
            created_by=created_by
        )

    def _validate(self, entry: JournalEntry) -> None:
        for line in entry.lines:
            self.chart.require(line.account_code, for_posting=True)
            for amount in (line.debit, line.credit):
                if validate_decimal_precision(amount, self.currency) != amount:
                    raise LedgerError(
                        f"Amount {amount} on account {line.account_code} exceeds "
                        f"{self.currency.code} precision"
                    )
        if not entry.is_balanced:
            raise ImbalancedEntryError(entry.total_debit, entry.total_credit, self.currency.code)

    def _post(self, entry: JournalEntry) -> JournalEntry:
        try:
            self._validate(entry)
            posted, balances = self._commit(entry)
        except LedgerError as e:
            self._reject(entry, e)
            raise

        logger.info(
            f"Posted {posted.entry_number} ({posted.reference}) "
            f"{format_amount(posted.total_debit, self.currency)}"
        )
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.JOURNAL_ENTRY_POSTED,
                entity_type="journal_entry",
                entity_id=posted.id,
                metadata={
                    "entry_number": posted.entry_number,
                    "reference": posted.reference,
                    "entry_date": posted.entry_date,
                    "total": posted.total_debit,
                    "accounts": sorted(posted.affected_accounts())
                },
                user_id=posted.created_by
            )
        self._publish(DomainEvent.JOURNAL_ENTRY_POSTED, posted, {
            "entry_number": posted.entry_number,
            "reference": posted.reference,
            "prefix": posted.prefix,
            "balances": {code: str(balance) for code, balance in balances.items()}
        })
        return posted

    def _commit(self, entry: JournalEntry) -> Tuple[JournalEntry, Dict[str, Decimal]]:
        accounts = sorted(entry.affected_accounts())
        with ExitStack() as stack:
            for code in accounts:
                stack.enter_context(self._account_lock(code))

            heads = {code: self._head(code) for code in accounts}
            for code, head in heads.items():
                if head and entry.entry_date < head.entry_date:
                    raise BackdatedEntryError(
                        f"Entry dated {entry.entry_date} precedes the latest posting "
                        f"on account {code} ({head.entry_date})"
                    )

            with self._commit_lock:
                number, next_value = self._next_number(entry.prefix)
                now = datetime.now(timezone.utc)
                posted = replace(entry, status=EntryStatus.POSTED, entry_number=number,
                                 posted_at=now, updated_at=now)

                new_heads = {
                    code: _AccountHead(head.entry_date, head.running_balance, head.sequence) if head
                    else _AccountHead(entry.entry_date, ZERO, 0)
                    for code, head in heads.items()
                }
                records = []
                for index, line in enumerate(posted.lines):
                    head = new_heads[line.account_code]
                    head.running_balance = head.running_balance + line.debit - line.credit
                    head.sequence += 1
                    head.entry_date = posted.entry_date
                    records.append(LedgerRecord(
                        id=f"{posted.id}:{index}",
                        created_at=now,
                        updated_at=now,
                        account_code=line.account_code,
                        entry_date=posted.entry_date,
                        journal_entry_id=posted.id,
                        entry_number=number,
                        debit=line.debit,
                        credit=line.credit,
                        running_balance=head.running_balance,
                        sequence=head.sequence,
                        description=line.description or posted.description
                    ))

                with self.storage.atomic():
                    self.storage.append(self.entries_table, posted.id, posted.to_dict())
                    for record in records:
                        self.storage.append(self.records_table, record.id, record.to_dict())
                    self.storage.save(self.sequences_table, posted.prefix,
                                      {'prefix': posted.prefix, 'last_number': next_value})

            self._heads.update(new_heads)

        return posted, {code: head.running_balance for code, head in new_heads.items()}

    def _reject(self, entry: JournalEntry, error: LedgerError) -> None:
        logger.warning(f"Rejected journal entry {entry.reference}: {error}")
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.JOURNAL_ENTRY_REJECTED,
                entity_type="journal_entry",
                entity_id=entry.id,
                metadata={
                    "reference": entry.reference,
                    "reason": str(error),
                    "error_type": type(error).__name__
                },
                user_id=entry.created_by
            )

    def _next_number(self, prefix: str) -> Tuple[str, int]:
        data = self.storage.load(self.sequences_table, prefix)
        next_value = (data['last_number'] if data else 0) + 1
        return f"{prefix}-{next_value:0{self.number_width}d}", next_value

    def _account_lock(self, code: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._account_locks.get(code)
            if lock is None:
                lock = self._account_locks[code] = threading.Lock()
            return lock

    def _head(self, code: str) -> Optional[_AccountHead]:
        """Latest posting on an account; caller holds the account lock"""
        if code not in self._heads:
            records = self.storage.find(self.records_table, {'account_code': code})
            if records:
                last = LedgerRecord.from_dict(max(records, key=lambda r: r['sequence']))
                self._heads[code] = _AccountHead(last.entry_date, last.running_balance, last.sequence)
            else:
                self._heads[code] = None
        return self._heads[code]

    def _publish(self, event_type: DomainEvent, entry: JournalEntry, data: Dict[str, Any]) -> None:
        if self.dispatcher:
            self.dispatcher.publish(EventPayload(
                event_type=event_type,
                entity_type="journal_entry",
                entity_id=entry.id,
                data=data
            ))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_entry(self, entry_id: str) -> Optional[JournalEntry]:
        """Posted entry by id, falling back to drafts"""
        data = self.storage.load(self.entries_table, entry_id)
        if data is None:
            data = self.storage.load(self.drafts_table, entry_id)
        return JournalEntry.from_dict(data) if data else None

    def get_entry_by_number(self, entry_number: str) -> Optional[JournalEntry]:
        matches = self.storage.find(self.entries_table, {'entry_number': entry_number})
        return JournalEntry.from_dict(matches[0]) if matches else None

    def list_entries(self, reference: Optional[str] = None, prefix: Optional[str] = None) -> List[JournalEntry]:
        """Posted entries in posting order"""
        filters = {}
        if reference:
            filters['reference'] = reference
        if prefix:
            filters['prefix'] = prefix
        return [JournalEntry.from_dict(data) for data in self.storage.find(self.entries_table, filters)]

    def find_reversal(self, entry_id: str) -> Optional[JournalEntry]:
        matches = self.storage.find(self.entries_table, {'reverses': entry_id})
        return JournalEntry.from_dict(matches[0]) if matches else None

    def get_account_history(
        self,
        account_code: str,
        start: Optional[Union[date, str]] = None,
        end: Optional[Union[date, str]] = None
    ) -> List[LedgerRecord]:
        """Ledger records for an account in posting order, optionally date-bounded (inclusive)"""
        self.chart.require(account_code)
        records = [
            LedgerRecord.from_dict(data)
            for data in self.storage.find(self.records_table, {'account_code': account_code})
        ]
        records.sort(key=lambda r: r.sequence)
        if start:
            start = to_date(start)
            records = [r for r in records if r.entry_date >= start]
        if end:
            end = to_date(end)
            records = [r for r in records if r.entry_date <= end]
        return records

    def get_running_balance(self, account_code: str, as_of: Optional[Union[date, str]] = None) -> Decimal:
        """Running balance (debits minus credits) of the latest record at or before as_of"""
        self.chart.require(account_code)
        if as_of is None:
            with self._account_lock(account_code):
                head = self._head(account_code)
            return head.running_balance if head else ZERO

        history = self.get_account_history(account_code, end=as_of)
        return history[-1].running_balance if history else ZERO

    def get_account_balance(self, account_code: str, as_of: Optional[Union[date, str]] = None) -> Money:
        """Balance adjusted to the account's normal side"""
        account = self.chart.require(account_code)
        balance = self.get_running_balance(account_code, as_of)
        if account.normal_balance == NormalBalance.CREDIT:
            balance = -balance
        return Money(balance, self.currency)

    def trial_balance(self, as_of: Optional[Union[date, str]] = None) -> TrialBalance:
        """Every account with a non-zero balance placed in its debit or credit column"""
        result = TrialBalance(as_of=to_date(as_of) if as_of else None)
        for account in self.chart.list_accounts():
            balance = self.get_running_balance(account.code, as_of)
            if balance == 0:
                continue
            result.rows.append(TrialBalanceRow(
                account_code=account.code,
                account_name=account.name,
                debit=balance if balance > 0 else ZERO,
                credit=-balance if balance < 0 else ZERO
            ))
        if not result.is_balanced:
            logger.error(
                f"Trial balance out of balance: debits {result.total_debits}, credits {result.total_credits}"
            )
        return result
