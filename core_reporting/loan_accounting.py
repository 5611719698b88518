"""
Loan Accounting Integration

Turns loan lifecycle events into automatic journal entries:

    event                 prefix  debit  credit  reference
    disbursement          LD      1017   1001    LOAN-<id>
    interest accrual      IA      1018   4001    LOAN-<id>
    interest collection   IC      1001   1018    REPAY-<id>
    principal repayment   PR      1001   1017    REPAY-<id>
    loan loss provision   LP      5005   1022    PROV-<id>
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Union
import logging

from .currency import to_decimal, validate_decimal_precision
from .exceptions import BackdatedEntryError, LedgerError
from .events import EventDispatcher, EventPayload, DomainEvent
from .ledger import GeneralLedger, JournalEntry, JournalLine, to_date

logger = logging.getLogger("ripoti.loans")

CASH = "1001"
GROSS_LOANS = "1017"
ACCRUED_INTEREST = "1018"
LOAN_LOSS_ALLOWANCE = "1022"
INTEREST_INCOME = "4001"
PROVISION_EXPENSE = "5005"

REQUIRED_ACCOUNTS = [CASH, GROSS_LOANS, ACCRUED_INTEREST, INTEREST_INCOME, PROVISION_EXPENSE, LOAN_LOSS_ALLOWANCE]

DAYS_PER_YEAR = Decimal('365')

DateLike = Union[date, datetime, str]


@dataclass
class ActiveLoan:
    """Disbursed loan eligible for interest accrual"""
    loan_id: str
    client_id: str
    principal: Decimal
    interest_rate: Decimal  # annual percentage, e.g. 18 for 18%

    def __post_init__(self):
        self.principal = to_decimal(self.principal)
        self.interest_rate = to_decimal(self.interest_rate)

    def daily_interest(self, precision: Decimal = Decimal('0.01')) -> Decimal:
        """principal * rate% / 365, rounded to the currency unit"""
        raw = self.principal * self.interest_rate / Decimal('100') / DAYS_PER_YEAR
        return raw.quantize(precision, rounding=ROUND_HALF_UP)


@dataclass
class LoanAccountingSummary:
    loan_id: str
    entries: List[JournalEntry] = field(default_factory=list)

    @property
    def total_entries(self) -> int:
        return len(self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'total_entries': self.total_entries,
            'entries': [entry.to_dict() for entry in self.entries]
        }


class LoanAccountingService:
    """Posts the automatic journal entries for loan activity"""

    def __init__(self, ledger: GeneralLedger):
        self.ledger = ledger

    def _post_pair(self, prefix: str, entry_date: DateLike, reference: str, description: str,
                   line_description: str, debit_account: str, credit_account: str,
                   amount: Any) -> JournalEntry:
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValueError(f"{description}: amount must be positive, got {amount}")
        entry = self.ledger.post_entry(
            entry_date=entry_date,
            reference=reference,
            description=description,
            lines=[
                JournalLine(debit_account, debit=amount, description=line_description),
                JournalLine(credit_account, credit=amount, description=line_description),
            ],
            prefix=prefix
        )
        logger.info(f"{description}: {entry.entry_number}")
        return entry

    def process_loan_disbursement(self, loan_id: str, client_id: str, amount: Any,
                                  disbursement_date: DateLike) -> JournalEntry:
        return self._post_pair(
            "LD", disbursement_date, f"LOAN-{loan_id}",
            f"Loan disbursement to client {client_id}",
            f"Loan disbursement - Client {client_id}",
            GROSS_LOANS, CASH, amount
        )

    def process_interest_accrual(self, loan_id: str, client_id: str, amount: Any,
                                 accrual_date: DateLike) -> JournalEntry:
        return self._post_pair(
            "IA", accrual_date, f"LOAN-{loan_id}",
            f"Interest accrual for loan {loan_id}",
            f"Interest accrual - Loan {loan_id}",
            ACCRUED_INTEREST, INTEREST_INCOME, amount
        )

    def process_interest_collection(self, loan_id: str, client_id: str, amount: Any,
                                    payment_date: DateLike) -> JournalEntry:
        return self._post_pair(
            "IC", payment_date, f"REPAY-{loan_id}",
            f"Interest collection for loan {loan_id}",
            f"Interest collection - Loan {loan_id}",
            CASH, ACCRUED_INTEREST, amount
        )

    def process_principal_repayment(self, loan_id: str, client_id: str, amount: Any,
                                    payment_date: DateLike) -> JournalEntry:
        return self._post_pair(
            "PR", payment_date, f"REPAY-{loan_id}",
            f"Principal repayment for loan {loan_id}",
            f"Principal repayment - Loan {loan_id}",
            CASH, GROSS_LOANS, amount
        )

    def process_loan_loss_provision(self, loan_id: str, client_id: str, amount: Any,
                                    provision_date: DateLike) -> JournalEntry:
        return self._post_pair(
            "LP", provision_date, f"PROV-{loan_id}",
            f"Loan loss provision for loan {loan_id}",
            f"Loan loss provision - Loan {loan_id}",
            PROVISION_EXPENSE, LOAN_LOSS_ALLOWANCE, amount
        )

    def process_repayment(self, loan_id: str, client_id: str, principal_amount: Any,
                          interest_amount: Any, payment_date: DateLike) -> List[JournalEntry]:
        """
        Principal first, then interest; each part is posted only when positive.

        Both parts are checked before either is posted, so a repayment that
        cannot be booked in full leaves the ledger untouched.
        """
        principal = to_decimal(principal_amount)
        interest = to_decimal(interest_amount)
        if principal < 0 or interest < 0:
            raise ValueError(f"Repayment for loan {loan_id}: amounts must not be negative")
        parts = [(amount, accounts) for amount, accounts in (
            (principal, (CASH, GROSS_LOANS)),
            (interest, (CASH, ACCRUED_INTEREST)),
        ) if amount > 0]
        self._check_postable(parts, to_date(payment_date))

        entries = []
        if principal > 0:
            entries.append(self.process_principal_repayment(loan_id, client_id, principal, payment_date))
        if interest > 0:
            entries.append(self.process_interest_collection(loan_id, client_id, interest, payment_date))
        return entries

    def _check_postable(self, parts, entry_date: date) -> None:
        currency = self.ledger.currency
        for amount, accounts in parts:
            if validate_decimal_precision(amount, currency) != amount:
                raise LedgerError(f"Amount {amount} exceeds {currency.code} precision")
            for code in accounts:
                self.ledger.chart.require(code, for_posting=True)
                later = [r for r in self.ledger.get_account_history(code, start=entry_date)
                         if r.entry_date > entry_date]
                if later:
                    raise BackdatedEntryError(
                        f"Entry dated {entry_date} precedes the latest posting "
                        f"on account {code} ({later[-1].entry_date})"
                    )

    def accrue_daily_interest(self, loans: Iterable[ActiveLoan], accrual_date: DateLike) -> List[JournalEntry]:
        """
        Post one day's interest for each loan. A failing loan is logged and
        skipped so the rest of the batch still accrues.
        """
        precision = self.ledger.currency.minor_unit
        posted = []
        for loan in loans:
            amount = loan.daily_interest(precision)
            if amount <= 0:
                continue
            try:
                posted.append(self.process_interest_accrual(loan.loan_id, loan.client_id, amount, accrual_date))
            except ValueError as e:
                logger.error(f"Interest accrual failed for loan {loan.loan_id}: {e}")
        logger.info(f"Daily interest accrual for {accrual_date}: {len(posted)} entries posted")
        return posted

    def loan_accounting_summary(self, loan_id: str) -> LoanAccountingSummary:
        """All entries posted for a loan, newest entry date first"""
        entries = []
        for reference in (f"LOAN-{loan_id}", f"REPAY-{loan_id}", f"PROV-{loan_id}"):
            entries.extend(self.ledger.list_entries(reference=reference))
        entries.sort(key=lambda e: (e.entry_date, e.posted_at), reverse=True)
        return LoanAccountingSummary(loan_id=loan_id, entries=entries)

    def validate_accounting_integrity(self) -> Dict[str, Any]:
        """Required accounts present and the trial balance in balance"""
        errors = [
            f"Required account {code} not found"
            for code in self.ledger.chart.missing_accounts(REQUIRED_ACCOUNTS)
        ]
        trial = self.ledger.trial_balance()
        if not trial.is_balanced:
            errors.append(
                f"Trial balance out of balance: debits {trial.total_debits}, credits {trial.total_credits}"
            )
        return {'is_valid': not errors, 'errors': errors}


class LoanEventHandler:
    """
    Subscribes the accounting service to loan events. Failures are logged,
    never propagated back to the publisher.
    """

    def __init__(self, service: LoanAccountingService, dispatcher: EventDispatcher):
        self.service = service
        self.dispatcher = dispatcher
        dispatcher.subscribe(DomainEvent.LOAN_DISBURSED, self.handle_disbursement)
        dispatcher.subscribe(DomainEvent.LOAN_REPAYMENT_RECEIVED, self.handle_repayment)

    def handle_disbursement(self, event: EventPayload) -> Optional[JournalEntry]:
        data = event.data
        try:
            return self.service.process_loan_disbursement(
                loan_id=event.entity_id,
                client_id=data.get('client_id', ""),
                amount=data.get('disbursed_amount') or data.get('approved_amount'),
                disbursement_date=data.get('disbursement_date') or event.timestamp
            )
        except (ValueError, KeyError) as e:
            logger.error(f"Loan disbursement accounting failed for {event.entity_id}: {e}")
            return None

    def handle_repayment(self, event: EventPayload) -> List[JournalEntry]:
        data = event.data
        try:
            return self.service.process_repayment(
                loan_id=event.entity_id,
                client_id=data.get('client_id', ""),
                principal_amount=data.get('principal_amount', 0),
                interest_amount=data.get('interest_amount', 0),
                payment_date=data.get('payment_date') or event.timestamp
            )
        except (ValueError, KeyError) as e:
            logger.error(f"Loan repayment accounting failed for {event.entity_id}: {e}")
            return []

    def close(self) -> None:
        self.dispatcher.unsubscribe(DomainEvent.LOAN_DISBURSED, self.handle_disbursement)
        self.dispatcher.unsubscribe(DomainEvent.LOAN_REPAYMENT_RECEIVED, self.handle_repayment)
