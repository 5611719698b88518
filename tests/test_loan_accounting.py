"""
Tests for loan accounting integration

Each loan lifecycle event must produce the matching balanced journal entry.
"""

import pytest
from decimal import Decimal

from core_reporting.currency import Currency
from core_reporting.storage import InMemoryStorage
from core_reporting.events import EventDispatcher, EventPayload, DomainEvent
from core_reporting.chart_of_accounts import ChartOfAccounts, AccountType, default_chart
from core_reporting.ledger import GeneralLedger
from core_reporting.exceptions import BackdatedEntryError, InactiveAccountError
from core_reporting.loan_accounting import (
    ActiveLoan, LoanAccountingService, LoanEventHandler
)


@pytest.fixture
def ledger():
    storage = InMemoryStorage()
    return GeneralLedger(storage, default_chart(storage), currency=Currency.TZS, number_width=3)


@pytest.fixture
def service(ledger):
    return LoanAccountingService(ledger)


def lines_of(entry):
    return [(line.account_code, line.debit, line.credit) for line in entry.lines]


class TestAccountingEntries:
    """Test the automatic entry for each loan event"""

    def test_disbursement(self, service):
        """Test Dr 1017 Gross Loans / Cr 1001 Cash"""
        entry = service.process_loan_disbursement("L1", "C9", Decimal("1000000"), "2024-01-15")
        assert entry.entry_number == "LD-001"
        assert entry.reference == "LOAN-L1"
        assert entry.description == "Loan disbursement to client C9"
        assert lines_of(entry) == [
            ("1017", Decimal("1000000"), Decimal("0")),
            ("1001", Decimal("0"), Decimal("1000000")),
        ]

    def test_interest_accrual(self, service):
        """Test Dr 1018 Accrued Interest / Cr 4001 Interest Income"""
        entry = service.process_interest_accrual("L1", "C9", "493.15", "2024-01-16")
        assert entry.entry_number == "IA-001"
        assert entry.reference == "LOAN-L1"
        assert lines_of(entry) == [
            ("1018", Decimal("493.15"), Decimal("0")),
            ("4001", Decimal("0"), Decimal("493.15")),
        ]

    def test_interest_collection(self, service):
        """Test Dr 1001 Cash / Cr 1018 Accrued Interest"""
        entry = service.process_interest_collection("L1", "C9", 15000, "2024-02-15")
        assert entry.entry_number == "IC-001"
        assert entry.reference == "REPAY-L1"
        assert lines_of(entry)[0] == ("1001", Decimal("15000"), Decimal("0"))
        assert lines_of(entry)[1] == ("1018", Decimal("0"), Decimal("15000"))

    def test_principal_repayment(self, service):
        """Test Dr 1001 Cash / Cr 1017 Gross Loans"""
        entry = service.process_principal_repayment("L1", "C9", 80000, "2024-02-15")
        assert entry.entry_number == "PR-001"
        assert lines_of(entry)[1] == ("1017", Decimal("0"), Decimal("80000"))

    def test_loan_loss_provision(self, service):
        """Test Dr 5005 Provision Expense / Cr 1022 Allowance"""
        entry = service.process_loan_loss_provision("L1", "C9", 25000, "2024-03-31")
        assert entry.entry_number == "LP-001"
        assert entry.reference == "PROV-L1"
        assert lines_of(entry) == [
            ("5005", Decimal("25000"), Decimal("0")),
            ("1022", Decimal("0"), Decimal("25000")),
        ]

    def test_non_positive_amount_rejected(self, service):
        with pytest.raises(ValueError, match="must be positive"):
            service.process_loan_disbursement("L1", "C9", 0, "2024-01-15")
        with pytest.raises(ValueError):
            service.process_interest_accrual("L1", "C9", "-5", "2024-01-15")

    def test_repayment_splits_principal_and_interest(self, service):
        """Test principal first, then interest"""
        entries = service.process_repayment("L1", "C9", 80000, 15000, "2024-02-15")
        assert [e.prefix for e in entries] == ["PR", "IC"]

    def test_repayment_skips_zero_parts(self, service):
        entries = service.process_repayment("L1", "C9", 0, 15000, "2024-02-15")
        assert [e.prefix for e in entries] == ["IC"]

    def test_balances_after_lifecycle(self, service, ledger):
        """Test account balances after disbursement, accrual and repayment"""
        service.process_loan_disbursement("L1", "C9", 1000000, "2024-01-15")
        service.process_interest_accrual("L1", "C9", 15000, "2024-02-14")
        service.process_repayment("L1", "C9", 80000, 15000, "2024-02-15")

        assert ledger.get_account_balance("1017").amount == Decimal("920000")
        assert ledger.get_account_balance("1018").amount == Decimal("0")
        assert ledger.get_account_balance("4001").amount == Decimal("15000")
        assert ledger.trial_balance().is_balanced

    def test_repayment_with_inactive_interest_account_posts_nothing(self, service, ledger):
        """Test principal is not booked when the interest part cannot be"""
        ledger.chart.deactivate("1018")
        with pytest.raises(InactiveAccountError):
            service.process_repayment("L1", "C9", 80000, 15000, "2024-02-15")
        assert ledger.list_entries(reference="REPAY-L1") == []
        assert ledger.get_account_balance("1001").amount == Decimal("0")

    def test_backdated_repayment_posts_nothing(self, service, ledger):
        service.process_interest_accrual("L1", "C9", 15000, "2024-03-01")
        with pytest.raises(BackdatedEntryError):
            service.process_repayment("L1", "C9", 80000, 15000, "2024-02-15")
        assert ledger.list_entries(reference="REPAY-L1") == []

    def test_negative_repayment_rejected(self, service, ledger):
        with pytest.raises(ValueError, match="must not be negative"):
            service.process_repayment("L1", "C9", 80000, -1, "2024-02-15")
        assert ledger.list_entries(reference="REPAY-L1") == []


class TestDailyAccrual:
    """Test batch interest accrual"""

    def test_daily_interest(self):
        """Test principal x rate% / 365, rounded half up"""
        loan = ActiveLoan("L1", "C9", Decimal("1000000"), Decimal("18"))
        assert loan.daily_interest() == Decimal("493.15")

    def test_accrue_batch(self, service):
        loans = [
            ActiveLoan("L1", "C9", 1000000, 18),
            ActiveLoan("L2", "C10", 500000, 24),
        ]
        posted = service.accrue_daily_interest(loans, "2024-01-16")
        assert [e.entry_number for e in posted] == ["IA-001", "IA-002"]
        assert posted[1].total_debit == Decimal("328.77")

    def test_zero_interest_skipped(self, service):
        posted = service.accrue_daily_interest([ActiveLoan("L1", "C9", 1000000, 0)], "2024-01-16")
        assert posted == []

    def test_failing_loan_does_not_stop_batch(self, service):
        """Test a rejected accrual is logged and skipped instead of raised"""
        service.process_interest_accrual("L0", "C0", 1, "2024-02-01")
        loans = [ActiveLoan("L1", "C9", 1000000, 18)]
        # accounts 1018/4001 already carry a 2024-02-01 posting
        assert service.accrue_daily_interest(loans, "2024-01-16") == []
        assert len(service.accrue_daily_interest(loans, "2024-02-02")) == 1


class TestSummaryAndIntegrity:
    """Test per-loan summaries and the integrity check"""

    def test_summary(self, service):
        service.process_loan_disbursement("L1", "C9", 1000000, "2024-01-15")
        service.process_repayment("L1", "C9", 80000, 15000, "2024-02-15")
        service.process_loan_loss_provision("L1", "C9", 25000, "2024-03-31")
        service.process_loan_disbursement("L2", "C10", 5000, "2024-04-01")

        summary = service.loan_accounting_summary("L1")
        assert summary.total_entries == 4
        assert summary.entries[0].prefix == "LP"
        assert summary.entries[-1].prefix == "LD"
        assert summary.to_dict()["loan_id"] == "L1"

    def test_integrity_valid(self, service):
        service.process_loan_disbursement("L1", "C9", 1000, "2024-01-15")
        assert service.validate_accounting_integrity() == {'is_valid': True, 'errors': []}

    def test_integrity_reports_missing_accounts(self):
        chart = ChartOfAccounts()
        chart.register("1001", "Cash", AccountType.ASSET)
        service = LoanAccountingService(GeneralLedger(InMemoryStorage(), chart, number_width=3))
        result = service.validate_accounting_integrity()
        assert not result['is_valid']
        assert "Required account 1017 not found" in result['errors']


class TestLoanEventHandler:
    """Test the event subscription"""

    def setup_method(self):
        storage = InMemoryStorage()
        self.ledger = GeneralLedger(storage, default_chart(storage), number_width=3)
        self.dispatcher = EventDispatcher()
        self.handler = LoanEventHandler(LoanAccountingService(self.ledger), self.dispatcher)

    def test_disbursement_event(self):
        self.dispatcher.publish(EventPayload(
            event_type=DomainEvent.LOAN_DISBURSED,
            entity_type="loan",
            entity_id="L1",
            data={"client_id": "C9", "disbursed_amount": "1000000", "disbursement_date": "2024-01-15"}
        ))
        assert self.ledger.get_entry_by_number("LD-001").reference == "LOAN-L1"

    def test_approved_amount_fallback(self):
        self.dispatcher.publish(EventPayload(
            event_type=DomainEvent.LOAN_DISBURSED,
            entity_type="loan",
            entity_id="L1",
            data={"client_id": "C9", "approved_amount": "2000", "disbursement_date": "2024-01-15"}
        ))
        assert self.ledger.get_entry_by_number("LD-001").total_debit == Decimal("2000")

    def test_repayment_event(self):
        self.dispatcher.publish(EventPayload(
            event_type=DomainEvent.LOAN_REPAYMENT_RECEIVED,
            entity_type="loan",
            entity_id="L1",
            data={"principal_amount": "800", "interest_amount": "150", "payment_date": "2024-02-15"}
        ))
        assert [e.prefix for e in self.ledger.list_entries(reference="REPAY-L1")] == ["PR", "IC"]

    def test_bad_event_logged_not_raised(self, caplog):
        """Test a disbursement without an amount is logged"""
        with caplog.at_level("ERROR", logger="ripoti.loans"):
            result = self.handler.handle_disbursement(EventPayload(
                event_type=DomainEvent.LOAN_DISBURSED,
                entity_type="loan",
                entity_id="L1",
                data={"client_id": "C9"}
            ))
        assert result is None
        assert "Loan disbursement accounting failed for L1" in caplog.text
        assert self.ledger.list_entries() == []

    def test_close_unsubscribes(self):
        self.handler.close()
        assert self.dispatcher.get_handler_count(DomainEvent.LOAN_DISBURSED) == 0
