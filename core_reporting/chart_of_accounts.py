"""
Chart of Accounts

Fixed registry of general ledger accounts. Accounts are long-lived reference
data: they are registered once, may be deactivated, and are never deleted.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional
import logging
import threading

from .audit import AuditTrail, AuditEventType
from .exceptions import InactiveAccountError, UnknownAccountError
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("ripoti.accounts")


class NormalBalance(Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class AccountType(Enum):
    """Standard accounting account types"""
    ASSET = "asset"           # Debit normal balance
    LIABILITY = "liability"   # Credit normal balance
    EQUITY = "equity"         # Credit normal balance
    REVENUE = "revenue"       # Credit normal balance
    EXPENSE = "expense"       # Debit normal balance

    @property
    def normal_balance(self) -> NormalBalance:
        if self in (AccountType.ASSET, AccountType.EXPENSE):
            return NormalBalance.DEBIT
        return NormalBalance.CREDIT


@dataclass
class Account(StorageRecord):
    """General ledger account"""
    code: str
    name: str
    account_type: AccountType
    category: str = ""
    description: str = ""
    is_active: bool = True
    normal_balance: Optional[NormalBalance] = None  # None = derived from account_type

    def __post_init__(self):
        if not self.code:
            raise ValueError("Account code is required")
        if self.normal_balance is None:
            self.normal_balance = self.account_type.normal_balance

    @property
    def is_contra(self) -> bool:
        """Contra accounts carry the opposite of their type's normal balance"""
        return self.normal_balance != self.account_type.normal_balance

    def to_dict(self) -> Dict:
        result = super().to_dict()
        result['account_type'] = self.account_type.value
        result['normal_balance'] = self.normal_balance.value
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'Account':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['account_type'] = AccountType(data['account_type'])
        data['normal_balance'] = NormalBalance(data['normal_balance'])
        return cls(**data)


class ChartOfAccounts:
    """Registry of accounts keyed by code, optionally persisted"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "chart_of_accounts"
        self._accounts: Dict[str, Account] = {}
        self._lock = threading.RLock()

        if storage:
            for data in storage.load_all(self.table_name):
                account = Account.from_dict(data)
                self._accounts[account.code] = account

    def register(
        self,
        code: str,
        name: str,
        account_type: AccountType,
        category: str = "",
        description: str = "",
        normal_balance: Optional[NormalBalance] = None
    ) -> Account:
        """
        Add an account to the chart

        Raises:
            ValueError: If the code is already registered
        """
        now = datetime.now(timezone.utc)
        account = Account(
            id=code,
            created_at=now,
            updated_at=now,
            code=code,
            name=name,
            account_type=account_type,
            category=category,
            description=description,
            normal_balance=normal_balance
        )
        with self._lock:
            if code in self._accounts:
                raise ValueError(f"Account {code} already exists in chart of accounts")
            self._accounts[code] = account
            self._save(account)

        logger.info(f"Registered account {code} {name} ({account_type.value})")
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_REGISTERED,
                entity_type="account",
                entity_id=code,
                metadata={"name": name, "account_type": account_type.value}
            )
        return account

    def get(self, code: str) -> Optional[Account]:
        with self._lock:
            return self._accounts.get(code)

    def require(self, code: str, for_posting: bool = False) -> Account:
        """
        Look up an account that must exist

        Raises:
            UnknownAccountError: If the code is not registered
            InactiveAccountError: If for_posting and the account is deactivated
        """
        account = self.get(code)
        if account is None:
            raise UnknownAccountError(code)
        if for_posting and not account.is_active:
            raise InactiveAccountError(code)
        return account

    def deactivate(self, code: str, reason: str = "") -> Account:
        """Stop new postings to an account; history is kept"""
        with self._lock:
            account = self.require(code)
            if not account.is_active:
                return account
            account.is_active = False
            account.updated_at = datetime.now(timezone.utc)
            self._save(account)

        logger.info(f"Deactivated account {code}")
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_DEACTIVATED,
                entity_type="account",
                entity_id=code,
                metadata={"reason": reason}
            )
        return account

    def list_accounts(self, account_type: Optional[AccountType] = None,
                      include_inactive: bool = True) -> List[Account]:
        with self._lock:
            accounts = sorted(self._accounts.values(), key=lambda a: a.code)
        if account_type:
            accounts = [a for a in accounts if a.account_type == account_type]
        if not include_inactive:
            accounts = [a for a in accounts if a.is_active]
        return accounts

    def missing_accounts(self, codes: Iterable[str]) -> List[str]:
        """Codes from the given list that are not registered"""
        with self._lock:
            return [code for code in codes if code not in self._accounts]

    def __contains__(self, code: str) -> bool:
        return self.get(code) is not None

    def _save(self, account: Account) -> None:
        if self.storage:
            self.storage.save(self.table_name, account.code, account.to_dict())


DEFAULT_ACCOUNTS = [
    # code, name, type, category, normal balance override
    ("1001", "Cash in Hand", AccountType.ASSET, "Current Assets", None),
    ("1002", "Bank Balances", AccountType.ASSET, "Current Assets", None),
    ("1017", "Gross Loans", AccountType.ASSET, "Loan Portfolio", None),
    ("1018", "Accrued Interest Receivable", AccountType.ASSET, "Loan Portfolio", None),
    ("1022", "Allowance for Loan Losses", AccountType.ASSET, "Loan Portfolio", NormalBalance.CREDIT),
    ("2001", "Compulsory Savings", AccountType.LIABILITY, "Current Liabilities", None),
    ("3001", "Share Capital", AccountType.EQUITY, "Equity", None),
    ("4001", "Interest Income on Loans", AccountType.REVENUE, "Operating Income", None),
    ("5005", "Loan Loss Provision Expense", AccountType.EXPENSE, "Operating Expenses", None),
]


def default_chart(storage: Optional[StorageInterface] = None,
                  audit_trail: Optional[AuditTrail] = None) -> ChartOfAccounts:
    """Chart seeded with the microfinance accounts used by loan accounting"""
    chart = ChartOfAccounts(storage=storage, audit_trail=audit_trail)
    for code, name, account_type, category, normal_balance in DEFAULT_ACCOUNTS:
        if code not in chart:
            chart.register(code, name, account_type, category=category, normal_balance=normal_balance)
    return chart
