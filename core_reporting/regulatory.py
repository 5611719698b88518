"""
Regulatory Report Templates

Schemas for the quarterly MSP returns and the cross-report rules that tie
them together:

    MSP2_01  Balance sheet (C1-C61)
    MSP2_03  Loan portfolio by sector, totals on row 67
    MSP2_08  Agent-banking balances per bank (C1-C29, total C30)
    MSP2_10  Geographical distribution, totals on rows 210/228/229

Sheets must be defined in the order above because later sheets reference
earlier ones.
"""

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import logging

from .cells import SheetSchema, Workbook
from .rollup import RollupEntry, RollupHierarchy, compute_group_totals
from .validation import CrossReportValidator

logger = logging.getLogger("ripoti.regulatory")

BALANCE_SHEET = "MSP2_01"
LOAN_PORTFOLIO = "MSP2_03"
AGENT_BANKING = "MSP2_08"
GEOGRAPHIC = "MSP2_10"

# ----------------------------------------------------------------------
# MSP2_01 Balance sheet
# ----------------------------------------------------------------------

BALANCE_SHEET_ROWS: List[Tuple[str, str, Optional[str]]] = [
    ("C1", "1. CASH AND CASH EQUIVALENTS", "C2+C3+C6+C7"),
    ("C2", "(a) Cash in Hand", None),
    ("C3", "(b) Balances with Banks and Financial Institutions", "C4+C5"),
    ("C4", "(i) Non-Agent Banking Balances", None),
    ("C5", "(ii) Agent-Banking Balances", None),
    ("C6", "(c) Balances with Microfinance Service Providers", None),
    ("C7", "(d) MNOs Float Balances", None),
    ("C8", "2. INVESTMENT IN DEBT SECURITIES - NET", "C9+C10+C11+C12-C13"),
    ("C9", "(a) Treasury Bills", None),
    ("C10", "(b) Other Government Securities", None),
    ("C11", "(c) Private Securities", None),
    ("C12", "(d) Others", None),
    ("C13", "(e) Allowance for Probable Losses (Deduction)", None),
    ("C14", "3. EQUITY INVESTMENTS - NET (a - b)", "C15-C16"),
    ("C15", "(a) Equity Investment", None),
    ("C16", "(b) Allowance for Probable Losses (Deduction)", None),
    ("C17", "4. LOANS - NET (sum a:d less e)", "C18+C19+C20+C21-C22"),
    ("C18", "(a) Loans to Clients", None),
    ("C19", "(b) Loan to Staff and Related Parties", None),
    ("C20", "(c) Loans to other Microfinance Service Providers", None),
    ("C21", "(d) Accrued Interest on Loans", None),
    ("C22", "(e) Allowances for Probable Losses (Deduction)", None),
    ("C23", "5. PROPERTY, PLANT AND EQUIPMENT - NET", "C24-C25"),
    ("C24", "(a) Property, Plant and Equipment", None),
    ("C25", "(b) Accumulated Depreciation (Deduction)", None),
    ("C26", "6. OTHER ASSETS (sum a:e less f)", "C27+C28+C29+C30+C31-C32"),
    ("C27", "(a) Receivables", None),
    ("C28", "(b) Prepaid Expenses", None),
    ("C29", "(c) Deferred Tax Assets", None),
    ("C30", "(d) Intangible Assets", None),
    ("C31", "(e) Miscellaneous Assets", None),
    ("C32", "(f) Allowance for Probable Losses (Deduction)", None),
    ("C33", "7. TOTAL ASSETS", "C1+C8+C14+C17+C23+C26"),
    ("C34", "8. LIABILITIES", None),
    ("C35", "9. BORROWINGS", "C36+C42"),
    ("C36", "(a) Borrowings in Tanzania", "C37+C38+C39+C40+C41"),
    ("C37", "(i) Borrowings from Banks and Financial Institutions", None),
    ("C38", "(ii) Borrowings from Other Microfinance Service Providers", None),
    ("C39", "(iii) Borrowing from Shareholders", None),
    ("C40", "(iv) Borrowing from Public through Debt Securities", None),
    ("C41", "(v) Other Borrowings", None),
    ("C42", "(b) Borrowings from Abroad", "C43+C44+C45"),
    ("C43", "(i) Borrowings from Banks and Financial Institutions", None),
    ("C44", "(ii) Borrowing from Shareholders", None),
    ("C45", "(iii) Other Borrowings", None),
    ("C46", "10. CASH COLLATERAL/LOAN INSURANCE GUARANTEES/COMPULSORY SAVINGS", None),
    ("C47", "11. TAX PAYABLES", None),
    ("C48", "12. DIVIDEND PAYABLES", None),
    ("C49", "13. OTHER PAYABLES AND ACCRUALS", None),
    ("C50", "14. TOTAL LIABILITIES (sum 9:13)", "C35+C46+C47+C48+C49"),
    ("C51", "15. TOTAL CAPITAL (sum a:i)", "C52+C53+C54+C55+C56+C57+C58+C59+C60"),
    ("C52", "(a) Paid-up Ordinary Share Capital", None),
    ("C53", "(b) Paid-up Preference Shares", None),
    ("C54", "(c) Capital Grants", None),
    ("C55", "(d) Donations", None),
    ("C56", "(e) Share Premium", None),
    ("C57", "(f) General Reserves", None),
    ("C58", "(g) Retained Earnings", None),
    ("C59", "(h) Profit/Loss", None),
    ("C60", "(i) Other Reserves", None),
    ("C61", "16. TOTAL LIABILITIES AND CAPITAL", "C50+C51"),
]


def _schema(sheet_id: str, name: str, rows: Iterable[Tuple[str, str, Optional[str]]]) -> SheetSchema:
    return SheetSchema.from_rows(
        sheet_id,
        [{'cell_id': cell_id, 'label': label, 'formula': formula} for cell_id, label, formula in rows],
        name=name
    )


def balance_sheet_schema() -> SheetSchema:
    return _schema(BALANCE_SHEET, "Balance Sheet", BALANCE_SHEET_ROWS)


# ----------------------------------------------------------------------
# MSP2_03 Loan portfolio (sectoral classification)
# ----------------------------------------------------------------------

SECTOR_FIELDS = ["borrowers", "current", "esm", "substandard", "doubtful", "loss", "written_off"]

# Row 67 column per sector field
SECTOR_TOTAL_CELLS = {
    "borrowers": "C67",
    "current": "E67",
    "esm": "F67",
    "substandard": "G67",
    "doubtful": "H67",
    "loss": "I67",
    "written_off": "J67",
}

PROVISION_RATES = {
    "current": Decimal("0.01"),
    "esm": Decimal("0.05"),
    "substandard": Decimal("0.25"),
    "doubtful": Decimal("0.50"),
    "loss": Decimal("1"),
}

LOAN_PORTFOLIO_ROWS: List[Tuple[str, str, Optional[str]]] = [
    ("C67", "Total number of borrowers", None),
    ("D67", "Total outstanding", "E67+F67+G67+H67+I67"),
    ("E67", "Current", None),
    ("F67", "Especially mentioned", None),
    ("G67", "Substandard", None),
    ("H67", "Doubtful", None),
    ("I67", "Loss", None),
    ("J67", "Amount written off", None),
    ("D69", "Provision for loan losses", None),
    ("GROSS_LOANS", "Gross loans per balance sheet (MSP2_01 C17 + C22)",
     f"{BALANCE_SHEET}.C17+{BALANCE_SHEET}.C22"),
]


def loan_portfolio_schema() -> SheetSchema:
    return _schema(LOAN_PORTFOLIO, "Loan Portfolio", LOAN_PORTFOLIO_ROWS)


def loan_loss_provision(totals: Mapping[str, Decimal]) -> Decimal:
    """Required provision: 1% current, 5% ESM, 25% substandard, 50% doubtful, 100% loss"""
    return sum((totals.get(name, Decimal('0')) * rate for name, rate in PROVISION_RATES.items()),
               Decimal('0'))


def publish_sector_classification(workbook: Workbook, sectors: Iterable[RollupEntry]) -> Dict[str, Decimal]:
    """Sum the sector rows into row 67 and the D69 provision leaf"""
    totals = compute_group_totals(list(sectors), SECTOR_FIELDS)
    values: Dict[str, Any] = {cell: totals[name] for name, cell in SECTOR_TOTAL_CELLS.items()}
    values["D69"] = loan_loss_provision(totals)
    workbook.set_leaves(LOAN_PORTFOLIO, values)
    return totals


# ----------------------------------------------------------------------
# MSP2_08 Agent-banking balances
# ----------------------------------------------------------------------

AGENT_BANKS = [
    "ABSA BANK TANZANIA LIMITED",
    "ACCESS BANK TANZANIA LIMITED",
    "AKIBA COMMERCIAL BANK PLC",
    "BANK OF AFRICA TANZANIA LIMITED",
    "BANK OF TANZANIA",
    "CRDB BANK PLC",
    "DIAMOND TRUST BANK TANZANIA LIMITED",
    "ECOBANK TANZANIA LIMITED",
    "EQUITY BANK TANZANIA LIMITED",
    "EXIM BANK TANZANIA LIMITED",
    "FIRST NATIONAL BANK TANZANIA LIMITED",
    "HOUSING FINANCE BANK OF TANZANIA LIMITED",
    "I&M BANK TANZANIA LIMITED",
    "KCB BANK TANZANIA LIMITED",
    "MAENDELEO BANK PLC",
    "MKOMBOZI COMMERCIAL BANK PLC",
    "MPAMBA BANK PLC",
    "MWALIMU COMMERCIAL BANK PLC",
    "NBC BANK TANZANIA LIMITED",
    "NMB BANK PLC",
    "PEOPLE'S BANK OF ZANZIBAR",
    "POSTAL BANK LIMITED",
    "STANBIC BANK TANZANIA LIMITED",
    "TANZANIA COMMERCIAL BANK LIMITED",
    "TANZANIA INVESTMENT BANK LIMITED",
    "TANZANIA POSTAL BANK LIMITED",
    "TANZANIA WOMEN BANK LIMITED",
    "TIB CORPORATE BANK LIMITED",
    "TIB DEVELOPMENT BANK LIMITED",
]

AGENT_BANKING_TOTAL = f"C{len(AGENT_BANKS) + 1}"


def agent_bank_cell(bank_name: str) -> str:
    """Cell id of a bank's balance row"""
    try:
        return f"C{AGENT_BANKS.index(bank_name) + 1}"
    except ValueError:
        raise ValueError(f"Unknown agent bank: {bank_name}")


def agent_banking_schema() -> SheetSchema:
    rows = [(f"C{i}", name, None) for i, name in enumerate(AGENT_BANKS, start=1)]
    total_formula = "+".join(cell_id for cell_id, _, _ in rows)
    rows.append((AGENT_BANKING_TOTAL, "TOTAL BALANCE", total_formula))
    return _schema(AGENT_BANKING, "Agent Banking Balances", rows)


# ----------------------------------------------------------------------
# MSP2_10 Geographical distribution
# ----------------------------------------------------------------------

GEO_COLUMNS = {
    "B": "Branches",
    "C": "Employees",
    "D": "Compulsory Savings",
    "E": "Borrowers <=35 Female",
    "F": "Borrowers <=35 Male",
    "G": "Borrowers >35 Female",
    "H": "Borrowers >35 Male",
    "I": "Loans <=35 Female",
    "J": "Loans <=35 Male",
    "K": "Loans >35 Female",
    "L": "Loans >35 Male",
    "M": "Outstanding <=35 Female",
    "N": "Outstanding <=35 Male",
    "O": "Outstanding >35 Female",
    "P": "Outstanding >35 Male",
}
GEO_FIELDS = list(GEO_COLUMNS)
TOTAL_OUTSTANDING_COLUMN = "Q"
OUTSTANDING_COLUMNS = ["M", "N", "O", "P"]

MAINLAND_ROW = "210"
ZANZIBAR_ROW = "228"
GRAND_TOTAL_ROW = "229"

MAINLAND = "Mainland"
ZANZIBAR = "Zanzibar"
GRAND_TOTAL = "Grand Total"

MAINLAND_REGIONS = [
    "Arusha", "Dar es Salaam", "Dodoma", "Geita", "Iringa", "Kagera", "Katavi",
    "Kigoma", "Kilimanjaro", "Lindi", "Manyara", "Mara", "Mbeya", "Morogoro",
    "Mtwara", "Mwanza", "Njombe", "Pwani", "Rukwa", "Ruvuma", "Shinyanga",
    "Simiyu", "Singida", "Songwe", "Tabora", "Tanga",
]
ZANZIBAR_REGIONS = [
    "Mjini Magharibi", "Pemba North", "Pemba South", "Unguja North",
    "Unguja South", "Unguja Urban West",
]


def geographic_schema() -> SheetSchema:
    rows: List[Tuple[str, str, Optional[str]]] = []
    for row, label in ((MAINLAND_ROW, "Mainland Total"), (ZANZIBAR_ROW, "Zanzibar Total")):
        for column in GEO_FIELDS:
            rows.append((f"{column}{row}", f"{label} - {GEO_COLUMNS[column]}", None))
        rows.append((f"{TOTAL_OUTSTANDING_COLUMN}{row}", f"{label} - Total Outstanding",
                     "+".join(f"{c}{row}" for c in OUTSTANDING_COLUMNS)))
    for column in GEO_FIELDS:
        rows.append((f"{column}{GRAND_TOTAL_ROW}", f"Grand Total - {GEO_COLUMNS[column]}",
                     f"{column}{MAINLAND_ROW}+{column}{ZANZIBAR_ROW}"))
    rows.append((f"{TOTAL_OUTSTANDING_COLUMN}{GRAND_TOTAL_ROW}", "Grand Total - Total Outstanding",
                 "+".join(f"{c}{GRAND_TOTAL_ROW}" for c in OUTSTANDING_COLUMNS)))
    return _schema(GEOGRAPHIC, "Geographical Distribution", rows)


def geographic_hierarchy(fields: Sequence[str] = GEO_FIELDS) -> RollupHierarchy:
    """Region -> Mainland/Zanzibar -> Grand Total"""
    hierarchy = RollupHierarchy(fields)
    hierarchy.define_partition(MAINLAND, MAINLAND_REGIONS)
    hierarchy.define_partition(ZANZIBAR, ZANZIBAR_REGIONS)
    hierarchy.define_composite(GRAND_TOTAL, [MAINLAND, ZANZIBAR])
    return hierarchy


def publish_geographic_distribution(workbook: Workbook, regions: Iterable[RollupEntry]) -> Dict[str, Dict[str, Decimal]]:
    """
    Roll regional rows up to the zone totals and write them into rows 210
    and 228; the sheet derives row 229 and column Q itself.
    """
    regions = list(regions)
    hierarchy = geographic_hierarchy()
    totals = hierarchy.compute(regions)
    if not hierarchy.verify(regions, GRAND_TOTAL):
        logger.warning("Geographic rollup does not match the direct regional sum")

    values = {}
    for zone, row in ((MAINLAND, MAINLAND_ROW), (ZANZIBAR, ZANZIBAR_ROW)):
        for column in GEO_FIELDS:
            values[f"{column}{row}"] = totals[zone][column]
    workbook.set_leaves(GEOGRAPHIC, values)
    return totals


def regional_savings_summary(regions: Iterable[RollupEntry]) -> Dict[str, Decimal]:
    """Compulsory savings by zone and overall"""
    totals = geographic_hierarchy(["D"]).compute(regions)
    return {zone: totals[zone]["D"] for zone in (MAINLAND, ZANZIBAR, GRAND_TOTAL)}


# ----------------------------------------------------------------------
# Workbook and rule set
# ----------------------------------------------------------------------

REPORT_SCHEMAS = [
    balance_sheet_schema,
    loan_portfolio_schema,
    agent_banking_schema,
    geographic_schema,
]


def define_regulatory_sheets(workbook: Workbook) -> List[str]:
    """Define every MSP sheet not yet present, in dependency order"""
    defined = []
    for factory in REPORT_SCHEMAS:
        schema = factory()
        if not workbook.has_sheet(schema.sheet_id):
            workbook.define_sheet(schema)
            defined.append(schema.sheet_id)
    return defined


DEFAULT_RULES: List[Dict[str, Any]] = [
    {
        'id': "MSP2_01-V1",
        'left_ref': f"{BALANCE_SHEET}.C33",
        'right_ref': f"{BALANCE_SHEET}.C61",
        'description': "Total Assets = Total Liabilities + Capital",
        'left_label': "Assets",
        'right_label': "Liabilities+Capital",
    },
    {
        'id': "MSP2_03-V2",
        'left_ref': f"{LOAN_PORTFOLIO}.D67",
        'right_ref': f"{LOAN_PORTFOLIO}.GROSS_LOANS",
        'description': "D67 = MSP2_01.C17 + MSP2_01.C22 (Gross Loans)",
        'left_label': "D67",
        'right_label': "MSP2_01.C17+C22",
    },
    {
        'id': "MSP2_03-V3",
        'left_ref': f"{LOAN_PORTFOLIO}.D69",
        'right_ref': f"{BALANCE_SHEET}.C22",
        'description': "D69 = MSP2_01.C22 (Provision Amount)",
        'left_label': "D69",
        'right_label': "MSP2_01.C22",
    },
    {
        'id': "MSP2_08-V1",
        'left_ref': f"{AGENT_BANKING}.{AGENT_BANKING_TOTAL}",
        'right_ref': f"{BALANCE_SHEET}.C5",
        'description': "Total agent banking balances = MSP2_01.C5",
        'left_label': "Agent Banking Total",
        'right_label': "MSP2_01.C5",
    },
    {
        'id': "MSP2_10-V1",
        'left_ref': f"{GEOGRAPHIC}.D{GRAND_TOTAL_ROW}",
        'right_ref': f"{BALANCE_SHEET}.C46",
        'description': "Compulsory Savings = MSP2_01.C46",
        'left_label': "Compulsory Savings",
        'right_label': "MSP2_01.C46",
    },
    {
        'id': "MSP2_10-V2",
        'left_ref': f"{GEOGRAPHIC}.{TOTAL_OUTSTANDING_COLUMN}{GRAND_TOTAL_ROW}",
        'right_ref': f"{LOAN_PORTFOLIO}.D67",
        'description': "Total Outstanding = MSP2_03.D67",
        'left_label': "Total Outstanding",
        'right_label': "MSP2_03.D67",
    },
]


def register_default_rules(validator: CrossReportValidator) -> List[str]:
    """Register the standard cross-report checks that are not yet registered"""
    existing = {rule.rule_id for rule in validator.list_rules()}
    rows = [row for row in DEFAULT_RULES if row['id'] not in existing]
    return [rule.rule_id for rule in validator.register_rules(rows)]


# ----------------------------------------------------------------------
# Sample quarter used by the static source and demos
# ----------------------------------------------------------------------

SAMPLE_BALANCE_SHEET: Dict[str, int] = {
    "C2": 1500000, "C4": 25000000, "C5": 5000000, "C6": 3000000, "C7": 800000,
    "C9": 15000000, "C10": 8000000, "C11": 5000000, "C12": 2000000, "C13": 500000,
    "C15": 10000000, "C16": 200000,
    "C18": 500000000, "C19": 10000000, "C20": 5000000, "C21": 15000000, "C22": 25000000,
    "C24": 80000000, "C25": 20000000,
    "C27": 5000000, "C28": 2000000, "C29": 1000000, "C30": 3000000, "C31": 1500000, "C32": 500000,
    "C37": 100000000, "C38": 50000000, "C39": 20000000, "C40": 30000000, "C41": 10000000,
    "C43": 50000000, "C44": 15000000, "C45": 10000000,
    "C46": 25000000, "C47": 5000000, "C48": 2000000, "C49": 8000000,
    "C52": 100000000, "C53": 0, "C54": 5000000, "C55": 2000000, "C56": 10000000,
    "C57": 15000000, "C58": 186600000, "C59": 5000000, "C60": 3000000,
}

SAMPLE_AGENT_BANKING: Dict[str, int] = {
    agent_bank_cell("ABSA BANK TANZANIA LIMITED"): 500000,
    agent_bank_cell("CRDB BANK PLC"): 2000000,
    agent_bank_cell("NBC BANK TANZANIA LIMITED"): 1000000,
    agent_bank_cell("NMB BANK PLC"): 1500000,
}

SAMPLE_SECTORS: List[Dict[str, Any]] = [
    {"sector": "Trade and Commerce", "borrowers": 1200, "current": 300000000, "esm": 10000000,
     "substandard": 5000000, "doubtful": 6000000, "loss": 7000000, "written_off": 0},
    {"sector": "Agriculture", "borrowers": 800, "current": 180000000, "esm": 9000000,
     "substandard": 4000000, "doubtful": 4000000, "loss": 5000000, "written_off": 2000000},
]

SAMPLE_REGIONS: List[Dict[str, Any]] = [
    {"region": "Arusha", "B": 2, "C": 15, "D": 10000000, "E": 150, "F": 120, "G": 200, "H": 180,
     "I": 150, "J": 120, "K": 200, "L": 180,
     "M": 40000000, "N": 35000000, "O": 40000000, "P": 35000000},
    {"region": "Dar es Salaam", "B": 4, "C": 30, "D": 8000000, "E": 250, "F": 200, "G": 300, "H": 250,
     "I": 250, "J": 200, "K": 300, "L": 250,
     "M": 50000000, "N": 50000000, "O": 50000000, "P": 50000000},
    {"region": "Dodoma", "B": 1, "C": 8, "D": 4000000, "E": 60, "F": 40, "G": 80, "H": 70,
     "I": 60, "J": 40, "K": 80, "L": 70,
     "M": 25000000, "N": 25000000, "O": 25000000, "P": 25000000},
    {"region": "Mjini Magharibi", "B": 1, "C": 6, "D": 3000000, "E": 30, "F": 20, "G": 30, "H": 20,
     "I": 30, "J": 20, "K": 30, "L": 20,
     "M": 20000000, "N": 20000000, "O": 20000000, "P": 20000000},
]


def sector_entries(rows: Iterable[Mapping[str, Any]]) -> List[RollupEntry]:
    return [
        RollupEntry(group=str(row["sector"]), values={name: row.get(name, 0) for name in SECTOR_FIELDS})
        for row in rows
    ]


def region_entries(rows: Iterable[Mapping[str, Any]]) -> List[RollupEntry]:
    return [
        RollupEntry(group=str(row["region"]), values={name: row.get(name, 0) for name in GEO_FIELDS})
        for row in rows
    ]
