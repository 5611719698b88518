"""
Core Reporting Engine

Regulatory return computation (MSP2_xx sheets), hierarchical roll-ups,
cross-report validation and a double-entry ledger with strictly ordered
running balances. All financial math uses Decimal.
"""

__version__ = "1.0.0"
