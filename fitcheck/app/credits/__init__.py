"""Credit accounting on top of the ledger store."""

from .models import Affordability, CreditSummary, ReconciliationReport
from .service import SIGNUP_GRANT_REFERENCE, CreditAccountant

__all__ = [
    "Affordability",
    "CreditAccountant",
    "CreditSummary",
    "ReconciliationReport",
    "SIGNUP_GRANT_REFERENCE",
]
