"""Constants and defaults.

Note: Keep constants here to avoid magic numbers spread across code.
"""

from decimal import Decimal

STANDARD_BILLING_PERIOD_DAYS = 30
MAX_BILLING_DAY = 28
MAX_BILLING_PERIOD_DAYS = 366

DEFAULT_INVOICE_PREFIX = "INV"
MAX_INVOICE_PREFIX_LENGTH = 16
DEFAULT_PAYMENT_TERMS_DAYS = 30
DEFAULT_CURRENCY = "BDT"
DEFAULT_TAX_RATE = Decimal("0")
INVOICE_SEQUENCE_WIDTH = 3

DEFAULT_LIST_LIMIT = 200

CENT = Decimal("0.01")
