"""Daily job: move sent invoices past their due date to overdue.

Usage: python scripts/mark_overdue.py <company_id> [<admin_user_id>]
"""

from __future__ import annotations

import importlib
import logging
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from dotenv import load_dotenv

from config import get_settings_module

from src.flow_billing.flow_billing.container import build_container
from src.flow_billing.flow_billing.core.context import BillingContext
from src.flow_billing.flow_billing.core.enums import Role


def main(argv: list[str]) -> int:
    if not argv:
        print(__doc__.strip().splitlines()[-1])
        return 2

    load_dotenv(override=False)
    settings = importlib.import_module(get_settings_module())
    logging.basicConfig(level=getattr(settings, "LOG_LEVEL", "INFO"))

    container = build_container(
        db_config=settings.DB_CONFIG,
        store_backend=getattr(settings, "STORE_BACKEND", "mysql"),
    )
    context = BillingContext(
        company_id=int(argv[0]),
        user_id=int(argv[1]) if len(argv) > 1 else 0,
        role=Role.ADMIN,
    )
    marked = container.invoice_service.mark_overdue_invoices(context=context)
    print(f"OK: {len(marked)} invoice(s) marked overdue for company {context.company_id}")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
