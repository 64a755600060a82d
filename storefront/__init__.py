"""
storefront package

Commerce engine for the Game Store backend: cart eligibility, the
cart -> library purchase workflow, invoices and the storage they run on.

The purpose of this __init__.py file is to expose the pieces app.py wires
together so they can be imported directly from storefront.
Example:
    from storefront import CartService, PurchaseOrchestrator, SQLiteLedgerStore
"""

# Configuration
from .config import Settings

# Storage
from .ledger import SQLiteLedgerStore

# Workflows
from .cart import CartService
from .eligibility import EligibilityChecker
from .purchase import PurchaseOrchestrator

# Invoice email delivery
from .notifications import NoopNotificationSender, SESNotificationSender
