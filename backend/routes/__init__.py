"""
InvoLex Billing Engine - Routes Package

Modular API routers for the billing engine.
"""

from .billing import router as billing_router, set_dependencies as set_billing_deps
from .triage import router as triage_router, set_dependencies as set_triage_deps
from .automation import router as automation_router, set_dependencies as set_automation_deps

__all__ = [
    'billing_router', 'set_billing_deps',
    'triage_router', 'set_triage_deps',
    'automation_router', 'set_automation_deps',
]
