"""
InvoLex Billing Engine - Triage Router

Single-email triage for the email the user has open.
"""

from fastapi import APIRouter, HTTPException
import logging

from services.billing.errors import BillingError
from services.billing.triage_machine import outcome_to_dict
from routes.billing import billing_http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/triage", tags=["triage"])

# Billing engine - set by main app
engine = None

def set_dependencies(billing_engine):
    global engine
    engine = billing_engine


def _get_email(email_id: str):
    email = engine.find_email(email_id)
    if email is None:
        raise HTTPException(status_code=404, detail=f"Email not found: {email_id}")
    return email


@router.post("/{email_id}")
async def triage_email(email_id: str):
    """Select an email and run triage on it."""
    email = _get_email(email_id)
    outcome = await engine.triage.select_email(email)
    if outcome is None:
        return {"status": None, "email_id": email_id, "detail": "Email already has an entry or triage was superseded"}
    return outcome_to_dict(outcome)


@router.post("/{email_id}/override")
async def override_triage(email_id: str):
    """Force a billable draft after a not-billable or duplicate verdict."""
    session = engine.triage
    if session.state is None or session.state.email_id != email_id:
        raise HTTPException(status_code=409, detail=f"Email {email_id} is not the current triage selection")
    try:
        outcome = session.override()
    except BillingError as e:
        raise billing_http_error(e)
    return outcome_to_dict(outcome)


@router.post("/{email_id}/processed")
async def mark_processed(email_id: str):
    """Mark an email done and return the next one to work on."""
    _get_email(email_id)
    next_email = engine.triage.mark_processed_and_next(email_id)
    return {
        "email_id": email_id,
        "next_email": next_email.to_dict() if next_email else None,
        "inbox_processed": next_email is None,
    }
