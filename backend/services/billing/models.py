"""
InvoLex Billing Engine - Domain Models

Dataclasses for everything the triage engine reads and produces:

- Email: read-only inbox message, the source of truth for triage
- Matter / BillingRule / BillingCondition: per-matter ordered rules
- AIPreview: candidate billing preview returned by the AI collaborator
- BillableEntry: stored time entry (draft, pending, synced, error, generating)
- SuggestedEntry: unsaved candidate held by the processed tracker
- BillingSettings: per-owner runtime settings
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, List, Any

from services.billing.config import (
    AUTOPILOT_ENABLED,
    AUTO_SYNC_THRESHOLD,
    DEFAULT_HOURLY_RATE,
    DEFAULT_PRACTICE_TOOL,
    PERSONALIZATION_ENABLED,
    clamp_threshold,
)


# =============================================================================
# ENUMS
# =============================================================================

class ConditionType(str, Enum):
    SENDER_DOMAIN_IS = "SENDER_DOMAIN_IS"
    SUBJECT_CONTAINS = "SUBJECT_CONTAINS"
    BODY_CONTAINS = "BODY_CONTAINS"


class RuleActionType(str, Enum):
    IGNORE_SENDER_DOMAIN = "IGNORE_SENDER_DOMAIN"
    ROUND_UP_HOURS = "ROUND_UP_HOURS"
    SET_FIXED_HOURS = "SET_FIXED_HOURS"
    AUTO_APPROVE_SYNC = "AUTO_APPROVE_SYNC"


class RoutingAction(str, Enum):
    """Where a candidate billable event ends up."""
    AUTO_SYNC = "AUTO_SYNC"      # Create and push to the practice tool
    IGNORE = "IGNORE"            # Suppress, never resurface
    STANDARD = "STANDARD"        # Present to the user as a suggestion / draft


class EntryStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"
    GENERATING = "generating"


class TriageStatus(str, Enum):
    """Single-email triage states."""
    ANALYZING = "ANALYZING"
    BILLABLE = "BILLABLE"
    NOT_BILLABLE = "NOT_BILLABLE"
    DUPLICATE_SUSPECTED = "DUPLICATE_SUSPECTED"
    AUTO_PROCESSED = "AUTO_PROCESSED"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# =============================================================================
# INBOX AND MATTERS
# =============================================================================

@dataclass(frozen=True)
class Email:
    id: str
    sender: str
    subject: str
    body: str
    timestamp: Optional[str] = None

    @property
    def sender_domain(self) -> Optional[str]:
        """Lowercased domain of the sender, without a trailing '>' from 'Name <a@b.com>'."""
        parts = self.sender.split("@")
        if len(parts) < 2:
            return None
        return parts[1].strip().rstrip(">").strip().lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender": self.sender,
            "subject": self.subject,
            "body": self.body,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Email":
        return cls(
            id=str(data["id"]),
            sender=data.get("sender", ""),
            subject=data.get("subject", ""),
            body=data.get("body", ""),
            timestamp=data.get("timestamp"),
        )


@dataclass
class BillingCondition:
    type: ConditionType
    value: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BillingCondition":
        return cls(type=ConditionType(data["type"]), value=str(data.get("value", "")))


@dataclass
class BillingRule:
    """Conditions are ANDed; one action with an optional typed value."""
    id: str
    conditions: List[BillingCondition]
    action_type: RuleActionType
    action_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conditions": [c.to_dict() for c in self.conditions],
            "action_type": self.action_type.value,
            "action_value": self.action_value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BillingRule":
        return cls(
            id=data.get("id") or _new_id("rule"),
            conditions=[BillingCondition.from_dict(c) for c in data.get("conditions", [])],
            action_type=RuleActionType(data["action_type"]),
            action_value=data.get("action_value"),
        )


@dataclass
class Matter:
    name: str
    rate: float = DEFAULT_HOURLY_RATE
    billing_rules: List[BillingRule] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "rate": self.rate,
            "billing_rules": [r.to_dict() for r in self.billing_rules],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Matter":
        return cls(
            name=data["name"],
            rate=float(data.get("rate", DEFAULT_HOURLY_RATE)),
            billing_rules=[BillingRule.from_dict(r) for r in data.get("billing_rules", [])],
        )


def find_matter(matters: List[Matter], name: Optional[str]) -> Optional[Matter]:
    if not name:
        return None
    for matter in matters:
        if matter.name == name:
            return matter
    return None


@dataclass
class Correction:
    """A user edit of an AI description, used as a personalization example."""
    original_description: str
    corrected_description: str
    email_body: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_description": self.original_description,
            "corrected_description": self.corrected_description,
            "email_body": self.email_body,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Correction":
        return cls(
            original_description=data.get("original_description", ""),
            corrected_description=data.get("corrected_description", ""),
            email_body=data.get("email_body", ""),
        )


# =============================================================================
# AI PREVIEW
# =============================================================================

@dataclass
class AIPreview:
    description: str
    suggested_matter: str
    suggested_hours: Optional[float] = None
    action_items: List[str] = field(default_factory=list)
    detailed_breakdown: List[str] = field(default_factory=list)
    confidence_score: Optional[float] = None
    confidence_justification: Optional[str] = None
    justification: Optional[Dict[str, str]] = None

    @property
    def rule_applied_message(self) -> Optional[str]:
        if not self.justification:
            return None
        return self.justification.get("rule_applied_message")

    def copy(self) -> "AIPreview":
        return replace(
            self,
            action_items=list(self.action_items),
            detailed_breakdown=list(self.detailed_breakdown),
            justification=dict(self.justification) if self.justification is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "suggested_matter": self.suggested_matter,
            "suggested_hours": self.suggested_hours,
            "action_items": list(self.action_items),
            "detailed_breakdown": list(self.detailed_breakdown),
            "confidence_score": self.confidence_score,
            "confidence_justification": self.confidence_justification,
            "justification": self.justification,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AIPreview":
        hours = data.get("suggested_hours")
        score = data.get("confidence_score")
        return cls(
            description=data.get("description") or "",
            suggested_matter=data.get("suggested_matter") or "",
            suggested_hours=float(hours) if hours is not None else None,
            action_items=[str(a) for a in data.get("action_items") or []],
            detailed_breakdown=[str(b) for b in data.get("detailed_breakdown") or []],
            confidence_score=float(score) if score is not None else None,
            confidence_justification=data.get("confidence_justification"),
            justification=data.get("justification"),
        )


# =============================================================================
# ENTRIES
# =============================================================================

@dataclass
class ActionItem:
    id: str
    text: str
    completed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "text": self.text, "completed": self.completed}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionItem":
        return cls(id=data.get("id") or _new_id("action"), text=data.get("text", ""),
                   completed=bool(data.get("completed", False)))


@dataclass
class SyncDetails:
    synced_at: str
    target_system: str
    external_id: Optional[str] = None
    external_url: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced_at": self.synced_at,
            "target_system": self.target_system,
            "external_id": self.external_id,
            "external_url": self.external_url,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncDetails":
        return cls(
            synced_at=data.get("synced_at") or utc_now_iso(),
            target_system=data.get("target_system", ""),
            external_id=data.get("external_id"),
            external_url=data.get("external_url"),
            error_message=data.get("error_message"),
        )


@dataclass
class BillableEntry:
    id: str
    owner_id: str
    description: str
    hours: float
    matter: str
    rate: float
    status: EntryStatus
    date: str
    target_system: str
    email_ids: Optional[List[str]] = None
    auto_generated: bool = False
    is_archived: bool = False
    action_items: List[ActionItem] = field(default_factory=list)
    detailed_breakdown: List[str] = field(default_factory=list)
    sync_details: Optional[SyncDetails] = None
    source: str = "InvoLex"

    @property
    def amount(self) -> float:
        return round(self.hours * self.rate, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "description": self.description,
            "hours": self.hours,
            "matter": self.matter,
            "rate": self.rate,
            "status": self.status.value,
            "date": self.date,
            "target_system": self.target_system,
            "email_ids": list(self.email_ids) if self.email_ids is not None else None,
            "auto_generated": self.auto_generated,
            "is_archived": self.is_archived,
            "action_items": [a.to_dict() for a in self.action_items],
            "detailed_breakdown": list(self.detailed_breakdown),
            "sync_details": self.sync_details.to_dict() if self.sync_details else None,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BillableEntry":
        sync_details = data.get("sync_details")
        email_ids = data.get("email_ids")
        return cls(
            id=data["id"],
            owner_id=data.get("owner_id", ""),
            description=data.get("description", ""),
            hours=float(data.get("hours") or 0),
            matter=data.get("matter", ""),
            rate=float(data.get("rate") or 0),
            status=EntryStatus(data.get("status", EntryStatus.PENDING.value)),
            date=data.get("date") or utc_now_iso(),
            target_system=data.get("target_system", DEFAULT_PRACTICE_TOOL),
            email_ids=list(email_ids) if email_ids is not None else None,
            auto_generated=bool(data.get("auto_generated", False)),
            is_archived=bool(data.get("is_archived", False)),
            action_items=[ActionItem.from_dict(a) for a in data.get("action_items") or []],
            detailed_breakdown=list(data.get("detailed_breakdown") or []),
            sync_details=SyncDetails.from_dict(sync_details) if sync_details else None,
            source=data.get("source", "InvoLex"),
        )


@dataclass
class EntryForm:
    """User-editable entry data before it is stored."""
    description: str
    hours: Optional[float]
    matter: str
    email_ids: Optional[List[str]] = None
    action_items: List[str] = field(default_factory=list)
    detailed_breakdown: List[str] = field(default_factory=list)
    date: Optional[str] = None

    @classmethod
    def from_preview(cls, email_ids: List[str], preview: AIPreview, fallback_hours: float) -> "EntryForm":
        return cls(
            description=preview.description,
            hours=preview.suggested_hours or fallback_hours,
            matter=preview.suggested_matter,
            email_ids=list(email_ids),
            action_items=list(preview.action_items),
            detailed_breakdown=list(preview.detailed_breakdown),
        )


@dataclass
class SuggestedEntry:
    """Candidate entry that has not been stored yet."""
    email_ids: List[str]
    emails: List[Email]
    preview: AIPreview

    @property
    def key(self) -> str:
        return ",".join(self.email_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email_ids": list(self.email_ids),
            "emails": [e.to_dict() for e in self.emails],
            "preview": self.preview.to_dict(),
        }


# =============================================================================
# SETTINGS
# =============================================================================

@dataclass
class BillingSettings:
    owner_id: str
    active_integration: Optional[str] = DEFAULT_PRACTICE_TOOL
    autopilot_enabled: bool = AUTOPILOT_ENABLED
    auto_sync_threshold: float = AUTO_SYNC_THRESHOLD
    default_rate: float = DEFAULT_HOURLY_RATE
    personalization_enabled: bool = PERSONALIZATION_ENABLED

    def __post_init__(self):
        self.auto_sync_threshold = clamp_threshold(self.auto_sync_threshold)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "active_integration": self.active_integration,
            "autopilot_enabled": self.autopilot_enabled,
            "auto_sync_threshold": self.auto_sync_threshold,
            "default_rate": self.default_rate,
            "personalization_enabled": self.personalization_enabled,
        }
