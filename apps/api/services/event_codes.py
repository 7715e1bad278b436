"""Categorized event codes used to tag audit log entries.

Codes take the form ``PREFIX-NNNN``:

- GEN: workflow and code generation
- CVT: workflow conversion
- DBG: workflow debugging
- SEC: security events (threats, blocks, bad webhook signatures)
- CRD: credits, subscriptions and billing
- N8N: n8n integration
- SYS: system events
- USR: user actions

The numeric band carries the outcome: 1000s success, 2000s error or warning,
3000s security.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

CATEGORIES = ("success", "warning", "error", "security", "system")
SEVERITIES = ("low", "medium", "high", "critical")

CATEGORY_COLORS = {
    "success": "green",
    "warning": "yellow",
    "error": "red",
    "security": "purple",
    "system": "blue",
}


@dataclass(frozen=True)
class EventCode:
    code: str
    category: str
    description: str
    severity: str
    action_required: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _codes(*entries: EventCode) -> Dict[str, EventCode]:
    return {entry.code: entry for entry in entries}


EVENT_CODES: Dict[str, EventCode] = _codes(
    # Generation
    EventCode("GEN-1000", "success", "Workflow generation completed successfully", "low"),
    EventCode("GEN-1001", "success", "Code generation completed successfully", "low"),
    EventCode(
        "GEN-2001", "error", "Workflow generation failed - API timeout", "medium",
        "Retry generation. If persists, check API status.",
    ),
    EventCode(
        "GEN-2002", "error", "Workflow generation failed - Invalid prompt", "low",
        "User should revise prompt and try again.",
    ),
    EventCode(
        "GEN-2003", "error", "Workflow generation failed - Token limit exceeded", "medium",
        "User should simplify prompt or break into smaller workflows.",
    ),
    EventCode(
        "GEN-2004", "error", "Code generation failed - API error", "medium",
        "Check model API status and retry.",
    ),
    # Conversion
    EventCode("CVT-1000", "success", "Workflow conversion completed successfully", "low"),
    EventCode(
        "CVT-2001", "error", "Conversion failed - Unsupported platform", "medium",
        "Check platform compatibility.",
    ),
    EventCode(
        "CVT-2002", "error", "Conversion failed - Malformed workflow JSON", "medium",
        "Validate source workflow JSON format.",
    ),
    # Debug
    EventCode("DBG-1000", "success", "Workflow debug completed successfully", "low"),
    EventCode(
        "DBG-2001", "error", "Debug failed - Unable to parse workflow", "medium",
        "Check workflow JSON syntax.",
    ),
    # Security
    EventCode(
        "SEC-3001", "security", "XSS attempt detected and blocked", "critical",
        "Review user activity. Consider suspension if repeated.",
    ),
    EventCode(
        "SEC-3002", "security", "DoS attempt detected - Oversized file upload", "high",
        "Monitor user for abuse patterns.",
    ),
    EventCode(
        "SEC-3003", "security", "Prompt injection attempt detected", "high",
        "Review prompt content. May indicate AI abuse.",
    ),
    EventCode(
        "SEC-3004", "security", "Malicious file upload blocked", "critical",
        "Review file content. Consider immediate suspension.",
    ),
    EventCode(
        "SEC-3005", "security", "Suspicious activity pattern detected", "medium",
        "Monitor for automated bot behavior.",
    ),
    EventCode(
        "SEC-3006", "security", "Multiple failed login attempts", "medium",
        "Possible brute force. Enable 2FA.",
    ),
    EventCode(
        "SEC-3007", "security", "Rate limit exceeded", "medium",
        "User exceeding API limits. May be bot.",
    ),
    EventCode(
        "SEC-3008", "security", "Unethical prompt content detected", "high",
        "Review prompt. May violate ToS.",
    ),
    EventCode(
        "SEC-3009", "security", "Webhook signature verification failed", "high",
        "Check STRIPE_WEBHOOK_SECRET and the sender of the request.",
    ),
    # Credits and billing
    EventCode("CRD-1000", "success", "Credits deducted successfully", "low"),
    EventCode("CRD-1001", "success", "Credits refunded successfully", "low"),
    EventCode("CRD-1002", "success", "Subscription activated after checkout", "low"),
    EventCode("CRD-1003", "success", "Subscription credits renewed", "low"),
    EventCode("CRD-1004", "success", "Subscription canceled and reset to free", "low"),
    EventCode("CRD-1005", "success", "Checkout session initiated", "low"),
    EventCode("CRD-1006", "success", "Subscription status updated", "low"),
    EventCode(
        "CRD-2001", "warning", "Insufficient credits for operation", "low",
        "User needs to purchase more credits.",
    ),
    EventCode(
        "CRD-2002", "error", "Credit deduction failed - Database error", "high",
        "Check database connection. May require manual credit adjustment.",
    ),
    EventCode(
        "CRD-2003", "warning", "Credits deducted but operation failed", "medium",
        "May require refund. Review transaction.",
    ),
    EventCode(
        "CRD-2004", "warning", "Subscription payment failed", "medium",
        "Subscription is past due. User should update payment method.",
    ),
    EventCode(
        "CRD-2005", "error", "Checkout session could not be created", "medium",
        "Check Stripe configuration and price ids.",
    ),
    EventCode(
        "CRD-2006", "warning", "Billing webhook skipped - missing or unknown metadata", "medium",
        "Check user_id and plan_id metadata on the Stripe checkout session or subscription.",
    ),
    EventCode(
        "CRD-2007", "error", "Billing webhook processing failed", "high",
        "Stripe will retry delivery. Check logs for the event id.",
    ),
    # n8n
    EventCode("N8N-1000", "success", "Workflow pushed to n8n successfully", "low"),
    EventCode("N8N-1001", "success", "n8n connection test successful", "low"),
    EventCode(
        "N8N-2001", "error", "n8n push failed - Authentication error", "medium",
        "User needs to check API key.",
    ),
    EventCode(
        "N8N-2002", "error", "n8n push failed - Network error", "medium",
        "Check n8n instance URL and connectivity.",
    ),
    EventCode(
        "N8N-2003", "error", "n8n connection test failed", "low",
        "User needs to update connection settings.",
    ),
    # System
    EventCode("SYS-1000", "system", "User logged in successfully", "low"),
    EventCode("SYS-1001", "system", "User logged out", "low"),
    EventCode(
        "SYS-2001", "error", "Database connection error", "critical",
        "Check database status immediately.",
    ),
    EventCode(
        "SYS-2002", "error", "API service unavailable", "high",
        "Check upstream API status.",
    ),
    # User actions
    EventCode("USR-1000", "success", "Workflow saved to history", "low"),
    EventCode("USR-1001", "success", "Workflow downloaded", "low"),
    EventCode("USR-1002", "success", "Settings updated", "low"),
    EventCode(
        "USR-2001", "warning", "Bulk copy/paste detected", "low",
        "May indicate bot behavior. Monitor for patterns.",
    ),
    EventCode(
        "USR-2002", "warning", "Rapid consecutive actions detected", "low",
        "Possible automation. Check for bot activity.",
    ),
)

# First matching namespace wins.
_ACTION_PREFIXES = (
    ("workflow_generation", "GEN"),
    ("workflow_conversion", "CVT"),
    ("workflow_debug", "DBG"),
    ("n8n", "N8N"),
    ("credit", "CRD"),
    ("subscription", "CRD"),
    ("checkout", "CRD"),
    ("payment", "CRD"),
    ("file_upload", "SEC"),
    ("webhook_signature", "SEC"),
    ("webhook", "CRD"),
)


def get_event_code(code: str) -> Optional[EventCode]:
    return EVENT_CODES.get(code)


def get_event_codes_by_category(category: str) -> List[EventCode]:
    return [event for event in EVENT_CODES.values() if event.category == category]


def get_event_codes_by_severity(severity: str) -> List[EventCode]:
    return [event for event in EVENT_CODES.values() if event.severity == severity]


def event_prefix(action_type: str) -> str:
    for namespace, prefix in _ACTION_PREFIXES:
        if action_type.startswith(namespace):
            return prefix
    return "USR"


def generate_event_id(action_type: str, action_status: str, error_type: Optional[str] = None) -> str:
    """Derive a generic event code from an action's namespace and outcome.

    Success always maps to ``-1000``. Otherwise a blocked action, or an error
    type mentioning xss or injection, maps to the ``-3001`` security band;
    failures and warnings map to ``-2001``; anything else is ``-0000``.
    """
    prefix = event_prefix(action_type)
    lowered_error = (error_type or "").lower()

    if action_status == "success":
        return f"{prefix}-1000"
    if action_status == "blocked" or "xss" in lowered_error or "injection" in lowered_error:
        return f"{prefix}-3001"
    if action_status in ("failure", "warning"):
        return f"{prefix}-2001"
    return f"{prefix}-0000"


def format_event_code(code: str) -> Dict[str, str]:
    event = get_event_code(code)
    if event is None:
        return {"badge": code, "color": "gray", "tooltip": "Unknown event"}

    tooltip = event.description
    if event.action_required:
        tooltip = f"{tooltip}\n\nAction: {event.action_required}"
    return {"badge": event.code, "color": CATEGORY_COLORS[event.category], "tooltip": tooltip}


def search_event_codes(keyword: str) -> List[EventCode]:
    needle = (keyword or "").lower()
    return [
        event
        for event in EVENT_CODES.values()
        if needle in event.code.lower()
        or needle in event.description.lower()
        or needle in (event.action_required or "").lower()
    ]
