"""
Usage Tracking
Owner: CC2
Workstream: W2P4

Usage counters are recomputed by an external batch job and appended per org.
This module records them and shapes them for the entitlements endpoint.
"""

from datetime import datetime
from typing import Dict, Any, Optional

from .events import utcnow


def usage_percentage(current, cap) -> float:
    """
    Percentage of a cap in use, capped at 100.

    Args:
        current: Current usage (None counts as 0)
        cap: The cap (None or <= 0 means unlimited)

    Returns:
        0 for unlimited caps, otherwise 0-100 rounded to one decimal
    """
    if cap is None or cap <= 0:
        return 0  # unlimited
    return min(100, round(((current or 0) / cap) * 100, 1))


def record_usage_counters(store, org_id: str, active_users: Optional[int] = None,
                          storage_gb: Optional[float] = None, messages_month: Optional[int] = None,
                          calculated_at: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Append a usage measurement for an org.

    Args:
        store: MemoryStore or PostgresStore
        org_id: The org identifier
        active_users: Active users over the last 30 days
        storage_gb: Storage used
        messages_month: Messages sent this month
        calculated_at: When the batch job measured (defaults to now)

    Returns:
        The stored row
    """
    with store.transaction() as unit:
        row = unit.insert_usage_counters(
            org_id, active_users, storage_gb, messages_month, calculated_at or utcnow()
        )
    print(f"[BILLING] Usage recorded: org={org_id}, active_users={active_users}", flush=True)
    return row


def build_usage_summary(resolved, enforcement) -> Dict[str, Any]:
    """
    Get full usage summary with caps, percentages and enforcement status.

    Args:
        resolved: ResolvedEntitlements
        enforcement: EnforcementResult for the same org

    Returns:
        Dictionary for the entitlements endpoint
    """
    caps = resolved.caps
    usage = resolved.usage
    summary = resolved.to_dict()
    summary['percentages'] = {
        'active_users': usage_percentage(usage['current_active_users'], caps.get('active_user_cap')),
        'storage': usage_percentage(usage['storage_gb_used'], caps.get('storage_gb_cap')),
        'messages': usage_percentage(usage['messages_this_month'], caps.get('messaging_cap')),
    }
    summary['enforcement'] = enforcement.to_dict()
    return summary
