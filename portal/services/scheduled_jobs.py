"""
Certification Portal
Scheduled Jobs.

Concrete job implementations that run on a schedule.

Jobs:
    - capa_overdue_scanner: Flags CAPAs past their due date and refreshes scores
    - metadata_sync_dispatch: Delivers queued identity metadata updates
    - audit_scheduler: Schedules routine audits for organizations that are due
"""

from __future__ import annotations

import logging
from typing import Any

from portal.services.audit_scheduling import get_organizations_needing_audit, schedule_audit
from portal.services.capa_service import mark_overdue_capas
from portal.services.metadata_sync import dispatch_pending_sync_messages
from portal.services.scheduler_service import register_job
from portal.utils.helpers import commit_or_raise

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: CAPA Overdue Scanner
# ═══════════════════════════════════════════════════════════════════════════

@register_job("capa_overdue_scanner")
def scan_overdue_capas(app) -> dict[str, Any]:
    """Mark unresolved CAPAs past their due date as OVERDUE."""
    results = mark_overdue_capas()
    logger.info("CAPA overdue scanner: %s", {k: v for k, v in results.items() if k != "capa_ids"})
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Identity Metadata Sync
# ═══════════════════════════════════════════════════════════════════════════

@register_job("metadata_sync_dispatch")
def dispatch_metadata_sync(app) -> dict[str, Any]:
    """Deliver pending identity metadata sync messages."""
    results = dispatch_pending_sync_messages()
    logger.info("Metadata sync dispatch: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 3: Routine Audit Scheduler
# ═══════════════════════════════════════════════════════════════════════════

@register_job("audit_scheduler")
def schedule_due_audits(app) -> dict[str, Any]:
    """Schedule routine audits for organizations whose audit is due."""
    results = {"organizations_due": 0, "audits_scheduled": 0, "audit_numbers": []}

    for org in get_organizations_needing_audit():
        results["organizations_due"] += 1
        audit = schedule_audit(org.id)
        results["audits_scheduled"] += 1
        results["audit_numbers"].append(audit.audit_number)

    commit_or_raise("audit_scheduler")
    logger.info("Audit scheduler: %d audit(s) scheduled", results["audits_scheduled"])
    return results
