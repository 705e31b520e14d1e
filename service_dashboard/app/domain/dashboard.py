"""
Dashboard aggregation.

Reads project, assignment and EBA rows for the caller's scope and folds them
into the organizing dashboard summary. The aggregation helpers are pure so
they can be exercised without a database.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from shared.logging import get_logger
from ..adapters.supabase_client import QueryBuilder, QueryResult, SupabaseClient, SupabaseError
from .projects import resolve_patch_projects, split_ids


logger = get_logger("dashboard.aggregation")

CORE_TRADE_CODES = {
    "demolition": ("demolition",),
    "piling": ("piling",),
    "concreting": ("concrete", "concreting"),
    "formwork": ("form_work", "formwork"),
    "scaffold": ("scaffolding", "scaffold"),
    "cranes": ("tower_crane", "mobile_crane", "crane", "cranes"),
}

PROJECT_BUCKETS = [
    "active_construction",
    "active_pre_construction",
    "potential_construction",
    "potential_pre_construction",
    "potential_future",
    "potential_archived",
    "excluded_construction",
    "excluded_pre_construction",
    "excluded_future",
    "excluded_archived",
]

ACTIVE_CONSTRUCTION_SELECT = """
    project_id,
    employer_id,
    assignment_type,
    estimated_worker_count,
    assigned_worker_count,
    organiser_worker_count,
    delegate_type,
    is_hsr,
    is_hsr_chair_delegate,
    has_full_health_and_safety_committee,
    contractor_role_types(code),
    trade_types(code),
    employers!inner(id, enterprise_agreement_status, company_eba_records(id, fwc_certified_date))
"""

PRE_CONSTRUCTION_SELECT = """
    project_id,
    employer_id,
    assignment_type,
    estimated_worker_count,
    assigned_worker_count,
    organiser_worker_count,
    employers!inner(id, company_eba_records(id, fwc_certified_date))
"""


@dataclass
class DashboardFilters:
    tier: Optional[str] = None
    stage: Optional[str] = None
    universe: Optional[str] = None
    patch_ids: Optional[List[str]] = None

    @classmethod
    def from_query(cls, query) -> "DashboardFilters":
        return cls(
            tier=query.get("tier") or None,
            stage=query.get("stage") or None,
            universe=query.get("universe") or None,
            patch_ids=split_ids(query.get("patchIds")) or None,
        )

    def cache_params(self) -> Dict[str, Any]:
        return {
            "tier": self.tier,
            "stage": self.stage,
            "universe": self.universe,
            "patchIds": self.patch_ids,
        }


def map_trade_code_to_core(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    normalized = code.lower()
    for key, codes in CORE_TRADE_CODES.items():
        if normalized in codes:
            return key
    return None


def _employer(raw: Any) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    if isinstance(raw, list):
        return raw[0] if raw else None
    return raw


def _eba_records(assignment: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
    employer = _employer(assignment.get("employers"))
    records = employer.get("company_eba_records") if employer else None
    return records if isinstance(records, list) else None


def _has_certified_eba(assignment: Dict[str, Any]) -> bool:
    records = _eba_records(assignment)
    return bool(records) and any((record or {}).get("fwc_certified_date") for record in records)


def employer_has_active_eba(employer: Optional[Dict[str, Any]]) -> bool:
    if not employer:
        return False
    if employer.get("enterprise_agreement_status") is True:
        return True
    records = employer.get("company_eba_records")
    if isinstance(records, list):
        return any((record or {}).get("fwc_certified_date") for record in records)
    return False


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _average(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0


def _percentage(part: int, whole: int) -> float:
    return (part / whole) * 100 if whole > 0 else 0


def count_projects(projects: List[Dict[str, Any]]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for project in projects:
        key = f"{project.get('organising_universe') or 'excluded'}_{project.get('stage_class') or 'archived'}"
        counts[key] = counts.get(key, 0) + 1

    result = {bucket: counts.get(bucket, 0) for bucket in PROJECT_BUCKETS}
    result["total"] = len(projects)
    return result


def worker_averages(assignments: Iterable[Dict[str, Any]]) -> Dict[str, float]:
    """Average per project first, then across projects."""
    per_project: Dict[str, Dict[str, List[float]]] = {}
    for assignment in assignments:
        entry = per_project.setdefault(
            assignment.get("project_id"),
            {"estimated": [], "assigned": [], "members": []}
        )
        if _is_number(assignment.get("estimated_worker_count")):
            entry["estimated"].append(assignment["estimated_worker_count"])
        if _is_number(assignment.get("assigned_worker_count")):
            entry["assigned"].append(assignment["assigned_worker_count"])
        if _is_number(assignment.get("organiser_worker_count")):
            entry["members"].append(assignment["organiser_worker_count"])

    return {
        "avg_estimated_workers": _average([_average(v["estimated"]) for v in per_project.values()]),
        "avg_assigned_workers": _average([_average(v["assigned"]) for v in per_project.values()]),
        "avg_members": _average([_average(v["members"]) for v in per_project.values()]),
    }


def _empty_core_counts() -> Dict[str, int]:
    return {key: 0 for key in CORE_TRADE_CODES}


def core_trade_coverage(assignments: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, int]]:
    """Distinct employers per core trade, summed over projects."""
    employers: Dict[str, Dict[str, Set[str]]] = {}
    eba_employers: Dict[str, Dict[str, Set[str]]] = {}

    for assignment in assignments:
        if assignment.get("assignment_type") != "trade_work":
            continue
        core_key = map_trade_code_to_core((assignment.get("trade_types") or {}).get("code"))
        if not core_key:
            continue

        project_id = assignment.get("project_id")
        employer_id = assignment.get("employer_id")
        employers.setdefault(project_id, {}).setdefault(core_key, set()).add(employer_id)
        if employer_has_active_eba(_employer(assignment.get("employers"))):
            eba_employers.setdefault(project_id, {}).setdefault(core_key, set()).add(employer_id)

    totals = _empty_core_counts()
    eba_totals = _empty_core_counts()
    for sets in employers.values():
        for key, ids in sets.items():
            totals[key] += len(ids)
    for sets in eba_employers.values():
        for key, ids in sets.items():
            eba_totals[key] += len(ids)

    return {"core_trades": totals, "core_trades_eba": eba_totals}


def summarize_active_construction(assignments: List[Dict[str, Any]]) -> Dict[str, Any]:
    builders = {a.get("employer_id") for a in assignments}
    eba_builders = {a.get("employer_id") for a in assignments if _eba_records(a)}

    employer_rows = [a for a in assignments if a.get("assignment_type") == "employer"]
    employers = {a.get("employer_id") for a in employer_rows}
    eba_employers = {a.get("employer_id") for a in employer_rows if _has_certified_eba(a)}

    summary: Dict[str, Any] = {
        "total_builders": len(builders),
        "eba_builders": len(eba_builders),
        "eba_builder_percentage": _percentage(len(eba_builders), len(builders)),
        "total_employers": len(employers),
        "eba_employers": len(eba_employers),
        "eba_employer_percentage": _percentage(len(eba_employers), len(employers)),
    }
    summary.update(core_trade_coverage(assignments))
    # These count assignments, not distinct projects.
    summary.update({
        "projects_with_site_delegates": sum(1 for a in assignments if a.get("delegate_type") == "site_delegate"),
        "projects_with_company_delegates": sum(1 for a in assignments if a.get("delegate_type") == "company_delegate"),
        "projects_with_hsrs": sum(1 for a in assignments if a.get("is_hsr")),
        "projects_with_hsr_chair_delegate": sum(1 for a in assignments if a.get("is_hsr_chair_delegate")),
        "projects_with_full_hs_committee": sum(
            1 for a in assignments if a.get("has_full_health_and_safety_committee")
        ),
    })
    summary.update(worker_averages(assignments))
    return summary


def summarize_pre_construction(assignments: List[Dict[str, Any]]) -> Dict[str, Any]:
    contractor_rows = [a for a in assignments if a.get("assignment_type") == "contractor_role"]
    builders = {a.get("employer_id") for a in contractor_rows}
    eba_builders = {a.get("employer_id") for a in contractor_rows if _has_certified_eba(a)}

    employer_rows = [a for a in assignments if a.get("assignment_type") == "employer"]
    employers = {a.get("employer_id") for a in employer_rows}
    eba_employers = {a.get("employer_id") for a in employer_rows if _has_certified_eba(a)}

    summary: Dict[str, Any] = {
        "total_builders": len(builders),
        "eba_builders": len(eba_builders),
        "eba_builder_percentage": _percentage(len(eba_builders), len(builders)),
        "total_employers": len(employers),
        "eba_employers": len(eba_employers),
        "eba_employer_percentage": _percentage(len(eba_employers), len(employers)),
    }
    summary.update(worker_averages(assignments))
    return summary


def _parse_date(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def summarize_eba_expiry(rows: Iterable[Dict[str, Any]], now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or datetime.now(timezone.utc)
    six_weeks = now + timedelta(weeks=6)
    three_months = now + timedelta(days=90)
    six_months = now + timedelta(days=180)

    expiry = {
        "expired": 0,
        "expiring6Weeks": 0,
        "expiring3Months": 0,
        "expiring6Months": 0,
        "certified": 0,
        "signed": 0,
        "lodged": 0,
    }
    for row in rows:
        if row.get("fwc_certified_date"):
            expiry["certified"] += 1
        if row.get("date_eba_signed"):
            expiry["signed"] += 1
        if row.get("eba_lodged_fwc"):
            expiry["lodged"] += 1

        nominal = row.get("nominal_expiry_date")
        expires = _parse_date(nominal) if nominal else None
        if expires is None:
            continue
        if expires < now:
            expiry["expired"] += 1
        elif expires <= six_weeks:
            expiry["expiring6Weeks"] += 1
        elif expires <= three_months:
            expiry["expiring3Months"] += 1
        elif expires <= six_months:
            expiry["expiring6Months"] += 1

    return expiry


def average_member_density(employer_analytics: Iterable[Dict[str, Any]]) -> float:
    mapped = [
        row for row in employer_analytics
        if (row.get("estimated_worker_count") or 0) > 0 and (row.get("current_worker_count") or 0) > 0
    ]
    return _average([row.get("member_density_percent") or 0 for row in mapped])


async def _secondary_read(query: QueryBuilder, source: str) -> QueryResult:
    """Execute a supporting read; a failure degrades to an empty result."""
    try:
        return await query.execute()
    except SupabaseError as e:
        logger.warning(
            "Dashboard query failed, using empty result",
            source=source,
            status_code=e.status_code,
            error=str(e),
        )
        return QueryResult(data=[], count=0)


async def _count(client: SupabaseClient, table: str, **eq) -> int:
    query = client.table(table).select("*", count="exact", head=True)
    for column, value in eq.items():
        query = query.eq(column, value)
    result = await _secondary_read(query, table)
    return result.count or 0


async def _global_totals(client: SupabaseClient) -> Dict[str, Any]:
    (
        total_workers,
        total_employers,
        total_sites,
        total_activities,
        total_ebas,
        member_count,
        analytics,
    ) = await asyncio.gather(
        _count(client, "workers"),
        _count(client, "employers"),
        _count(client, "job_sites"),
        _count(client, "union_activities"),
        _count(client, "company_eba_records"),
        _count(client, "workers", union_membership_status="member"),
        _secondary_read(client.table("employer_analytics").select("*"), "employer_analytics"),
    )

    return {
        "totalWorkers": total_workers,
        "totalEmployers": total_employers,
        "totalSites": total_sites,
        "totalActivities": total_activities,
        "totalEbas": total_ebas,
        "memberCount": member_count,
        "ebaPercentage": _percentage(total_ebas, total_employers),
        "avgMemberDensity": average_member_density(analytics.data or []),
    }


async def build_dashboard(
    client: SupabaseClient,
    filters: DashboardFilters,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Run the dashboard queries for filters and aggregate the results."""
    scoped_ids: Optional[List[str]] = None
    if filters.patch_ids:
        scope = await resolve_patch_projects(client, filters.patch_ids)
        scoped_ids = scope.project_ids

    query = client.table("projects").select("id, organising_universe, stage_class, tier")
    if scoped_ids:
        query = query.in_("id", scoped_ids)
    if filters.tier and filters.tier != "all":
        query = query.eq("tier", filters.tier)
    if filters.universe and filters.universe != "all":
        query = query.eq("organising_universe", filters.universe)
    if filters.stage and filters.stage != "all":
        query = query.eq("stage_class", filters.stage)
    projects = (await query.execute()).data or []

    active_ids = [
        p["id"] for p in projects
        if p.get("organising_universe") == "active" and p.get("stage_class") == "construction"
    ]
    pre_construction_ids = [
        p["id"] for p in projects
        if p.get("organising_universe") == "active" and p.get("stage_class") == "pre_construction"
    ]

    active_construction = summarize_active_construction([])
    active_construction["financial_audit_activities"] = 0
    if active_ids:
        assignments = await _secondary_read(
            client.table("project_assignments")
            .select(ACTIVE_CONSTRUCTION_SELECT)
            .in_("project_id", active_ids),
            "project_assignments",
        )
        active_construction = summarize_active_construction(assignments.data or [])
        audits = await _secondary_read(
            client.table("union_activities")
            .select("*", count="exact", head=True)
            .eq("activity_type", "financial_audit")
            .in_("project_id", active_ids),
            "union_activities",
        )
        active_construction["financial_audit_activities"] = audits.count or 0
    active_construction["total_projects"] = len(active_ids)

    pre_construction = summarize_pre_construction([])
    if pre_construction_ids:
        assignments = await _secondary_read(
            client.table("project_assignments")
            .select(PRE_CONSTRUCTION_SELECT)
            .in_("project_id", pre_construction_ids),
            "project_assignments",
        )
        pre_construction = summarize_pre_construction(assignments.data or [])
    pre_construction["total_projects"] = len(pre_construction_ids)

    totals = await _global_totals(client)
    eba_rows = await _secondary_read(
        client.table("company_eba_records")
        .select("nominal_expiry_date, fwc_certified_date, date_eba_signed, eba_lodged_fwc"),
        "company_eba_records",
    )

    logger.debug(
        "Dashboard aggregated",
        projects=len(projects),
        active_construction=len(active_ids),
        active_pre_construction=len(pre_construction_ids),
    )

    return {
        "project_counts": count_projects(projects),
        "active_construction": active_construction,
        "active_pre_construction": pre_construction,
        "projects": [],
        "errors": [],
        "totals": totals,
        "ebaExpiry": summarize_eba_expiry(eba_rows.data or [], now),
        "debug": {"cacheHit": False},
    }
