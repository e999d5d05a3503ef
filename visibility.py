"""
Read-time filters: which content rows, announcements and users a request sees.
"""

import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING
from pymongo.collection import Collection

from database import clean, now, oid

COHORT_FIELDS = ("branch", "year", "semester")
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100


def build_visibility_filter(actor: dict, query: Dict[str, Any]) -> Dict[str, Any]:
    """Filter for Notes/Syllabus/Video/PYQ listings.

    Students default to their own branch/year/semester; any of those given
    explicitly in the query wins. Staff only get what they ask for. Subject
    is always additive. Verification state is not part of visibility.
    """
    flt: Dict[str, Any] = {}
    for field in COHORT_FIELDS:
        value = query.get(field)
        if value not in (None, ""):
            flt[field] = value
        elif actor.get("role") == "student" and actor.get(field) is not None:
            flt[field] = actor[field]
    if query.get("subject"):
        flt["subject"] = oid(query["subject"])
    return flt


# ----------------------
# Pagination, sorting, field selection
# ----------------------
def page_params(page: Optional[int], limit: Optional[int], default_limit: int = DEFAULT_PAGE_SIZE) -> Tuple[int, int, int]:
    page = page if page and page > 0 else 1
    limit = limit if limit and limit > 0 else default_limit
    limit = min(limit, MAX_PAGE_SIZE)
    return page, limit, (page - 1) * limit


def sort_spec(sort: Optional[str], default: str = "-created_at") -> List[Tuple[str, int]]:
    """``"-views,title"`` -> ``[("views", -1), ("title", 1)]``"""
    spec = []
    for field in (sort or default).split(","):
        field = field.strip()
        if not field:
            continue
        if field.startswith("-"):
            spec.append((field[1:], DESCENDING))
        else:
            spec.append((field.lstrip("+"), ASCENDING))
    return spec or [("created_at", DESCENDING)]


def projection(select: Optional[str]) -> Optional[Dict[str, int]]:
    if not select:
        return None
    fields = [f.strip() for f in select.split(",") if f.strip()]
    return {f: 1 for f in fields} or None


def pagination_meta(total: int, page: int, limit: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": total_pages,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


def run_listing(
    collection: Collection,
    flt: Dict[str, Any],
    page: Optional[int] = None,
    limit: Optional[int] = None,
    sort: Optional[str] = None,
    select: Optional[str] = None,
    default_limit: int = DEFAULT_PAGE_SIZE,
    hidden: Tuple[str, ...] = (),
) -> Dict[str, Any]:
    page, limit, skip = page_params(page, limit, default_limit)
    cursor = collection.find(flt, projection(select)).sort(sort_spec(sort)).skip(skip).limit(limit)
    docs = []
    for doc in cursor:
        for field in hidden:
            doc.pop(field, None)
        docs.append(clean(doc))
    total = collection.count_documents(flt)
    return {"count": len(docs), "pagination": pagination_meta(total, page, limit), "data": docs}


# ----------------------
# Audiences
# ----------------------
def active_announcement_filter(at: Optional[datetime] = None) -> Dict[str, Any]:
    """Expired or deactivated announcements stay in the collection but are never listed."""
    at = at or now()
    return {"is_active": True, "$or": [{"expires_at": None}, {"expires_at": {"$gt": at}}]}


def announcement_visibility_filter(actor: dict, at: Optional[datetime] = None) -> Dict[str, Any]:
    flt = active_announcement_filter(at)
    if actor.get("role") == "admin":
        return flt
    clauses = [{"target_audience.role": {"$in": ["All", actor.get("role")]}}]
    if actor.get("role") == "student":
        for field in COHORT_FIELDS:
            clauses.append({f"target_audience.{field}": {"$in": ["All", str(actor.get(field))]}})
    flt["$and"] = clauses
    return flt


def audience_user_filter(target_audience: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Translate an announcement audience into a user query."""
    flt: Dict[str, Any] = {}
    audience = target_audience or {}
    if audience.get("branch") not in (None, "All"):
        flt["branch"] = audience["branch"]
    if audience.get("year") not in (None, "All"):
        flt["year"] = int(audience["year"])
    if audience.get("semester") not in (None, "All"):
        flt["semester"] = int(audience["semester"])
    if audience.get("role") not in (None, "All"):
        flt["role"] = audience["role"]
    return flt
