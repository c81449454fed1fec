"""Filtering, sorting and display helpers shared by the admin and board pages."""
from datetime import datetime, timezone

CATEGORIES = [
    "Personal Items",
    "Electronics",
    "Documents",
    "School / Office Supplies",
    "Miscellaneous",
]

CONDITIONS = ["Brand New", "Used", "Slightly Used", "Damaged"]

# Approved lost reports read "Lost", approved found reports read "Unclaimed"
LOST_STATUSES = ["Pending", "Lost", "Claimed", "Returned", "Rejected"]
FOUND_STATUSES = ["Pending", "Unclaimed", "Claimed", "Returned", "Rejected"]
CLAIMED_STATUSES = ["Pending", "Unclaimed", "Claimed", "Returned"]

LISTING_FIELDS = [
    "reportAs", "category", "type", "brand", "color", "accessories",
    "condition", "serial", "image", "locationLost", "dateLost", "reporter",
    "contact", "locationFound", "dateFound", "foundBy", "storedAt", "notes",
    "status",
]

SEARCH_FIELDS = [
    "id", "type", "category", "brand", "model", "color", "accessories",
    "condition", "serial", "locationLost", "locationFound", "reporter",
    "foundBy", "storedAt", "contact", "status",
]

DATE_KEYS = ["dateLost", "dateFound", "dateClaimed", "postedAt", "datePosted", "date", "submissionDate"]
FALLBACK_DATE_KEYS = ["createdAt", "lastUpdated"]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
EMPTY = "—"


def status_options(kind, report_as=None):
    if kind == "claimed":
        return CLAIMED_STATUSES
    if (report_as or kind) == "lost":
        return LOST_STATUSES
    return FOUND_STATUSES


def parse_date(value):
    """Parse an ISO date or timestamp; naive values are taken as UTC. None if invalid."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def effective_date(item):
    for key in DATE_KEYS + FALLBACK_DATE_KEYS:
        if item.get(key):
            return parse_date(item[key]) or EPOCH
    return EPOCH


def format_date(value):
    parsed = value if isinstance(value, datetime) else parse_date(value)
    if parsed is None:
        return EMPTY
    return parsed.strftime("%Y-%m-%d")


def column_date(item):
    parsed = effective_date(item)
    return EMPTY if parsed == EPOCH else format_date(parsed)


def location(item):
    return item.get("locationLost") or item.get("locationFound") or EMPTY


def reporter_or_stored(item):
    return (item.get("reporter") or item.get("foundBy") or item.get("claimedBy")
            or item.get("storedAt") or EMPTY)


def search_text(item):
    return " ".join(str(item.get(key) or "") for key in SEARCH_FIELDS).lower()


def filter_listings(items, search="", category="all", status="all", sort="newest"):
    search = (search or "").strip().lower()
    category = category or "all"
    status = status or "all"

    result = []
    for item in items:
        if category != "all" and (item.get("category") or "").lower() != category.lower():
            continue
        if status != "all" and item.get("status") and item.get("status") != status:
            continue
        if search and search not in search_text(item):
            continue
        result.append(item)

    result.sort(key=effective_date, reverse=(sort != "oldest"))
    return result


def form_fields(form):
    """Known listing fields from a submitted form, stripped of surrounding whitespace."""
    fields = {}
    for key in LISTING_FIELDS:
        if key in form:
            fields[key] = (form.get(key) or "").strip()
    return fields
