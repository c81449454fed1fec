"""How a listing moves between the pending, lost, found and claimed collections.

Every operation mutates a loaded :class:`~lostfound_board.store.ListingStore`
and saves each collection it touched.
"""
import logging
from datetime import datetime, timezone

from .listings import CATEGORIES, status_options
from .store import (
    CLAIMED,
    FOUND,
    LOST,
    PENDING,
    PUBLIC_COLLECTIONS,
    detect_kind,
    ensure_pending_pid,
)

logger = logging.getLogger(__name__)

STATUS_PENDING = "Pending"
STATUS_LOST = "Lost"
STATUS_UNCLAIMED = "Unclaimed"
STATUS_CLAIMED = "Claimed"
STATUS_RETURNED = "Returned"
STATUS_REJECTED = "Rejected"

CLAIM_STATUSES = (STATUS_CLAIMED, STATUS_RETURNED)

# Fields only meaningful while a record sits in the claimed collection
CLAIM_ONLY_FIELDS = ("originalId", "dateClaimed", "claimedFrom")


class ListingNotFound(LookupError):
    pass


class ConfirmationMismatch(ValueError):
    pass


class InvalidListing(ValueError):
    pass


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def destination_kind(item) -> str:
    return FOUND if item.get("reportAs") == FOUND else LOST


def approved_status(kind) -> str:
    return STATUS_LOST if kind == LOST else STATUS_UNCLAIMED


def _claimed_by(item):
    return item.get("reporter") or item.get("foundBy") or "Admin"


def _claimed_from(item):
    return (item.get("storedAt") or item.get("locationFound")
            or item.get("locationLost") or "Security Office")


def _to_pending(store, record):
    pending = dict(record)
    pending.pop("id", None)
    pending.pop("_kind", None)
    pending["status"] = STATUS_PENDING
    pending["submissionDate"] = now_iso()
    ensure_pending_pid(pending)
    store[PENDING].append(pending)
    store.save(PENDING)
    return pending


def _pop_pending(store, pid):
    idx = store.pending_index(pid)
    if idx == -1:
        raise ListingNotFound(f"No pending listing {pid}")
    return store[PENDING].pop(idx)


def _pop_listing(store, kind, item_id):
    if kind not in PUBLIC_COLLECTIONS:
        raise ListingNotFound(f"Unknown collection {kind}")
    idx = store.index_of(kind, item_id)
    if idx == -1:
        raise ListingNotFound(f"No {kind} listing {item_id}")
    return idx, store[kind][idx]


def validate_fields(fields, kind=None, require_type=False):
    """Reject form input the board cannot file; returns the (possibly trimmed) fields."""
    report_as = fields.get("reportAs")
    if report_as not in (LOST, FOUND):
        raise InvalidListing("Choose whether the item was lost or found.")
    category = fields.get("category")
    if category and category not in CATEGORIES:
        raise InvalidListing(f"Unknown category {category!r}.")
    if kind is None and not category:
        raise InvalidListing("Please select a category.")
    if require_type and not (fields.get("type") or "").strip():
        raise InvalidListing("Please describe the item type.")
    status = fields.get("status")
    if status and status not in status_options(kind or report_as, report_as):
        if kind in (LOST, FOUND) and report_as != kind:
            # A status of the old kind; the move assigns the new kind's own
            del fields["status"]
            return fields
        raise InvalidListing(f"Status {status!r} is not allowed here.")
    return fields


def submit(store, fields):
    """New listing from either side of the board; it waits in pending for review."""
    item = dict(fields)
    pending = _to_pending(store, item)
    logger.info("Submitted pending listing %s (%s)", pending["_pid"], pending.get("reportAs") or LOST)
    return pending


def approve(store, pid, fields=None):
    item = _pop_pending(store, pid)
    if fields:
        item.update(fields)
    dest = destination_kind(item)
    stamp = now_iso()
    approved = dict(item)
    approved.pop("_pid", None)
    approved.pop("_kind", None)
    approved.update({
        "id": store.generate_id(dest),
        "status": approved_status(dest),
        "postedAt": stamp,
        "lastUpdated": stamp,
    })
    store[dest].append(approved)
    store.save(dest)
    store.save(PENDING)
    logger.info("Approved %s as %s %s", pid, dest, approved["id"])
    return dest, approved


def reject(store, pid):
    item = _pop_pending(store, pid)
    store.save(PENDING)
    logger.info("Rejected pending listing %s", pid)
    return item


def update_pending(store, pid, fields):
    """Edit before approving; the chosen status decides where the record goes."""
    idx = store.pending_index(pid)
    if idx == -1:
        raise ListingNotFound(f"No pending listing {pid}")
    merged = dict(store[PENDING][idx])
    merged.update(fields)
    status = fields.get("status")

    if not status or status == STATUS_PENDING:
        merged["status"] = STATUS_PENDING
        merged["lastUpdated"] = now_iso()
        store[PENDING][idx] = merged
        store.save(PENDING)
        logger.info("Updated pending listing %s", pid)
        return PENDING, merged

    if status == STATUS_REJECTED:
        return PENDING, reject(store, pid)

    if status in CLAIM_STATUSES:
        store[PENDING].pop(idx)
        assigned = store.generate_id(destination_kind(merged))
        stamp = now_iso()
        claimed = dict(merged)
        claimed.pop("_pid", None)
        claimed.pop("_kind", None)
        claimed.update({
            "id": f"C-{assigned}",
            "originalId": assigned,
            "status": status,
            "claimedBy": _claimed_by(merged),
            "claimedFrom": _claimed_from(merged),
            "dateClaimed": stamp,
            "postedAt": stamp,
            "lastUpdated": stamp,
        })
        store[CLAIMED].append(claimed)
        store.save(CLAIMED)
        store.save(PENDING)
        logger.info("Pending listing %s claimed directly as %s", pid, claimed["id"])
        return CLAIMED, claimed

    return approve(store, pid, fields)


def update_listing(store, kind, item_id, fields):
    """Update a lost or found record, moving it when its status or type changes."""
    if kind not in (LOST, FOUND):
        raise ListingNotFound(f"{kind} is not a lost/found collection")
    idx, current = _pop_listing(store, kind, item_id)
    updated = dict(current)
    updated.update(fields)
    updated["category"] = fields.get("category") or current.get("category")
    updated["status"] = fields.get("status") or current.get("status")
    updated["lastUpdated"] = now_iso()
    updated.pop("_kind", None)
    status = updated["status"]

    if status == STATUS_PENDING:
        store[kind].pop(idx)
        store.save(kind)
        pending = _to_pending(store, updated)
        logger.info("Moved %s %s back to pending as %s", kind, item_id, pending["_pid"])
        return PENDING, pending

    if status in CLAIM_STATUSES:
        store[kind].pop(idx)
        store.save(kind)
        claimed = dict(updated)
        claimed.update({
            "id": item_id if item_id.startswith("C-") else f"C-{item_id}",
            "originalId": item_id,
            "status": status,
            "claimedBy": _claimed_by(updated),
            "claimedFrom": _claimed_from(updated),
            "dateClaimed": now_iso(),
        })
        store[CLAIMED].append(claimed)
        store.save(CLAIMED)
        logger.info("Moved %s %s to claimed as %s", kind, item_id, claimed["id"])
        return CLAIMED, claimed

    new_kind = fields.get("reportAs")
    if new_kind in (LOST, FOUND) and new_kind != kind:
        store[kind].pop(idx)
        store.save(kind)
        updated["id"] = store.generate_id(new_kind)
        if status not in status_options(new_kind):
            updated["status"] = approved_status(new_kind)
        store[new_kind].append(updated)
        store.save(new_kind)
        logger.info("Moved %s %s to %s as %s", kind, item_id, new_kind, updated["id"])
        return new_kind, updated

    store[kind][idx] = updated
    store.save(kind)
    logger.info("Updated %s %s", kind, item_id)
    return kind, updated


def update_claimed(store, item_id, fields):
    idx, current = _pop_listing(store, CLAIMED, item_id)
    claimed = dict(current)
    claimed.update(fields)
    claimed["status"] = fields.get("status") or current.get("status")
    claimed["lastUpdated"] = now_iso()
    claimed.pop("_kind", None)
    status = claimed["status"]

    if status == STATUS_PENDING:
        store[CLAIMED].pop(idx)
        store.save(CLAIMED)
        for key in CLAIM_ONLY_FIELDS:
            claimed.pop(key, None)
        pending = _to_pending(store, claimed)
        logger.info("Moved claimed %s back to pending as %s", item_id, pending["_pid"])
        return PENDING, pending

    if status == STATUS_UNCLAIMED:
        store[CLAIMED].pop(idx)
        store.save(CLAIMED)
        original_id = claimed.get("originalId")
        dest = detect_kind(original_id)
        if dest not in (LOST, FOUND):
            dest = destination_kind(claimed)
        restored = dict(claimed)
        for key in CLAIM_ONLY_FIELDS + ("claimedBy",):
            restored.pop(key, None)
        restored["id"] = original_id if detect_kind(original_id) == dest else store.generate_id(dest)
        restored["status"] = approved_status(dest)
        store[dest].append(restored)
        store.save(dest)
        logger.info("Restored claimed %s to %s as %s", item_id, dest, restored["id"])
        return dest, restored

    store[CLAIMED][idx] = claimed
    store.save(CLAIMED)
    logger.info("Updated claimed %s", item_id)
    return CLAIMED, claimed


def update(store, kind, key, fields):
    """Dispatch an edit by the collection the record currently lives in."""
    if kind == PENDING:
        return update_pending(store, key, fields)
    if kind == CLAIMED:
        return update_claimed(store, key, fields)
    return update_listing(store, kind, key, fields)


def delete(store, kind, item_id, confirmation):
    typed = (confirmation or "").strip()
    if typed != item_id:
        raise ConfirmationMismatch("ID mismatch. Deletion cancelled.")
    idx, item = _pop_listing(store, kind, item_id)
    store[kind].pop(idx)
    store.save(kind)
    logger.info("Deleted %s %s", kind, item_id)
    return item
