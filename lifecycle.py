"""
Order, reservation and cart workflow rules.

Pure functions over plain documents (dicts as stored in MongoDB). The API
handlers in main.py load a document, run it through these rules and save it
back, so nothing here touches the database.
"""

import random
import string
import time
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from bson import ObjectId

ORDER_STATUSES = ("pending", "confirmed", "preparing", "ready", "completed", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")
RESERVATION_STATUSES = ("confirmed", "cancelled", "completed", "no-show")

CANCELLABLE_ORDER_STATUSES = frozenset({"pending", "confirmed"})

# Forward moves along pending -> confirmed -> preparing -> ready -> completed,
# cancellation only before preparation starts.
ORDER_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"confirmed", "preparing", "ready", "completed", "cancelled"},
    "confirmed": {"preparing", "ready", "completed", "cancelled"},
    "preparing": {"ready", "completed"},
    "ready": {"completed"},
    "completed": set(),
    "cancelled": set(),
}

RESERVATION_TRANSITIONS: Dict[str, Set[str]] = {
    "confirmed": {"completed", "cancelled", "no-show"},
    "completed": set(),
    "cancelled": set(),
    "no-show": set(),
}

_ID_ALPHABET = string.ascii_uppercase + string.digits
_rng = random.SystemRandom()


class WorkflowError(Exception):
    """Base class for rule violations; message is safe to show to clients."""


class InvalidStatus(WorkflowError):
    pass


class IllegalTransition(WorkflowError):
    pass


def _generate_id(prefix: str) -> str:
    suffix = "".join(_rng.choice(_ID_ALPHABET) for _ in range(9))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def generate_order_id() -> str:
    return _generate_id("ORD")


def generate_reservation_id() -> str:
    return _generate_id("RES")


def generate_feedback_id() -> str:
    return _generate_id("FB")


def _check_transition(current: str, new: str, statuses: Iterable[str],
                      table: Dict[str, Set[str]], strict: bool, kind: str) -> None:
    if new not in statuses:
        raise InvalidStatus("Invalid status")
    if not strict or current == new:
        return
    if new not in table.get(current, set()):
        raise IllegalTransition(f"Cannot move {kind} from '{current}' to '{new}'")


def check_order_transition(current: str, new: str, strict: bool = True) -> None:
    """Validate an order status change.

    The enum check always applies. Edge legality is only checked when
    ``strict`` is set; with it off any enum value is accepted.
    """
    _check_transition(current, new, ORDER_STATUSES, ORDER_TRANSITIONS, strict, "order")


def check_reservation_transition(current: str, new: str, strict: bool = True) -> None:
    _check_transition(current, new, RESERVATION_STATUSES, RESERVATION_TRANSITIONS, strict, "reservation")


def check_cancel_request(order: dict) -> None:
    if order.get("status") not in CANCELLABLE_ORDER_STATUSES:
        raise IllegalTransition("Cannot request cancellation for order in current status")
    if order.get("cancelRequested"):
        raise IllegalTransition("Cancellation already requested for this order")


def check_direct_cancel(order: dict) -> None:
    if order.get("status") not in CANCELLABLE_ORDER_STATUSES:
        raise IllegalTransition("Cannot cancel order in current status")


def check_reservation_editable(reservation: dict) -> None:
    if reservation.get("status") != "confirmed":
        raise IllegalTransition("Only confirmed reservations can be changed")


# --------------------- Cart ---------------------

def _same_line(entry: dict, product_id: str, size: Optional[str]) -> bool:
    return entry.get("productId") == product_id and entry.get("size") == size


def add_to_cart(cart: List[dict], item: dict, now: datetime) -> List[dict]:
    """Add ``item`` to ``cart`` in place and return the cart.

    A line with the same (productId, size) absorbs the quantity, anything else
    is appended as a new snapshot with its own sub-id.
    """
    quantity = item.get("quantity") or 1
    for entry in cart:
        if _same_line(entry, item["productId"], item.get("size")):
            entry["quantity"] = entry.get("quantity", 0) + quantity
            return cart

    cart.append({
        "_id": ObjectId(),
        "productId": item["productId"],
        "name": item.get("name"),
        "price": item.get("price"),
        "quantity": quantity,
        "size": item.get("size"),
        "temperature": item.get("temperature"),
        "image": item.get("image"),
        "addedAt": now,
    })
    return cart


def merge_cart(cart: List[dict], items: Iterable[dict], now: datetime) -> List[dict]:
    # Not idempotent: a second merge of the same items adds the quantities again.
    for item in items:
        add_to_cart(cart, item, now)
    return cart


def update_cart_quantity(cart: List[dict], item_id: str, quantity: int) -> bool:
    for entry in cart:
        if str(entry.get("_id")) == item_id:
            entry["quantity"] = quantity
            return True
    return False


def remove_from_cart(cart: List[dict], item_id: str) -> List[dict]:
    return [entry for entry in cart if str(entry.get("_id")) != item_id]


# --------------------- Reservations ---------------------

def table_occupancy(reservations: Iterable[dict], date: str) -> Dict[str, List[dict]]:
    """Map tableId -> same-day confirmed reservations holding that table."""
    occupied: Dict[str, List[dict]] = {}
    for r in reservations:
        if r.get("date") != date or r.get("status") != "confirmed" or not r.get("tableId"):
            continue
        occupied.setdefault(r["tableId"], []).append(r)
    for bookings in occupied.values():
        bookings.sort(key=lambda r: r.get("time") or "")
    return occupied


# --------------------- Login audit ---------------------

def parse_device(user_agent: Optional[str]) -> str:
    ua = user_agent or ""
    if "Android" in ua:
        return "Chrome on Android"
    if "iPhone" in ua or "iPad" in ua:
        return "Safari on iOS"

    if "Windows" in ua:
        platform = "Windows"
    elif "Mac" in ua:
        platform = "macOS"
    else:
        platform = "Linux"

    if "Firefox" in ua:
        return f"Firefox on {platform}"
    if "Chrome" in ua:
        return f"Chrome on {platform}"
    if "Safari" in ua:
        return "Safari on macOS"
    return "Unknown"
