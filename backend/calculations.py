"""Split/allocation engine for shared bills.

``compute_totals`` apportions item costs to claimants and spreads tax, service
and tip over participants in proportion to their subtotal. ``finalize_bill``
runs it exactly once per bill and freezes the result in the store.
"""

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List

import store
from errors import AlreadyFinalized, InvalidState, InvariantViolation, NotFound
from models import FROZEN_STATUSES, BillSnapshot, BillStatus, FinalTotal, ParticipantTotal

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if value is None:
        return ZERO
    try:
        # str() first so floats keep their shortest repr instead of binary noise.
        return Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Not a decimal amount: {value!r}") from exc


def round_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(value: Any) -> str:
    return format(to_decimal(value), "f")


def split_evenly(amount: Decimal, parts: int) -> Decimal:
    if parts <= 0:
        return ZERO
    return amount / parts


def percentage_of(amount: Decimal, percentage: Decimal) -> Decimal:
    return amount * percentage / HUNDRED


def proportional_share(part: Decimal, whole: Decimal, amount: Decimal) -> Decimal:
    if whole == 0:
        return ZERO
    return part * amount / whole


def compute_totals(bill: BillSnapshot) -> List[ParticipantTotal]:
    """Return one provisional total per participant, in participant order.

    Unclaimed items are charged to the payer so that subtotals always add up to
    the item total. Each claimant of an item gets an equal, unrounded share of
    its total price. Nothing is rounded here.
    """
    if not bill.participants:
        # Nobody to charge: degrade to empty output, even when items exist.
        return []
    subtotals: Dict[str, Decimal] = {p.id: ZERO for p in bill.participants}
    payer = bill.payer()

    for item in bill.items:
        price = to_decimal(item.total_price)
        claimants = list(dict.fromkeys(item.claimed_by))
        if not claimants:
            if payer is None:
                raise InvariantViolation(f"Bill {bill.id} has no payer to absorb unclaimed item {item.id}")
            subtotals[payer.id] += price
            continue
        share = split_evenly(price, len(claimants))
        for participant_id in claimants:
            if participant_id not in subtotals:
                raise InvariantViolation(f"Item {item.id} is claimed by unknown participant {participant_id}")
            subtotals[participant_id] += share

    total_subtotal = sum(subtotals.values(), ZERO)
    # Tax and service are computed once on the bill, then apportioned.
    tax_amount = percentage_of(total_subtotal, to_decimal(bill.tax_percentage))
    service_amount = percentage_of(total_subtotal, to_decimal(bill.service_percentage))
    tip_amount = to_decimal(bill.tip_amount)

    totals: List[ParticipantTotal] = []
    for participant in bill.participants:
        subtotal = subtotals[participant.id]
        tax_share = proportional_share(subtotal, total_subtotal, tax_amount)
        service_share = proportional_share(subtotal, total_subtotal, service_amount)
        tip_share = proportional_share(subtotal, total_subtotal, tip_amount)
        totals.append(
            ParticipantTotal(
                participant_id=participant.id,
                display_name=participant.display_name,
                subtotal=subtotal,
                tax_share=tax_share,
                service_share=service_share,
                tip_share=tip_share,
                total=subtotal + tax_share + service_share + tip_share,
            )
        )
    return totals


def finalize_bill(bill_id: str) -> List[FinalTotal]:
    """Freeze the bill's totals. Runs the calculator once, inside one write transaction.

    ``BEGIN IMMEDIATE`` takes sqlite's write lock before the status is read, so
    of two concurrent calls the second one sees FINALIZED and fails.
    """
    with store.db_conn(immediate=True) as conn:
        bill = store.fetch_bill(conn, bill_id)
        if not bill:
            raise NotFound("Bill not found")
        status = BillStatus(bill["status"])
        if status == BillStatus.FINALIZED:
            raise AlreadyFinalized()
        if status == BillStatus.ARCHIVED:
            raise InvalidState("Cannot finalize an archived bill")

        snapshot = store.load_bill_snapshot(conn, bill_id)
        totals = compute_totals(snapshot)
        finalized_at = datetime.now(timezone.utc)
        store.write_final_totals(conn, bill_id, totals, finalized_at)

    logger.info(
        "Finalized bill %s: %d participants, total %s",
        bill_id,
        len(totals),
        money_str(sum((t.total for t in totals), ZERO)),
    )
    return [FinalTotal(bill_id=bill_id, created_at=finalized_at, **t.model_dump()) for t in totals]


def read_final_totals(bill_id: str) -> List[FinalTotal]:
    with store.db_conn() as conn:
        bill = store.fetch_bill(conn, bill_id)
        if not bill:
            raise NotFound("Bill not found")
        if bill["status"] != BillStatus.FINALIZED.value:
            raise InvalidState("Final totals exist only for finalized bills")
        return store.fetch_final_totals(conn, bill_id)


def bill_totals(bill_id: str) -> Dict[str, Any]:
    """Frozen totals for finalized bills, provisional ones otherwise."""
    snapshot = store.get_bill_snapshot(bill_id)
    if snapshot.status in FROZEN_STATUSES:
        with store.db_conn() as conn:
            return {"is_final": True, "totals": store.fetch_final_totals(conn, bill_id)}
    return {"is_final": False, "totals": compute_totals(snapshot)}
