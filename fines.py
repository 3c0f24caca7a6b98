import logging
import re
from decimal import Decimal

from sqlalchemy import select

from errors import InvalidState, NotFound, Unauthorized, ValidationError
from extensions import db
from models import Fine, FineReason, FineStatus

logger = logging.getLogger(__name__)

QUANTITY_TOKEN = re.compile(r"Quantity:\s*(\d+)", re.IGNORECASE)

ALLOWED_TRANSITIONS = {
    FineStatus.UNPAID: (FineStatus.PAID, FineStatus.WAIVED, FineStatus.PARTIALLY_PAID),
    FineStatus.PARTIALLY_PAID: (FineStatus.PAID, FineStatus.WAIVED),
}


def encode_description(free_text, quantity):
    return f"{free_text} (Quantity: {quantity})"


def extract_quantity(description):
    """Quantity from the last ``Quantity: N`` token; 1 when there is none."""
    if not description:
        return 1
    found = QUANTITY_TOKEN.findall(description)
    return int(found[-1]) if found else 1


def fine_quantity(fine):
    qty = getattr(fine, "affected_quantity", None)
    if qty is not None:
        return qty
    return extract_quantity(fine.description)


def parse_reason(value):
    try:
        return FineReason(value)
    except ValueError:
        raise ValidationError(f"Unknown fine reason: {value}.") from None


def parse_fine_status(value):
    try:
        return FineStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown fine status: {value}.") from None


class FineLedger:
    def __init__(self, clock):
        self.clock = clock

    def record_outcome(self, request, reason, affected_qty, description=None,
                       fine_amount=Decimal("0"), due_date=None, staff_id=None):
        reason = parse_reason(reason)
        if affected_qty < 1:
            raise ValidationError("Affected quantity must be at least 1.")
        if any(f.reason == reason for f in request.fines):
            raise InvalidState(f"A {reason.value} outcome is already recorded for this request.")
        recorded = sum(fine_quantity(f) for f in request.fines)
        if recorded + affected_qty > request.quantity:
            raise ValidationError(
                f"Fined quantity ({recorded + affected_qty}) exceeds borrowed quantity "
                f"({request.quantity})."
            )
        free_text = (description or "").strip() or f"{reason.value} books"
        fine = Fine(
            student_id=request.student_id,
            book_id=request.book_id,
            created_by_staff_id=staff_id,
            reason=reason,
            status=FineStatus.UNPAID,
            description=encode_description(free_text, affected_qty),
            affected_quantity=affected_qty,
            fine_amount=fine_amount,
            due_date=due_date,
        )
        request.fines.append(fine)
        db.session.add(fine)
        db.session.flush()
        logger.info("fine %s recorded on request %s: %s x%s", fine.id, request.id,
                    reason.value, affected_qty)
        return fine

    def settle(self, fine_id, new_status, session):
        new_status = parse_fine_status(new_status)
        if new_status == FineStatus.UNPAID:
            raise ValidationError("A fine cannot be moved back to Unpaid.")
        fine = db.session.get(Fine, fine_id, with_for_update=True)
        if fine is None:
            raise NotFound("Fine not found.")
        if not session.is_admin and fine.created_by_staff_id != session.user_id:
            raise Unauthorized("Only the staff member who issued this fine can settle it.")
        if fine.status == new_status:
            # settling twice is a no-op
            return fine, False
        if new_status not in ALLOWED_TRANSITIONS.get(fine.status, ()):
            raise InvalidState(
                f"Cannot change a {fine.status.value} fine to {new_status.value}."
            )
        fine.status = new_status
        if new_status == FineStatus.PAID:
            fine.paid_date = self.clock.now()
        logger.info("fine %s settled as %s", fine.id, new_status.value)
        return fine, True

    def student_fines(self, student_id):
        return db.session.scalars(
            select(Fine).where(Fine.student_id == student_id).order_by(Fine.created_at.desc(), Fine.id.desc())
        ).all()


def fine_to_dict(fine):
    return {
        "id": fine.id,
        "request_id": fine.request_id,
        "student_id": fine.student_id,
        "book_id": fine.book_id,
        "reason": fine.reason.value,
        "status": fine.status.value,
        "description": fine.description,
        "quantity": fine_quantity(fine),
        "fine_amount": str(fine.fine_amount),
        "due_date": fine.due_date.isoformat() if fine.due_date else None,
        "paid_date": fine.paid_date.isoformat() if fine.paid_date else None,
        "created_at": fine.created_at.isoformat() if fine.created_at else None,
    }
