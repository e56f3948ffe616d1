from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import Forbidden, GuardViolation, InvalidRequest, NotFound, PersistenceFailure
from models.notifications import Notification, NotificationType
from models.orders import Order, OrderStatus
from models.prescriptions import Prescription, PrescriptionStatus
from utils.logger import get_logger

logger = get_logger(__name__)

# Review moves a reviewer may make; anything already reviewed can be reset to pending
REVIEW_MOVES = {
    PrescriptionStatus.PENDING: (PrescriptionStatus.APPROVED, PrescriptionStatus.REJECTED),
    PrescriptionStatus.APPROVED: (PrescriptionStatus.PENDING,),
    PrescriptionStatus.REJECTED: (PrescriptionStatus.PENDING,),
}

# Once fulfilment has started the approval flag is no longer withdrawn
REVOCABLE_ORDER_STATUSES = (OrderStatus.PENDING, OrderStatus.CONFIRMED)


def can_fulfill(order: Order) -> bool:
    return not order.requires_prescription or bool(order.prescription_approved)


class PrescriptionService:

    @staticmethod
    def upload(db: Session, user_id: str, image_url: str, order_id: str | None = None) -> Prescription:
        order = None
        if order_id is not None:
            order = db.get(Order, order_id)
            if order is None or order.user_id != user_id:
                raise NotFound("Order not found")

        prescription = Prescription(user_id=user_id, image_url=image_url, order_id=order_id)
        db.add(prescription)
        # Fulfilment that has already started is not re-gated
        if order is not None and order.status == OrderStatus.PENDING and not order.requires_prescription:
            order.requires_prescription = True
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not save prescription: {str(e)}", extra={"user_id": user_id, "order_id": order_id})
            raise PersistenceFailure(order_id=order_id) from e

        db.refresh(prescription)
        logger.info("Prescription uploaded",
                    extra={"prescription_id": prescription.id, "user_id": user_id, "order_id": order_id})
        return prescription

    @staticmethod
    def link_to_order(db: Session, prescription_id: str, order: Order):
        """Attach one of the customer's prescriptions to a new order. Caller commits."""
        prescription = db.get(Prescription, prescription_id)
        if prescription is None or prescription.user_id != order.user_id:
            raise InvalidRequest("Prescription not found")
        if prescription.status == PrescriptionStatus.REJECTED:
            raise InvalidRequest("This prescription was rejected, please upload a new one")
        if prescription.order_id is not None and prescription.order_id != order.id:
            raise InvalidRequest("This prescription is already attached to another order")

        prescription.order_id = order.id
        order.requires_prescription = True
        if prescription.status == PrescriptionStatus.APPROVED:
            order.prescription_approved = True

    @staticmethod
    def review(db: Session, prescription_id: str, new_status: str, reviewer: str,
               admin_notes: str | None = None) -> Prescription:
        """
        Record a pharmacist's decision.

        Approving a prescription that is linked to an order marks the order
        approved; withdrawing the last approval on an order that has not gone
        past ``confirmed`` clears the flag again. The caller applies
        ``PrescriptionApproved`` afterwards so a paid order can move on.
        """
        try:
            target = PrescriptionStatus(new_status)
        except ValueError:
            raise InvalidRequest(f"Unknown prescription status: {new_status}")

        prescription = db.get(Prescription, prescription_id)
        if prescription is None:
            raise NotFound("Prescription not found")

        current = prescription.status
        if target not in REVIEW_MOVES[current]:
            raise GuardViolation(f"Prescription cannot move from {current.value} to {target.value}")

        prescription.status = target
        prescription.admin_notes = admin_notes
        prescription.reviewed_by = reviewer if target != PrescriptionStatus.PENDING else None
        prescription.reviewed_at = datetime.now(timezone.utc) if target != PrescriptionStatus.PENDING else None

        order = prescription.order
        if order is not None:
            if target == PrescriptionStatus.APPROVED:
                order.prescription_approved = True
            elif current == PrescriptionStatus.APPROVED and order.status in REVOCABLE_ORDER_STATUSES:
                still_approved = db.query(Prescription.id).filter(
                    Prescription.order_id == order.id,
                    Prescription.id != prescription.id,
                    Prescription.status == PrescriptionStatus.APPROVED,
                ).first()
                if still_approved is None:
                    order.prescription_approved = False

        if target != PrescriptionStatus.PENDING:
            db.add(Notification(
                user_id=prescription.user_id,
                order_id=prescription.order_id,
                prescription_id=prescription.id,
                type=NotificationType.PRESCRIPTION_UPDATE,
                title=f"Prescription {target.value}",
                message=admin_notes or (
                    "Your prescription has been approved."
                    if target == PrescriptionStatus.APPROVED
                    else "Your prescription could not be approved. Please upload a clearer copy."
                ),
            ))

        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not save prescription review: {str(e)}",
                         extra={"prescription_id": prescription_id, "error_type": type(e).__name__})
            raise PersistenceFailure(prescription_id=prescription_id) from e

        db.refresh(prescription)
        logger.info(
            "Prescription reviewed",
            extra={"prescription_id": prescription.id, "order_id": prescription.order_id,
                   "from_status": current.value, "to_status": target.value, "actor": reviewer},
        )
        return prescription

    @staticmethod
    def get_for_user(db: Session, prescription_id: str, user: dict) -> Prescription:
        prescription = db.get(Prescription, prescription_id)
        if prescription is None:
            raise NotFound("Prescription not found")
        if prescription.user_id != user["user_id"] and user.get("user_role") != "admin":
            raise Forbidden("You do not have access to this prescription")
        return prescription
