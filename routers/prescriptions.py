from typing import Optional

from fastapi import APIRouter, Query, Request
from starlette import status

from middleware.rate_limiter import limiter
from models.prescriptions import Prescription, PrescriptionStatus
from schemas.prescription_schemas import PrescriptionResponse, PrescriptionReviewRequest, PrescriptionUploadRequest
from services.order_state_machine import OrderStateMachine, PrescriptionApproved
from services.prescription_gate import PrescriptionService
from services.user_service import UserService
from utils.deps import admin_dependency, db_dependency, notifier_dependency, user_dependency
from utils.logger import get_logger

# Setup logger
logger = get_logger(__name__)


router = APIRouter(
    prefix="/prescriptions",
    tags=["prescriptions"]
)


@router.post("", status_code=status.HTTP_201_CREATED, response_model=PrescriptionResponse)
@limiter.limit("10/minute")
async def upload_prescription(request: Request, body: PrescriptionUploadRequest, user: user_dependency,
                              db: db_dependency):
    """Register an uploaded prescription image, optionally for one of the caller's orders."""
    UserService.sync_from_identity(db, user)
    return PrescriptionService.upload(db, user["user_id"], body.image_url, order_id=body.order_id)


@router.get("", status_code=status.HTTP_200_OK, response_model=list[PrescriptionResponse])
async def list_prescriptions(user: user_dependency, db: db_dependency,
                             prescription_status: Optional[PrescriptionStatus] = Query(default=None, alias="status")):
    """Own prescriptions; staff see everyone's (the review queue)."""
    query = db.query(Prescription)
    if user.get("user_role") != "admin":
        query = query.filter(Prescription.user_id == user["user_id"])
    if prescription_status is not None:
        query = query.filter(Prescription.status == prescription_status)
    return query.order_by(Prescription.created_at.desc()).all()


@router.get("/{prescription_id}", status_code=status.HTTP_200_OK, response_model=PrescriptionResponse)
async def get_prescription(prescription_id: str, user: user_dependency, db: db_dependency):
    return PrescriptionService.get_for_user(db, prescription_id, user)


@router.patch("/{prescription_id}/review", status_code=status.HTTP_200_OK, response_model=PrescriptionResponse)
async def review_prescription(prescription_id: str, body: PrescriptionReviewRequest, admin: admin_dependency,
                              db: db_dependency, notifier: notifier_dependency):
    prescription = PrescriptionService.review(db, prescription_id, body.status.value, admin["user_id"],
                                              admin_notes=body.admin_notes)

    if prescription.status == PrescriptionStatus.APPROVED and prescription.order_id:
        result = OrderStateMachine(db, notifier).apply(PrescriptionApproved(order_id=prescription.order_id))
        logger.info(
            "Prescription approval applied to order",
            extra={"order_id": prescription.order_id, "prescription_id": prescription.id,
                   "result": result.kind.value}
        )
        db.refresh(prescription)

    return prescription
