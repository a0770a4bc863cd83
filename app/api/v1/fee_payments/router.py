"""Fee payments router: payment context, allocation suggestion/validation, recording, reports."""

from datetime import date
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_user
from app.auth.rbac import check_permission
from app.auth.schemas import CurrentUser
from app.core.enums import PaymentErrorCode
from app.db.session import get_db

from .schemas import (
    AllocationSuggestion,
    AllocationSuggestionRequest,
    BatchDuesReport,
    DuesReportSummary,
    NewPaymentData,
    OutstandingStudent,
    PaymentCollectionItem,
    PaymentCreate,
    PaymentResult,
    StudentDues,
    StudentLedger,
    StudentPaymentContext,
    ValidateAllocationRequest,
    ValidationResult,
)
from . import service

router = APIRouter(prefix="/api/v1/fee-payments", tags=["fee-payments"])

PAYMENT_ERROR_STATUS = {
    PaymentErrorCode.VALIDATION: status.HTTP_400_BAD_REQUEST,
    PaymentErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    PaymentErrorCode.STALE_BALANCE: status.HTTP_409_CONFLICT,
    PaymentErrorCode.STORAGE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@router.get(
    "/students/{student_id}/context",
    response_model=StudentPaymentContext,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_payment_context(
    student_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> StudentPaymentContext:
    context = await service.get_payment_context(db, current_user.tenant_id, student_id)
    if context is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No fee assignments found for student")
    return context


@router.post(
    "/students/{student_id}/suggest",
    response_model=AllocationSuggestion,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def suggest_allocation(
    student_id: UUID,
    payload: AllocationSuggestionRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> AllocationSuggestion:
    return await service.suggest_allocation(
        db, current_user.tenant_id, student_id, payload.amount, payload.strategy
    )


@router.post(
    "/students/{student_id}/validate",
    response_model=ValidationResult,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def validate_allocation(
    student_id: UUID,
    payload: ValidateAllocationRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> ValidationResult:
    return await service.validate_allocation(db, current_user.tenant_id, student_id, payload.allocations)


@router.get(
    "/students/{student_id}/ledger",
    response_model=StudentLedger,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_student_ledger(
    student_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> StudentLedger:
    ledger = await service.get_student_ledger(db, current_user.tenant_id, student_id)
    if ledger is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No fee assignments found for student")
    return ledger


@router.get(
    "/outstanding",
    response_model=List[OutstandingStudent],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def list_outstanding(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[OutstandingStudent]:
    return await service.list_students_with_outstanding_fees(db, current_user.tenant_id)


@router.get(
    "/collections",
    response_model=List[PaymentCollectionItem],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def list_collections(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[PaymentCollectionItem]:
    return await service.list_payment_collections(db, current_user.tenant_id)


@router.get(
    "/dues",
    response_model=List[StudentDues],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def list_dues(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[StudentDues]:
    return await service.get_dues_summary(db, current_user.tenant_id)


@router.get(
    "/dues/summary",
    response_model=DuesReportSummary,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_dues_report_summary(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> DuesReportSummary:
    return await service.get_dues_report_summary(db, current_user.tenant_id)


@router.get(
    "/dues/batches",
    response_model=List[BatchDuesReport],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_batch_dues_report(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[BatchDuesReport]:
    return await service.get_batch_dues_report(db, current_user.tenant_id)


@router.post(
    "/payments",
    response_model=PaymentResult,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(check_permission("fees", "create"))],
)
async def record_payment(
    payload: PaymentCreate,
    response: Response,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> PaymentResult:
    result = await service.record_payment(
        db,
        NewPaymentData(
            student_id=payload.student_id,
            student_fee_assignment_id=payload.student_fee_assignment_id,
            total_amount=payload.total_amount,
            payment_mode=payload.payment_mode,
            payment_date=payload.payment_date or date.today(),
            allocations=payload.allocations,
            created_by=current_user.id,
            school_id=current_user.tenant_id,
            receipt_number=payload.receipt_number,
            notes=payload.notes,
        ),
    )
    if not result.success:
        response.status_code = PAYMENT_ERROR_STATUS.get(result.error_code, status.HTTP_400_BAD_REQUEST)
    return result
