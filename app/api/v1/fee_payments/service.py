"""Fee payments service: payment context, allocation suggestion/validation, payment recording, reports."""

import logging
import uuid
from collections import Counter, defaultdict
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.enums import AllocationStrategy, FeeStatus, PaymentErrorCode
from app.core.exceptions import AllocationError, FeeAssignmentNotFound, ServiceError, StaleBalanceError
from app.core.models import (
    Batch,
    BatchStudent,
    FeeAuditLog,
    FeeComponent,
    FeePayment,
    FeePaymentAllocation,
    FeeStructure,
    Student,
    StudentFeeAssignment,
)
from app.core.receipt_service import generate_receipt_number

from .allocation import ZERO, check_allocations, derive_fee_status, is_past_due, suggest_allocations, to_decimal
from .schemas import (
    AllocationSuggestion,
    BatchDuesReport,
    ComponentSnapshot,
    DuesReportSummary,
    FeeStructureSnapshot,
    NewPaymentData,
    OutstandingStudent,
    PaymentAllocation,
    PaymentCollectionItem,
    PaymentHistoryAllocation,
    PaymentHistoryItem,
    PaymentResult,
    PaymentSummary,
    StudentDues,
    StudentIdentity,
    StudentLedger,
    StudentPaymentContext,
    StudentTransaction,
    ValidationResult,
)

logger = logging.getLogger(__name__)

UNKNOWN_BATCH = "Unknown Batch"
UNKNOWN_STRUCTURE = "Unknown Structure"
STORAGE_FAILURE_MESSAGE = "Payment recording failed due to a system error"


# --- Audit helper ---
async def _log_fee_audit(
    db: AsyncSession,
    tenant_id: UUID,
    reference_table: str,
    reference_id: UUID,
    action_type: str,
    old_value: Optional[dict],
    new_value: Optional[dict],
    changed_by: Optional[UUID],
) -> None:
    db.add(
        FeeAuditLog(
            tenant_id=tenant_id,
            reference_table=reference_table,
            reference_id=reference_id,
            action_type=action_type,
            old_value=old_value,
            new_value=new_value,
            changed_by=changed_by,
        )
    )


# --- Loaders ---
async def _get_student(db: AsyncSession, tenant_id: UUID, student_id: UUID) -> Optional[Student]:
    return (
        await db.execute(select(Student).where(Student.id == student_id, Student.tenant_id == tenant_id))
    ).scalar_one_or_none()


async def _current_batch_names(db: AsyncSession, student_ids: List[UUID]) -> Dict[UUID, str]:
    if not student_ids:
        return {}
    rows = (
        await db.execute(
            select(BatchStudent.student_id, Batch.name)
            .join(Batch, Batch.id == BatchStudent.batch_id)
            .where(BatchStudent.student_id.in_(student_ids), BatchStudent.is_current.is_(True))
        )
    ).all()
    return {sid: name for sid, name in rows}


async def _get_assignments(db: AsyncSession, tenant_id: UUID, student_id: UUID) -> List[StudentFeeAssignment]:
    """Assignments in structure order: assignment date, then creation."""
    stmt = (
        select(StudentFeeAssignment)
        .options(selectinload(StudentFeeAssignment.fee_structure))
        .where(
            StudentFeeAssignment.tenant_id == tenant_id,
            StudentFeeAssignment.student_id == student_id,
        )
        .order_by(
            StudentFeeAssignment.assignment_date,
            StudentFeeAssignment.created_at,
            StudentFeeAssignment.id,
        )
    )
    return list((await db.execute(stmt)).scalars().all())


async def _get_components(db: AsyncSession, structure_ids: List[UUID]) -> Dict[UUID, List[FeeComponent]]:
    grouped: Dict[UUID, List[FeeComponent]] = defaultdict(list)
    if not structure_ids:
        return grouped
    stmt = (
        select(FeeComponent)
        .where(FeeComponent.fee_structure_id.in_(structure_ids))
        .order_by(FeeComponent.display_order, FeeComponent.created_at, FeeComponent.id)
    )
    for comp in (await db.execute(stmt)).scalars().all():
        grouped[comp.fee_structure_id].append(comp)
    return grouped


async def _get_payments(db: AsyncSession, assignment_ids: List[UUID]) -> List[FeePayment]:
    """Payments newest first, allocations and their components eagerly loaded."""
    if not assignment_ids:
        return []
    stmt = (
        select(FeePayment)
        .options(
            selectinload(FeePayment.allocations)
            .selectinload(FeePaymentAllocation.component)
            .selectinload(FeeComponent.fee_structure)
        )
        .where(FeePayment.student_fee_assignment_id.in_(assignment_ids))
        .order_by(FeePayment.payment_date.desc(), FeePayment.created_at.desc(), FeePayment.id)
    )
    return list((await db.execute(stmt)).scalars().all())


async def _component_paid_to_date(db: AsyncSession, student_fee_assignment_id: UUID) -> Dict[UUID, Decimal]:
    rows = (
        await db.execute(
            select(
                FeePaymentAllocation.component_id,
                func.coalesce(func.sum(FeePaymentAllocation.allocated_amount), 0),
            )
            .join(FeePayment, FeePayment.id == FeePaymentAllocation.payment_id)
            .where(FeePayment.student_fee_assignment_id == student_fee_assignment_id)
            .group_by(FeePaymentAllocation.component_id)
        )
    ).all()
    return {cid: to_decimal(total) for cid, total in rows}


# --- Payment context ---
async def get_payment_context(
    db: AsyncSession,
    tenant_id: UUID,
    student_id: UUID,
    today: Optional[date] = None,
) -> Optional[StudentPaymentContext]:
    """
    Full fee picture for one student. Returns None when the student is unknown
    or has no fee assignments. Read-only.
    """
    today = today or date.today()
    student = await _get_student(db, tenant_id, student_id)
    if not student:
        return None
    assignments = await _get_assignments(db, tenant_id, student_id)
    if not assignments:
        return None

    batch_names = await _current_batch_names(db, [student.id])
    components_by_structure = await _get_components(db, list({a.fee_structure_id for a in assignments}))
    payments = await _get_payments(db, [a.id for a in assignments])

    # Component paid-to-date is scoped to the assignment the payment was made against.
    paid: Dict[Tuple[UUID, UUID], Decimal] = defaultdict(lambda: ZERO)
    last_paid_on: Dict[Tuple[UUID, UUID], date] = {}
    for p in payments:
        for alloc in p.allocations:
            key = (p.student_fee_assignment_id, alloc.component_id)
            paid[key] += to_decimal(alloc.allocated_amount)
            if key not in last_paid_on or p.payment_date > last_paid_on[key]:
                last_paid_on[key] = p.payment_date

    fee_structures: List[FeeStructureSnapshot] = []
    for sfa in assignments:
        structure = sfa.fee_structure
        components: List[ComponentSnapshot] = []
        for comp in components_by_structure.get(sfa.fee_structure_id, []):
            amount = to_decimal(comp.amount)
            comp_paid = paid[(sfa.id, comp.id)]
            balance = max(ZERO, amount - comp_paid)
            components.append(
                ComponentSnapshot(
                    id=comp.id,
                    name=comp.name,
                    amount=amount,
                    paid_amount=comp_paid,
                    balance=balance,
                    due_date=comp.due_date,
                    recurrence=comp.recurrence,
                    priority=comp.priority,
                    status=derive_fee_status(balance, comp_paid, comp.due_date, today),
                    last_payment_date=last_paid_on.get((sfa.id, comp.id)),
                )
            )
        total = to_decimal(sfa.total_amount)
        sfa_paid = to_decimal(sfa.paid_amount)
        sfa_balance = to_decimal(sfa.balance)
        fee_structures.append(
            FeeStructureSnapshot(
                id=structure.id,
                name=structure.name,
                academic_year=structure.academic_year,
                student_fee_assignment_id=sfa.id,
                assignment_date=sfa.assignment_date,
                due_date=sfa.due_date,
                total_amount=total,
                paid_amount=sfa_paid,
                balance=sfa_balance,
                status=derive_fee_status(sfa_balance, sfa_paid, sfa.due_date, today),
                components=components,
            )
        )

    payment_history = [
        PaymentHistoryItem(
            id=p.id,
            payment_date=p.payment_date,
            amount=to_decimal(p.amount),
            mode=p.payment_mode,
            receipt_number=p.receipt_number,
            created_by=p.created_by,
            notes=p.notes,
            allocations=[
                PaymentHistoryAllocation(
                    structure_id=a.component.fee_structure_id if a.component else None,
                    structure_name=a.component.fee_structure.name if a.component else None,
                    component_id=a.component_id,
                    component_name=a.component.name if a.component else None,
                    amount=to_decimal(a.allocated_amount),
                )
                for a in p.allocations
            ],
        )
        for p in payments
    ]

    upcoming = [
        c.due_date
        for fs in fee_structures
        for c in fs.components
        if c.balance > ZERO and c.due_date is not None and not is_past_due(c.due_date, today)
    ]
    summary = PaymentSummary(
        total_due=sum((fs.total_amount for fs in fee_structures), ZERO),
        total_paid=sum((fs.paid_amount for fs in fee_structures), ZERO),
        overall_balance=sum((fs.balance for fs in fee_structures), ZERO),
        overdue_amount=sum(
            (c.balance for fs in fee_structures for c in fs.components if c.status == FeeStatus.overdue),
            ZERO,
        ),
        last_payment_date=payments[0].payment_date if payments else None,
        next_due_date=min(upcoming) if upcoming else None,
    )

    return StudentPaymentContext(
        student=StudentIdentity(
            id=student.id,
            name=student.full_name,
            admission_number=student.admission_number,
            batch_name=batch_names.get(student.id, UNKNOWN_BATCH),
        ),
        fee_structures=fee_structures,
        payment_history=payment_history,
        summary=summary,
    )


# --- Suggestion / validation ---
async def suggest_allocation(
    db: AsyncSession,
    tenant_id: UUID,
    student_id: UUID,
    amount: Decimal,
    strategy: AllocationStrategy = AllocationStrategy.OVERDUE_FIRST,
    today: Optional[date] = None,
) -> AllocationSuggestion:
    """Propose a split of amount using strategy. Always works on a freshly built context."""
    context = await get_payment_context(db, tenant_id, student_id, today=today)
    return suggest_allocations(context, amount, strategy)


async def validate_allocation(
    db: AsyncSession,
    tenant_id: UUID,
    student_id: UUID,
    allocations: List[PaymentAllocation],
    today: Optional[date] = None,
) -> ValidationResult:
    context = await get_payment_context(db, tenant_id, student_id, today=today)
    return check_allocations(context, allocations)


# --- Outstanding fees ---
async def list_students_with_outstanding_fees(
    db: AsyncSession,
    school_id: UUID,
    today: Optional[date] = None,
) -> List[OutstandingStudent]:
    today = today or date.today()
    stmt = (
        select(Student, StudentFeeAssignment.balance, StudentFeeAssignment.due_date)
        .join(StudentFeeAssignment, StudentFeeAssignment.student_id == Student.id)
        .where(
            Student.tenant_id == school_id,
            StudentFeeAssignment.tenant_id == school_id,
            StudentFeeAssignment.balance > 0,
        )
        .order_by(Student.last_name, Student.first_name, Student.id, StudentFeeAssignment.id)
    )
    rows = (await db.execute(stmt)).all()

    out: Dict[UUID, OutstandingStudent] = {}
    for student, balance, due_date in rows:
        item = out.get(student.id)
        if item is None:
            item = out[student.id] = OutstandingStudent(
                id=student.id,
                name=student.full_name,
                admission_number=student.admission_number,
                total_outstanding=ZERO,
                is_overdue=False,
            )
        item.total_outstanding += to_decimal(balance)
        item.is_overdue = item.is_overdue or is_past_due(due_date, today)
    return list(out.values())


# --- Dues reports ---
def _collection_rate(paid_students: int, total_students: int) -> int:
    if not total_students:
        return 0
    rate = Decimal(paid_students) * 100 / Decimal(total_students)
    return int(rate.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


async def get_dues_summary(
    db: AsyncSession,
    school_id: UUID,
    today: Optional[date] = None,
) -> List[StudentDues]:
    """One row per student with fee assignments, totals summed across assignments."""
    today = today or date.today()
    stmt = (
        select(StudentFeeAssignment, Student)
        .join(Student, Student.id == StudentFeeAssignment.student_id)
        .where(StudentFeeAssignment.tenant_id == school_id, Student.tenant_id == school_id)
        .order_by(Student.last_name, Student.first_name, Student.id, StudentFeeAssignment.id)
    )
    rows = (await db.execute(stmt)).all()
    if not rows:
        return []

    batch_names = await _current_batch_names(db, list({student.id for _, student in rows}))
    last_paid_on: Dict[UUID, date] = dict(
        (
            await db.execute(
                select(FeePayment.student_fee_assignment_id, func.max(FeePayment.payment_date))
                .where(FeePayment.student_fee_assignment_id.in_([sfa.id for sfa, _ in rows]))
                .group_by(FeePayment.student_fee_assignment_id)
            )
        ).all()
    )

    totals: Dict[UUID, dict] = {}
    for sfa, student in rows:
        t = totals.get(student.id)
        if t is None:
            t = totals[student.id] = {
                "student": student,
                "total": ZERO,
                "paid": ZERO,
                "balance": ZERO,
                "due_date": None,
                "last_paid": None,
            }
        balance = to_decimal(sfa.balance)
        t["total"] += to_decimal(sfa.total_amount)
        t["paid"] += to_decimal(sfa.paid_amount)
        t["balance"] += balance
        # settled assignments do not make a student overdue
        if balance > ZERO and sfa.due_date and (t["due_date"] is None or sfa.due_date < t["due_date"]):
            t["due_date"] = sfa.due_date
        paid_on = last_paid_on.get(sfa.id)
        if paid_on and (t["last_paid"] is None or paid_on > t["last_paid"]):
            t["last_paid"] = paid_on

    dues: List[StudentDues] = []
    for t in totals.values():
        student = t["student"]
        overdue = t["balance"] > ZERO and is_past_due(t["due_date"], today)
        dues.append(
            StudentDues(
                student_id=student.id,
                student_name=student.full_name,
                admission_number=student.admission_number,
                batch_name=batch_names.get(student.id, UNKNOWN_BATCH),
                total_fees=t["total"],
                paid_amount=t["paid"],
                balance=t["balance"],
                due_date=t["due_date"],
                last_payment_date=t["last_paid"],
                status=derive_fee_status(t["balance"], t["paid"], t["due_date"], today),
                days_past_due=(today - t["due_date"]).days if overdue else None,
            )
        )
    return dues


def summarize_dues(dues: List[StudentDues]) -> DuesReportSummary:
    counts = Counter(d.status for d in dues)
    return DuesReportSummary(
        total_students=len(dues),
        paid_students=counts[FeeStatus.paid],
        partial_students=counts[FeeStatus.partial],
        overdue_students=counts[FeeStatus.overdue],
        due_students=counts[FeeStatus.due],
        total_collected=sum((d.paid_amount for d in dues), ZERO),
        total_outstanding=sum((d.balance for d in dues), ZERO),
        collection_rate=_collection_rate(counts[FeeStatus.paid], len(dues)),
    )


def group_dues_by_batch(dues: List[StudentDues]) -> List[BatchDuesReport]:
    """Batch rollup, sorted by batch name. Students without a current batch share UNKNOWN_BATCH."""
    by_batch: Dict[str, List[StudentDues]] = defaultdict(list)
    for d in dues:
        by_batch[d.batch_name].append(d)

    reports: List[BatchDuesReport] = []
    for name in sorted(by_batch):
        students = by_batch[name]
        paid_students = sum(1 for d in students if d.status == FeeStatus.paid)
        reports.append(
            BatchDuesReport(
                batch_name=name,
                total_students=len(students),
                paid_students=paid_students,
                overdue_students=sum(1 for d in students if d.status == FeeStatus.overdue),
                total_fees=sum((d.total_fees for d in students), ZERO),
                collected_amount=sum((d.paid_amount for d in students), ZERO),
                outstanding_amount=sum((d.balance for d in students), ZERO),
                collection_rate=_collection_rate(paid_students, len(students)),
            )
        )
    return reports


async def get_dues_report_summary(
    db: AsyncSession, school_id: UUID, today: Optional[date] = None
) -> DuesReportSummary:
    return summarize_dues(await get_dues_summary(db, school_id, today=today))


async def get_batch_dues_report(
    db: AsyncSession, school_id: UUID, today: Optional[date] = None
) -> List[BatchDuesReport]:
    return group_dues_by_batch(await get_dues_summary(db, school_id, today=today))


# --- Payment recording ---
def _collect_lines(payload: NewPaymentData) -> Dict[UUID, Decimal]:
    """Per-component requested totals; rejects non-positive lines and a total mismatch."""
    if not payload.allocations:
        raise AllocationError("At least one allocation is required")
    total = to_decimal(payload.total_amount)
    if total <= ZERO:
        raise AllocationError("Payment amount must be greater than 0")
    requested: Dict[UUID, Decimal] = defaultdict(lambda: ZERO)
    for line in payload.allocations:
        amount = to_decimal(line.amount)
        if amount <= ZERO:
            raise AllocationError(f"Amount for {line.component_name or line.component_id} must be greater than 0")
        requested[line.component_id] += amount
    allocated = sum(requested.values(), ZERO)
    if allocated != total:
        raise AllocationError(f"Allocations total {allocated} but payment amount is {total}")
    return requested


async def _commit_payment(db: AsyncSession, payment_id: UUID, payload: NewPaymentData) -> PaymentResult:
    requested = _collect_lines(payload)
    total = to_decimal(payload.total_amount)

    # Row lock on the assignment for the whole write (no-op on SQLite).
    sfa = (
        await db.execute(
            select(StudentFeeAssignment)
            .where(
                StudentFeeAssignment.id == payload.student_fee_assignment_id,
                StudentFeeAssignment.tenant_id == payload.school_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if not sfa:
        raise FeeAssignmentNotFound()
    if sfa.student_id != payload.student_id:
        raise AllocationError("Fee assignment does not belong to this student")
    read_version = sfa.version
    old_paid = to_decimal(sfa.paid_amount)
    old_balance = to_decimal(sfa.balance)

    components = {
        c.id: c
        for c in (
            await db.execute(select(FeeComponent).where(FeeComponent.fee_structure_id == sfa.fee_structure_id))
        ).scalars().all()
    }
    paid_to_date = await _component_paid_to_date(db, sfa.id)
    for component_id, amount in requested.items():
        comp = components.get(component_id)
        if comp is None:
            raise AllocationError(f"Component {component_id} is not part of this fee assignment")
        available = max(ZERO, to_decimal(comp.amount) - paid_to_date.get(component_id, ZERO))
        if amount > available:
            raise StaleBalanceError(
                f"Amount for {comp.name} ({amount}) exceeds current balance ({available}); refresh and retry"
            )
    if total > old_balance:
        raise StaleBalanceError(
            f"Payment amount ({total}) exceeds current balance ({old_balance}); refresh and retry"
        )

    receipt_number = (payload.receipt_number or "").strip() or await generate_receipt_number(
        db, issued_on=payload.payment_date
    )

    # 1. payment
    db.add(
        FeePayment(
            id=payment_id,
            tenant_id=payload.school_id,
            student_fee_assignment_id=sfa.id,
            amount=total,
            payment_mode=payload.payment_mode.value,
            payment_date=payload.payment_date,
            receipt_number=receipt_number,
            notes=(payload.notes or "").strip() or None,
            created_by=payload.created_by,
        )
    )
    await db.flush()

    # 2. allocations
    db.add_all(
        [
            FeePaymentAllocation(
                payment_id=payment_id,
                component_id=line.component_id,
                allocated_amount=to_decimal(line.amount),
                line_number=i,
            )
            for i, line in enumerate(payload.allocations)
        ]
    )
    await db.flush()

    # 3. assignment totals, guarded by the version read under the lock
    new_paid = old_paid + total
    new_balance = max(ZERO, old_balance - total)
    swapped = await db.execute(
        update(StudentFeeAssignment)
        .where(StudentFeeAssignment.id == sfa.id, StudentFeeAssignment.version == read_version)
        .values(
            paid_amount=new_paid,
            balance=new_balance,
            version=read_version + 1,
            updated_at=datetime.utcnow(),
        )
    )
    if swapped.rowcount != 1:
        raise StaleBalanceError()

    old_status = derive_fee_status(old_balance, old_paid, sfa.due_date, payload.payment_date)
    new_status = derive_fee_status(new_balance, new_paid, sfa.due_date, payload.payment_date)
    await _log_fee_audit(
        db, payload.school_id, "fee_payments", payment_id,
        "CREATE",
        None,
        {
            "amount": str(total),
            "payment_mode": payload.payment_mode.value,
            "receipt_number": receipt_number,
            "student_fee_assignment_id": str(sfa.id),
            "allocations": [
                {"component_id": str(line.component_id), "amount": str(to_decimal(line.amount))}
                for line in payload.allocations
            ],
        },
        payload.created_by,
    )
    await _log_fee_audit(
        db, payload.school_id, "student_fees", sfa.id,
        "UPDATE",
        {"paid_amount": str(old_paid), "balance": str(old_balance), "status": old_status.value},
        {"paid_amount": str(new_paid), "balance": str(new_balance), "status": new_status.value},
        payload.created_by,
    )
    await db.commit()

    return PaymentResult(
        success=True,
        payment_id=payment_id,
        receipt_number=receipt_number,
        message=f"Payment of {total} recorded successfully",
        allocations=payload.allocations,
    )


async def _remove_orphan_payment(db: AsyncSession, payment_id: UUID) -> None:
    """Compensating delete: make sure no payment row survives a failed recording."""
    try:
        await db.execute(delete(FeePaymentAllocation).where(FeePaymentAllocation.payment_id == payment_id))
        await db.execute(delete(FeePayment).where(FeePayment.id == payment_id))
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Compensating delete failed for payment %s", payment_id)


async def record_payment(db: AsyncSession, payload: NewPaymentData) -> PaymentResult:
    """
    Record a payment and its allocations and update the assignment balance in one transaction.
    Not idempotent: submitting the same data twice records two payments.

    On any failure the given session is rolled back, which expires every ORM
    object loaded through it; read ids off such objects before calling.
    """
    payment_id = uuid.uuid4()
    try:
        result = await _commit_payment(db, payment_id, payload)
    except ServiceError as e:
        await db.rollback()
        logger.warning(
            "Payment rejected for assignment %s: %s",
            payload.student_fee_assignment_id,
            e.message,
            extra={"tenant_id": payload.school_id, "student_id": payload.student_id},
        )
        return PaymentResult(success=False, message=e.message, error_code=e.error_code)
    except SQLAlchemyError:
        logger.exception(
            "Storage error while recording payment for assignment %s",
            payload.student_fee_assignment_id,
            extra={"tenant_id": payload.school_id, "payment_id": payment_id},
        )
        await db.rollback()
        await _remove_orphan_payment(db, payment_id)
        return PaymentResult(success=False, message=STORAGE_FAILURE_MESSAGE, error_code=PaymentErrorCode.STORAGE)

    logger.info(
        "Recorded payment %s (%s) of %s against assignment %s",
        result.payment_id,
        result.receipt_number,
        payload.total_amount,
        payload.student_fee_assignment_id,
        extra={"tenant_id": payload.school_id, "user_id": payload.created_by},
    )
    return result


# --- Collections report ---
async def list_payment_collections(
    db: AsyncSession,
    school_id: UUID,
    today: Optional[date] = None,
) -> List[PaymentCollectionItem]:
    """One row per assignment with its latest payment."""
    today = today or date.today()
    stmt = (
        select(StudentFeeAssignment, Student, FeeStructure.name)
        .join(Student, Student.id == StudentFeeAssignment.student_id)
        .outerjoin(FeeStructure, FeeStructure.id == StudentFeeAssignment.fee_structure_id)
        .where(StudentFeeAssignment.tenant_id == school_id)
        .order_by(Student.last_name, Student.first_name, StudentFeeAssignment.assignment_date, StudentFeeAssignment.id)
    )
    rows = (await db.execute(stmt)).all()
    if not rows:
        return []

    batch_names = await _current_batch_names(db, list({student.id for _, student, _ in rows}))
    latest: Dict[UUID, FeePayment] = {}
    for p in await _get_payments(db, [sfa.id for sfa, _, _ in rows]):
        # newest first, so the first seen per assignment wins
        latest.setdefault(p.student_fee_assignment_id, p)

    items: List[PaymentCollectionItem] = []
    for sfa, student, structure_name in rows:
        balance = to_decimal(sfa.balance)
        paid = to_decimal(sfa.paid_amount)
        last = latest.get(sfa.id)
        items.append(
            PaymentCollectionItem(
                id=sfa.id,
                student_id=student.id,
                student_name=student.full_name,
                admission_number=student.admission_number,
                batch_name=batch_names.get(student.id, UNKNOWN_BATCH),
                structure_id=sfa.fee_structure_id,
                structure_name=structure_name or UNKNOWN_STRUCTURE,
                amount_due=to_decimal(sfa.total_amount),
                amount_paid=paid,
                balance=balance,
                last_payment_date=last.payment_date if last else None,
                last_payment_mode=last.payment_mode if last else None,
                last_receipt_number=last.receipt_number if last else None,
                status=derive_fee_status(balance, paid, sfa.due_date, today),
            )
        )
    return items


# --- Student ledger ---
async def get_student_ledger(
    db: AsyncSession,
    tenant_id: UUID,
    student_id: UUID,
) -> Optional[StudentLedger]:
    """Debits for fee assignments, credits for payments, with a running balance in date order."""
    student = await _get_student(db, tenant_id, student_id)
    if not student:
        return None
    assignments = await _get_assignments(db, tenant_id, student_id)
    if not assignments:
        return None
    batch_names = await _current_batch_names(db, [student.id])
    payments = await _get_payments(db, [a.id for a in assignments])

    transactions: List[StudentTransaction] = []
    for sfa in assignments:
        structure_name = sfa.fee_structure.name if sfa.fee_structure else UNKNOWN_STRUCTURE
        transactions.append(
            StudentTransaction(
                id=f"fee_{sfa.id}",
                transaction_date=sfa.assignment_date,
                description=f"Fee Assignment - {structure_name}",
                debit=to_decimal(sfa.total_amount),
                credit=ZERO,
                balance=ZERO,
            )
        )
    for p in reversed(payments):
        description = "Payment"
        component_names = ", ".join(a.component.name for a in p.allocations if a.component)
        if component_names:
            description += f" - {component_names}"
        if p.notes:
            description += f" ({p.notes})"
        transactions.append(
            StudentTransaction(
                id=f"payment_{p.id}",
                transaction_date=p.payment_date,
                description=description,
                debit=ZERO,
                credit=to_decimal(p.amount),
                balance=ZERO,
                payment_mode=(p.payment_mode or "").upper() or None,
                receipt_number=p.receipt_number,
            )
        )

    # stable: on the same day assignments come before payments
    transactions.sort(key=lambda t: t.transaction_date)
    running = ZERO
    for t in transactions:
        running += t.debit - t.credit
        t.balance = running

    applied: List[str] = []
    for sfa in assignments:
        name = sfa.fee_structure.name if sfa.fee_structure else UNKNOWN_STRUCTURE
        if name not in applied:
            applied.append(name)

    return StudentLedger(
        student_id=student.id,
        student_name=student.full_name,
        admission_number=student.admission_number,
        batch_name=batch_names.get(student.id, UNKNOWN_BATCH),
        applied_structures=applied,
        total_fees=sum((to_decimal(a.total_amount) for a in assignments), ZERO),
        paid_amount=sum((to_decimal(a.paid_amount) for a in assignments), ZERO),
        balance=sum((to_decimal(a.balance) for a in assignments), ZERO),
        last_payment_date=payments[0].payment_date if payments else None,
        transactions=transactions,
    )
