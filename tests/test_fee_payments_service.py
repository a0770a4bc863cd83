import asyncio
import uuid
from datetime import date
from decimal import Decimal
from typing import Dict, List

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.fee_payments import service
from app.api.v1.fee_payments.schemas import NewPaymentData, PaymentAllocation
from app.core.enums import AllocationStrategy, FeeStatus, PaymentErrorCode, PaymentMode
from app.core.models import (
    FeeAuditLog,
    FeeComponent,
    FeePayment,
    FeePaymentAllocation,
    StudentFeeAssignment,
)

TODAY = date(2025, 9, 1)
PAST = date(2025, 6, 30)
FUTURE = date(2025, 12, 31)


async def _components(db: AsyncSession, sfa: StudentFeeAssignment) -> Dict[str, FeeComponent]:
    rows = (
        await db.execute(select(FeeComponent).where(FeeComponent.fee_structure_id == sfa.fee_structure_id))
    ).scalars().all()
    return {c.name: c for c in rows}


def _payment(tenant_id, student, sfa, lines: List[tuple], total=None, **kwargs) -> NewPaymentData:
    allocations = [PaymentAllocation(component_id=c.id, amount=Decimal(str(amount))) for c, amount in lines]
    return NewPaymentData(
        student_id=student.id,
        student_fee_assignment_id=sfa.id,
        total_amount=Decimal(str(total)) if total is not None else sum((a.amount for a in allocations), Decimal("0")),
        payment_mode=kwargs.pop("payment_mode", PaymentMode.CASH),
        payment_date=kwargs.pop("payment_date", TODAY),
        allocations=allocations,
        school_id=tenant_id,
        **kwargs,
    )


async def _reload(db: AsyncSession, sfa_id) -> StudentFeeAssignment:
    return (
        await db.execute(
            select(StudentFeeAssignment)
            .where(StudentFeeAssignment.id == sfa_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()


async def _allocated_sum(db: AsyncSession, payment_id) -> Decimal:
    return Decimal(
        str(
            (
                await db.execute(
                    select(func.coalesce(func.sum(FeePaymentAllocation.allocated_amount), 0)).where(
                        FeePaymentAllocation.payment_id == payment_id
                    )
                )
            ).scalar()
        )
    )


# --- context ---
@pytest.mark.asyncio
async def test_context_not_found_without_assignments(db_session, make_student, tenant_id) -> None:
    student = await make_student()
    assert await service.get_payment_context(db_session, tenant_id, student.id, today=TODAY) is None


@pytest.mark.asyncio
async def test_context_builds_components_history_and_summary(
    db_session, make_student, assign_structure, tenant_id, cashier_id
) -> None:
    student = await make_student(first_name="Asha", last_name="Rao", batch_name="Grade 5A")
    sfa = await assign_structure(
        student,
        [("Tuition", 2000, PAST, 1), ("Library", 500, PAST, 2), ("Sports", 300, FUTURE, 3)],
        due_date=FUTURE,
    )
    comps = await _components(db_session, sfa)
    result = await service.record_payment(
        db_session,
        _payment(tenant_id, student, sfa, [(comps["Tuition"], 800)], created_by=cashier_id, payment_date=date(2025, 7, 10)),
    )
    assert result.success, result.message

    ctx = await service.get_payment_context(db_session, tenant_id, student.id, today=TODAY)
    assert ctx is not None
    assert ctx.student.name == "Asha Rao"
    assert ctx.student.batch_name == "Grade 5A"

    [structure] = ctx.fee_structures
    assert structure.student_fee_assignment_id == sfa.id
    assert structure.status == FeeStatus.partial
    by_name = {c.name: c for c in structure.components}
    assert [c.name for c in structure.components] == ["Tuition", "Library", "Sports"]
    assert by_name["Tuition"].paid_amount == Decimal("800")
    assert by_name["Tuition"].balance == Decimal("1200")
    assert by_name["Tuition"].status == FeeStatus.partial
    assert by_name["Tuition"].last_payment_date == date(2025, 7, 10)
    assert by_name["Library"].status == FeeStatus.overdue
    assert by_name["Sports"].status == FeeStatus.due

    [history] = ctx.payment_history
    assert history.amount == Decimal("800")
    assert history.created_by == cashier_id
    assert history.allocations[0].component_name == "Tuition"
    assert history.allocations[0].structure_name == "Annual Fees"

    assert ctx.summary.total_due == Decimal("2800")
    assert ctx.summary.total_paid == Decimal("800")
    assert ctx.summary.overall_balance == Decimal("2000")
    # component-level overdue: the partially paid tuition is not counted
    assert ctx.summary.overdue_amount == Decimal("500")
    assert ctx.summary.last_payment_date == date(2025, 7, 10)
    assert ctx.summary.next_due_date == FUTURE


@pytest.mark.asyncio
async def test_context_is_repeatable_without_writes(db_session, make_student, assign_structure, tenant_id) -> None:
    student = await make_student()
    await assign_structure(student, [("Tuition", 2000, PAST, None)])
    await assign_structure(
        student, [("Bus", 900, FUTURE, None)], name="Transport", assignment_date=date(2025, 5, 1)
    )
    first = await service.get_payment_context(db_session, tenant_id, student.id, today=TODAY)
    second = await service.get_payment_context(db_session, tenant_id, student.id, today=TODAY)
    assert first.model_dump_json() == second.model_dump_json()
    assert [fs.name for fs in first.fee_structures] == ["Annual Fees", "Transport"]


@pytest.mark.asyncio
async def test_context_is_tenant_scoped(db_session, make_student, assign_structure) -> None:
    student = await make_student()
    await assign_structure(student, [("Tuition", 2000, None, None)])
    assert await service.get_payment_context(db_session, uuid.uuid4(), student.id) is None


# --- suggestion / validation over storage ---
@pytest.mark.asyncio
async def test_suggest_allocation_reads_fresh_balances(
    db_session, make_student, assign_structure, tenant_id
) -> None:
    student = await make_student()
    sfa = await assign_structure(student, [("Tuition", 2000, None, None), ("Library", 500, None, None)])
    comps = await _components(db_session, sfa)

    suggestion = await service.suggest_allocation(
        db_session, tenant_id, student.id, Decimal("2500"), AllocationStrategy.OVERDUE_FIRST, today=TODAY
    )
    assert [(a.component_name, a.amount) for a in suggestion.allocations] == [
        ("Tuition", Decimal("2000")),
        ("Library", Decimal("500")),
    ]
    assert all(a.student_fee_assignment_id == sfa.id for a in suggestion.allocations)

    await service.record_payment(db_session, _payment(tenant_id, student, sfa, [(comps["Tuition"], 2000)]))
    suggestion = await service.suggest_allocation(
        db_session, tenant_id, student.id, Decimal("2500"), AllocationStrategy.OVERDUE_FIRST, today=TODAY
    )
    assert [(a.component_name, a.amount) for a in suggestion.allocations] == [("Library", Decimal("500"))]
    assert suggestion.unallocated_amount == Decimal("2000")


@pytest.mark.asyncio
async def test_suggest_allocation_for_unknown_student_is_empty(db_session, tenant_id) -> None:
    suggestion = await service.suggest_allocation(db_session, tenant_id, uuid.uuid4(), Decimal("100"))
    assert suggestion.allocations == []


@pytest.mark.asyncio
async def test_validate_allocation_against_current_balance(
    db_session, make_student, assign_structure, tenant_id
) -> None:
    student = await make_student()
    sfa = await assign_structure(student, [("Tuition", 2000, None, None), ("Library", 500, None, None)])
    comps = await _components(db_session, sfa)

    result = await service.validate_allocation(
        db_session,
        tenant_id,
        student.id,
        [PaymentAllocation(component_id=comps["Library"].id, amount=Decimal("600"))],
    )
    assert result.is_valid is False
    assert len(result.errors) == 1
    assert "600" in result.errors[0].message and "500" in result.errors[0].message


# --- recording ---
@pytest.mark.asyncio
async def test_record_payment_updates_ledger_atomically(
    db_session, make_student, assign_structure, tenant_id, cashier_id
) -> None:
    student = await make_student()
    sfa = await assign_structure(student, [("Tuition", 2000, None, None), ("Library", 500, None, None)])
    comps = await _components(db_session, sfa)

    result = await service.record_payment(
        db_session,
        _payment(
            tenant_id, student, sfa,
            [(comps["Tuition"], 1500), (comps["Library"], 500)],
            created_by=cashier_id,
            payment_mode=PaymentMode.UPI,
            notes="First instalment",
        ),
    )
    assert result.success is True
    assert result.receipt_number.startswith("REC-")
    assert len(result.allocations) == 2

    payment = await db_session.get(FeePayment, result.payment_id)
    assert payment.amount == Decimal("2000")
    assert payment.payment_mode == "upi"
    assert await _allocated_sum(db_session, payment.id) == payment.amount

    fresh = await _reload(db_session, sfa.id)
    assert fresh.paid_amount == Decimal("2000")
    assert fresh.balance == Decimal("500")
    assert fresh.paid_amount + fresh.balance == fresh.total_amount
    assert fresh.version == 2

    audit_tables = (
        await db_session.execute(select(FeeAuditLog.reference_table).order_by(FeeAuditLog.created_at))
    ).scalars().all()
    assert set(audit_tables) == {"fee_payments", "student_fees"}


@pytest.mark.asyncio
async def test_record_payment_keeps_supplied_receipt_number(
    db_session, make_student, assign_structure, tenant_id
) -> None:
    student = await make_student()
    sfa = await assign_structure(student, [("Tuition", 2000, None, None)])
    comps = await _components(db_session, sfa)
    result = await service.record_payment(
        db_session, _payment(tenant_id, student, sfa, [(comps["Tuition"], 100)], receipt_number="RCPT-0001")
    )
    assert result.success
    assert result.receipt_number == "RCPT-0001"


@pytest.mark.asyncio
async def test_record_payment_rejects_sum_mismatch(db_session, make_student, assign_structure, tenant_id) -> None:
    student = await make_student()
    sfa = await assign_structure(student, [("Tuition", 2000, None, None)])
    sfa_id = sfa.id
    comps = await _components(db_session, sfa)
    result = await service.record_payment(
        db_session, _payment(tenant_id, student, sfa, [(comps["Tuition"], 900)], total=1000)
    )
    assert result.success is False
    assert result.error_code == PaymentErrorCode.VALIDATION
    assert (await db_session.execute(select(func.count(FeePayment.id)))).scalar() == 0
    assert (await _reload(db_session, sfa_id)).balance == Decimal("2000")


@pytest.mark.asyncio
async def test_record_payment_rejects_component_of_other_structure(
    db_session, make_student, assign_structure, tenant_id
) -> None:
    student = await make_student()
    annual = await assign_structure(student, [("Tuition", 2000, None, None)])
    transport = await assign_structure(student, [("Bus", 900, None, None)], name="Transport")
    bus = (await _components(db_session, transport))["Bus"]
    result = await service.record_payment(db_session, _payment(tenant_id, student, annual, [(bus, 100)]))
    assert result.success is False
    assert result.error_code == PaymentErrorCode.VALIDATION


@pytest.mark.asyncio
async def test_record_payment_rejects_other_students_assignment(
    db_session, make_student, assign_structure, tenant_id
) -> None:
    owner = await make_student(first_name="Owner")
    other = await make_student(first_name="Other")
    sfa = await assign_structure(owner, [("Tuition", 2000, None, None)])
    comps = await _components(db_session, sfa)
    result = await service.record_payment(db_session, _payment(tenant_id, other, sfa, [(comps["Tuition"], 100)]))
    assert result.success is False
    assert result.error_code == PaymentErrorCode.VALIDATION


@pytest.mark.asyncio
async def test_record_payment_unknown_assignment(db_session, make_student, assign_structure) -> None:
    student = await make_student()
    sfa = await assign_structure(student, [("Tuition", 2000, None, None)])
    comps = await _components(db_session, sfa)
    result = await service.record_payment(db_session, _payment(uuid.uuid4(), student, sfa, [(comps["Tuition"], 100)]))
    assert result.success is False
    assert result.error_code == PaymentErrorCode.NOT_FOUND


@pytest.mark.asyncio
async def test_record_payment_rejects_non_positive_line(db_session, make_student, assign_structure, tenant_id) -> None:
    student = await make_student()
    sfa = await assign_structure(student, [("Tuition", 2000, None, None), ("Library", 500, None, None)])
    comps = await _components(db_session, sfa)
    result = await service.record_payment(
        db_session,
        _payment(tenant_id, student, sfa, [(comps["Tuition"], 200), (comps["Library"], 0)]),
    )
    assert result.success is False
    assert result.error_code == PaymentErrorCode.VALIDATION


@pytest.mark.asyncio
async def test_second_submission_against_spent_balance_is_stale(
    db_session, make_student, assign_structure, tenant_id
) -> None:
    student = await make_student()
    sfa = await assign_structure(student, [("Tuition", 1000, None, None)])
    sfa_id = sfa.id
    comps = await _components(db_session, sfa)
    data = _payment(tenant_id, student, sfa, [(comps["Tuition"], 800)])

    first = await service.record_payment(db_session, data)
    second = await service.record_payment(db_session, data)

    assert first.success is True
    assert second.success is False
    assert second.error_code == PaymentErrorCode.STALE_BALANCE
    assert "800" in second.message
    # a rejected payment rolls back the session, so only captured ids are used from here on
    fresh = await _reload(db_session, sfa_id)
    assert fresh.balance == Decimal("200")


@pytest.mark.asyncio
async def test_record_payment_is_not_idempotent(db_session, make_student, assign_structure, tenant_id) -> None:
    student = await make_student()
    sfa = await assign_structure(student, [("Tuition", 1000, None, None)])
    comps = await _components(db_session, sfa)
    data = _payment(tenant_id, student, sfa, [(comps["Tuition"], 300)])

    assert (await service.record_payment(db_session, data)).success
    assert (await service.record_payment(db_session, data)).success
    assert (await _reload(db_session, sfa.id)).balance == Decimal("400")


@pytest.mark.asyncio
async def test_concurrent_payments_against_one_assignment(
    session_factory, db_session, make_student, assign_structure, tenant_id
) -> None:
    student = await make_student()
    sfa = await assign_structure(student, [("Tuition", 1000, None, None)])
    tuition = (await _components(db_session, sfa))["Tuition"]
    await db_session.commit()

    async def pay():
        async with session_factory() as session:
            return await service.record_payment(
                session, _payment(tenant_id, student, sfa, [(tuition, 800)])
            )

    results = await asyncio.gather(pay(), pay())

    assert sorted(r.success for r in results) == [False, True]
    loser = next(r for r in results if not r.success)
    assert loser.error_code == PaymentErrorCode.STALE_BALANCE

    async with session_factory() as session:
        fresh = await session.get(StudentFeeAssignment, sfa.id)
        assert fresh.balance == Decimal("200")
        assert fresh.paid_amount == Decimal("800")
        payments = (await session.execute(select(FeePayment))).scalars().all()
        assert len(payments) == 1
        assert await _allocated_sum(session, payments[0].id) == Decimal("800")


@pytest.mark.asyncio
async def test_storage_error_leaves_no_orphan_payment(
    db_session, make_student, assign_structure, tenant_id
) -> None:
    student = await make_student()
    sfa = await assign_structure(student, [("Tuition", 1000, None, None)])
    sfa_id = sfa.id
    comps = await _components(db_session, sfa)
    data = _payment(tenant_id, student, sfa, [(comps["Tuition"], 100)], receipt_number="DUP-1")

    first = await service.record_payment(db_session, data)
    assert first.success
    # duplicate receipt number violates the unique constraint on insert
    second = await service.record_payment(db_session, data)
    assert second.success is False
    assert second.error_code == PaymentErrorCode.STORAGE
    assert second.message == service.STORAGE_FAILURE_MESSAGE

    assert (await db_session.execute(select(func.count(FeePayment.id)))).scalar() == 1
    assert (await db_session.execute(select(func.count(FeePaymentAllocation.id)))).scalar() == 1
    fresh = await _reload(db_session, sfa_id)
    assert fresh.balance == Decimal("900")
    assert fresh.paid_amount + fresh.balance == fresh.total_amount


@pytest.mark.asyncio
async def test_component_balance_never_goes_negative(db_session, make_student, assign_structure, tenant_id) -> None:
    student = await make_student()
    sfa = await assign_structure(student, [("Tuition", 1000, None, None), ("Library", 500, None, None)])
    student_id, sfa_id = student.id, sfa.id
    comps = await _components(db_session, sfa)
    first = _payment(tenant_id, student, sfa, [(comps["Library"], 400)])
    second = _payment(tenant_id, student, sfa, [(comps["Library"], 200)])

    ok = await service.record_payment(db_session, first)
    over = await service.record_payment(db_session, second)
    assert ok.success
    assert over.success is False
    assert over.error_code == PaymentErrorCode.STALE_BALANCE

    ctx = await service.get_payment_context(db_session, tenant_id, student_id, today=TODAY)
    library = next(c for c in ctx.fee_structures[0].components if c.name == "Library")
    assert library.balance == Decimal("100")
    assert (await _reload(db_session, sfa_id)).balance == Decimal("1100")


# --- reports ---
@pytest.mark.asyncio
async def test_list_students_with_outstanding_fees(db_session, make_student, assign_structure, tenant_id) -> None:
    asha = await make_student(first_name="Asha", last_name="Rao")
    ben = await make_student(first_name="Ben", last_name="Kumar")
    cleared = await make_student(first_name="Cara", last_name="Lee")

    await assign_structure(asha, [("Tuition", 2000, None, None)], due_date=PAST)
    await assign_structure(asha, [("Bus", 900, None, None)], name="Transport", due_date=FUTURE)
    await assign_structure(ben, [("Tuition", 1500, None, None)], due_date=FUTURE)
    sfa = await assign_structure(cleared, [("Tuition", 700, None, None)])
    comps = await _components(db_session, sfa)
    assert (await service.record_payment(db_session, _payment(tenant_id, cleared, sfa, [(comps["Tuition"], 700)]))).success

    rows = await service.list_students_with_outstanding_fees(db_session, tenant_id, today=TODAY)
    assert [(r.name, r.total_outstanding, r.is_overdue) for r in rows] == [
        ("Ben Kumar", Decimal("1500"), False),
        ("Asha Rao", Decimal("2900"), True),
    ]


@pytest.mark.asyncio
async def test_list_payment_collections(db_session, make_student, assign_structure, tenant_id) -> None:
    student = await make_student(first_name="Asha", last_name="Rao", batch_name="Grade 5A")
    sfa = await assign_structure(student, [("Tuition", 2000, None, None)], due_date=PAST)
    comps = await _components(db_session, sfa)
    await service.record_payment(
        db_session,
        _payment(tenant_id, student, sfa, [(comps["Tuition"], 500)], payment_date=date(2025, 5, 1), receipt_number="R-1"),
    )
    await service.record_payment(
        db_session,
        _payment(
            tenant_id, student, sfa, [(comps["Tuition"], 300)],
            payment_date=date(2025, 8, 1), receipt_number="R-2", payment_mode=PaymentMode.CARD,
        ),
    )

    [row] = await service.list_payment_collections(db_session, tenant_id, today=TODAY)
    assert row.batch_name == "Grade 5A"
    assert row.amount_paid == Decimal("800")
    assert row.balance == Decimal("1200")
    assert row.last_receipt_number == "R-2"
    assert row.last_payment_mode == "card"
    assert row.status == FeeStatus.partial


@pytest.mark.asyncio
async def test_student_ledger_running_balance(db_session, make_student, assign_structure, tenant_id) -> None:
    student = await make_student()
    sfa = await assign_structure(student, [("Tuition", 2000, None, None)], assignment_date=date(2025, 4, 1))
    await assign_structure(student, [("Bus", 900, None, None)], name="Transport", assignment_date=date(2025, 6, 1))
    comps = await _components(db_session, sfa)
    await service.record_payment(
        db_session,
        _payment(tenant_id, student, sfa, [(comps["Tuition"], 1000)], payment_date=date(2025, 5, 1), notes="cheque 114"),
    )

    ledger = await service.get_student_ledger(db_session, tenant_id, student.id)
    assert ledger.applied_structures == ["Annual Fees", "Transport"]
    assert [(t.debit, t.credit, t.balance) for t in ledger.transactions] == [
        (Decimal("2000"), Decimal("0"), Decimal("2000")),
        (Decimal("0"), Decimal("1000"), Decimal("1000")),
        (Decimal("900"), Decimal("0"), Decimal("1900")),
    ]
    assert ledger.transactions[1].description == "Payment - Tuition (cheque 114)"
    assert ledger.transactions[1].payment_mode == "CASH"
    assert ledger.balance == Decimal("1900")


@pytest.mark.asyncio
async def test_student_ledger_not_found(db_session, make_student, tenant_id) -> None:
    student = await make_student()
    assert await service.get_student_ledger(db_session, tenant_id, student.id) is None


# --- dues reports ---
@pytest.mark.asyncio
async def test_dues_summary_and_batch_rollup(db_session, make_student, assign_structure, tenant_id) -> None:
    asha = await make_student(first_name="Asha", last_name="Rao", batch_name="Grade 5A")
    ben = await make_student(first_name="Ben", last_name="Kumar", batch_name="Grade 5A")
    cara = await make_student(first_name="Cara", last_name="Lee", batch_name="Grade 6B")
    dev = await make_student(first_name="Dev", last_name="Singh")

    annual = await assign_structure(asha, [("Tuition", 2000, None, None)], due_date=PAST)
    await assign_structure(
        asha, [("Bus", 900, None, None)], name="Transport", due_date=FUTURE, assignment_date=date(2025, 5, 1)
    )
    await assign_structure(ben, [("Tuition", 1500, None, None)], due_date=PAST)
    settled = await assign_structure(cara, [("Tuition", 700, None, None)], due_date=PAST)
    await assign_structure(dev, [("Tuition", 400, None, None)], due_date=FUTURE)

    tuition = (await _components(db_session, annual))["Tuition"]
    assert (
        await service.record_payment(
            db_session, _payment(tenant_id, asha, annual, [(tuition, 500)], payment_date=date(2025, 7, 1))
        )
    ).success
    tuition = (await _components(db_session, settled))["Tuition"]
    assert (await service.record_payment(db_session, _payment(tenant_id, cara, settled, [(tuition, 700)]))).success

    dues = await service.get_dues_summary(db_session, tenant_id, today=TODAY)
    assert [(d.student_name, d.status, d.days_past_due) for d in dues] == [
        ("Ben Kumar", FeeStatus.overdue, 63),
        ("Cara Lee", FeeStatus.paid, None),
        ("Asha Rao", FeeStatus.partial, 63),
        ("Dev Singh", FeeStatus.due, None),
    ]
    asha_dues = dues[2]
    assert (asha_dues.total_fees, asha_dues.paid_amount, asha_dues.balance) == (
        Decimal("2900"), Decimal("500"), Decimal("2400")
    )
    assert asha_dues.due_date == PAST
    assert asha_dues.last_payment_date == date(2025, 7, 1)
    # a settled assignment does not carry a due date into the rollup
    assert dues[1].due_date is None

    summary = await service.get_dues_report_summary(db_session, tenant_id, today=TODAY)
    assert (summary.total_students, summary.paid_students, summary.partial_students) == (4, 1, 1)
    assert (summary.overdue_students, summary.due_students) == (1, 1)
    assert summary.total_collected == Decimal("1200")
    assert summary.total_outstanding == Decimal("4300")
    assert summary.collection_rate == 25

    batches = await service.get_batch_dues_report(db_session, tenant_id, today=TODAY)
    assert [
        (b.batch_name, b.total_students, b.paid_students, b.overdue_students, b.outstanding_amount, b.collection_rate)
        for b in batches
    ] == [
        ("Grade 5A", 2, 0, 1, Decimal("3900"), 0),
        ("Grade 6B", 1, 1, 0, Decimal("0"), 100),
        ("Unknown Batch", 1, 0, 0, Decimal("400"), 0),
    ]


@pytest.mark.asyncio
async def test_dues_reports_for_school_without_assignments(db_session, tenant_id) -> None:
    assert await service.get_dues_summary(db_session, tenant_id) == []
    summary = await service.get_dues_report_summary(db_session, tenant_id)
    assert summary.total_students == 0
    assert summary.collection_rate == 0
    assert await service.get_batch_dues_report(db_session, tenant_id) == []


@pytest.mark.parametrize(
    "paid, total, expected",
    [(1, 3, 33), (2, 3, 67), (1, 8, 13), (0, 5, 0), (4, 4, 100), (0, 0, 0)],
)
def test_collection_rate_rounds_half_up(paid, total, expected) -> None:
    assert service._collection_rate(paid, total) == expected
