"""
Pure allocation logic over a StudentPaymentContext snapshot. Nothing here touches storage.

- derive_fee_status: paid / partial / overdue / due from balance, paid amount and due date.
- suggest_allocations: split an amount across outstanding components with one of three strategies.
- check_allocations: advisory validation of a proposed split against the snapshot balances.
"""

from collections import defaultdict
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, List, Optional, Tuple
from uuid import UUID

from app.core.enums import AllocationStrategy, FeeStatus, ValidationIssueType

from .schemas import (
    AllocationCandidate,
    AllocationSuggestion,
    PaymentAllocation,
    StudentPaymentContext,
    ValidationIssue,
    ValidationResult,
)

ZERO = Decimal("0")
# Proportional shares are rounded half-up to whole currency units.
PROPORTIONAL_QUANTUM = Decimal("1")


def to_decimal(val) -> Decimal:
    if val is None:
        return ZERO
    return val if isinstance(val, Decimal) else Decimal(str(val))


def is_past_due(due_date: Optional[date], today: date) -> bool:
    return due_date is not None and due_date < today


def derive_fee_status(
    balance: Decimal,
    paid_amount: Decimal,
    due_date: Optional[date],
    today: date,
) -> FeeStatus:
    """Status of a component or an assignment. Partial takes precedence over overdue."""
    if balance <= ZERO:
        return FeeStatus.paid
    if paid_amount > ZERO:
        return FeeStatus.partial
    if is_past_due(due_date, today):
        return FeeStatus.overdue
    return FeeStatus.due


def collect_candidates(context: StudentPaymentContext) -> List[AllocationCandidate]:
    candidates: List[AllocationCandidate] = []
    for fs in context.fee_structures:
        for comp in fs.components:
            if comp.balance <= ZERO:
                continue
            candidates.append(
                AllocationCandidate(
                    component_id=comp.id,
                    component_name=comp.name,
                    balance=comp.balance,
                    is_overdue=comp.status == FeeStatus.overdue,
                    priority=comp.priority,
                    structure_id=fs.id,
                    structure_name=fs.name,
                    student_fee_assignment_id=fs.student_fee_assignment_id,
                )
            )
    return candidates


def _priority_rank(priority: Optional[int]) -> Tuple[bool, int]:
    # Unset priority sorts after every explicit one.
    return (priority is None, priority if priority is not None else 0)


def _overdue_first_key(c: AllocationCandidate):
    return (not c.is_overdue, _priority_rank(c.priority))


def _priority_based_key(c: AllocationCandidate):
    return (_priority_rank(c.priority), not c.is_overdue)


def _line(c: AllocationCandidate, amount: Decimal) -> PaymentAllocation:
    return PaymentAllocation(
        component_id=c.component_id,
        component_name=c.component_name,
        structure_id=c.structure_id,
        structure_name=c.structure_name,
        student_fee_assignment_id=c.student_fee_assignment_id,
        priority=c.priority,
        amount=amount,
    )


def _allocate_greedy(
    candidates: List[AllocationCandidate],
    amount: Decimal,
    key: Callable[[AllocationCandidate], tuple],
) -> List[PaymentAllocation]:
    allocations: List[PaymentAllocation] = []
    remaining = amount
    # sorted() is stable: equal keys keep structure/component order.
    for c in sorted(candidates, key=key):
        if remaining <= ZERO:
            break
        portion = min(remaining, c.balance)
        if portion > ZERO:
            allocations.append(_line(c, portion))
            remaining -= portion
    return allocations


def allocate_overdue_first(candidates: List[AllocationCandidate], amount: Decimal) -> List[PaymentAllocation]:
    return _allocate_greedy(candidates, amount, _overdue_first_key)


def allocate_priority_based(candidates: List[AllocationCandidate], amount: Decimal) -> List[PaymentAllocation]:
    return _allocate_greedy(candidates, amount, _priority_based_key)


def allocate_proportional(candidates: List[AllocationCandidate], amount: Decimal) -> List[PaymentAllocation]:
    """
    Each candidate gets round(amount * balance / total_outstanding), capped at its balance.
    Rounding drift is not redistributed; it shows up as unallocated_amount.
    """
    total_outstanding = sum((c.balance for c in candidates), ZERO)
    if total_outstanding <= ZERO:
        return []
    allocations: List[PaymentAllocation] = []
    for c in candidates:
        share = c.balance / total_outstanding
        portion = min(
            (amount * share).quantize(PROPORTIONAL_QUANTUM, rounding=ROUND_HALF_UP),
            c.balance,
        )
        if portion > ZERO:
            allocations.append(_line(c, portion))
    return allocations


STRATEGIES: Dict[AllocationStrategy, Callable[[List[AllocationCandidate], Decimal], List[PaymentAllocation]]] = {
    AllocationStrategy.OVERDUE_FIRST: allocate_overdue_first,
    AllocationStrategy.PRIORITY_BASED: allocate_priority_based,
    AllocationStrategy.PROPORTIONAL: allocate_proportional,
}


def suggest_allocations(
    context: Optional[StudentPaymentContext],
    amount: Decimal,
    strategy: AllocationStrategy = AllocationStrategy.OVERDUE_FIRST,
) -> AllocationSuggestion:
    amount = to_decimal(amount)
    strategy = AllocationStrategy(strategy)
    candidates = collect_candidates(context) if context is not None else []
    allocations = STRATEGIES[strategy](candidates, amount) if candidates else []
    allocated = sum((a.amount for a in allocations), ZERO)
    return AllocationSuggestion(
        strategy=strategy,
        payment_amount=amount,
        allocations=allocations,
        allocated_amount=allocated,
        unallocated_amount=amount - allocated,
    )


def component_balances(context: StudentPaymentContext) -> Dict[UUID, Decimal]:
    balances: Dict[UUID, Decimal] = {}
    for fs in context.fee_structures:
        for comp in fs.components:
            balances[comp.id] = comp.balance
    return balances


def _error(field: str, message: str) -> ValidationIssue:
    return ValidationIssue(field=field, message=message, type=ValidationIssueType.error)


def _warning(field: str, message: str) -> ValidationIssue:
    return ValidationIssue(field=field, message=message, type=ValidationIssueType.warning)


def check_allocations(
    context: Optional[StudentPaymentContext],
    allocations: List[PaymentAllocation],
) -> ValidationResult:
    if context is None:
        return ValidationResult(
            is_valid=False,
            errors=[_error("context", "Unable to load student payment context")],
            warnings=[],
        )

    balances = component_balances(context)
    names = {comp.id: comp.name for fs in context.fee_structures for comp in fs.components}
    requested: Dict[UUID, Decimal] = defaultdict(lambda: ZERO)
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    for alloc in allocations:
        label = alloc.component_name or names.get(alloc.component_id) or str(alloc.component_id)
        balance = balances.get(alloc.component_id)
        if balance is None:
            errors.append(_error("allocation", f"Component {label} not found"))
            continue
        amount = to_decimal(alloc.amount)
        if amount <= ZERO:
            errors.append(_error("amount", f"Amount for {label} must be greater than 0"))
            continue
        # Repeated lines for one component draw on the same balance.
        available = balance - requested[alloc.component_id]
        requested[alloc.component_id] += amount
        if amount > available:
            errors.append(
                _error("amount", f"Amount for {label} ({amount}) exceeds balance ({available})")
            )
        elif amount == available:
            warnings.append(_warning("allocation", f"{label} will be fully paid"))

    total = sum((to_decimal(a.amount) for a in allocations), ZERO)
    if total == ZERO:
        errors.append(_error("total", "Total allocation amount must be greater than 0"))

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
