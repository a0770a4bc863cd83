"""Fee payment schemas: payment context, allocation suggestions, validation, recording, reports."""

from datetime import date
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.core.enums import (
    AllocationStrategy,
    FeeStatus,
    PaymentErrorCode,
    PaymentMode,
    ValidationIssueType,
)


# --- Payment context ---
class StudentIdentity(BaseModel):
    id: UUID
    name: str
    admission_number: str
    batch_name: str


class ComponentSnapshot(BaseModel):
    """Fee component with paid/balance computed from the student's allocations."""

    id: UUID
    name: str
    amount: Decimal
    paid_amount: Decimal
    balance: Decimal
    due_date: Optional[date] = None
    recurrence: str
    priority: Optional[int] = None  # None = lowest priority
    status: FeeStatus
    last_payment_date: Optional[date] = None


class FeeStructureSnapshot(BaseModel):
    id: UUID
    name: str
    academic_year: str
    student_fee_assignment_id: UUID
    assignment_date: Optional[date] = None
    due_date: Optional[date] = None
    total_amount: Decimal
    paid_amount: Decimal
    balance: Decimal
    status: FeeStatus
    components: List[ComponentSnapshot] = Field(default_factory=list)


class PaymentHistoryAllocation(BaseModel):
    structure_id: Optional[UUID] = None
    structure_name: Optional[str] = None
    component_id: Optional[UUID] = None
    component_name: Optional[str] = None
    amount: Decimal


class PaymentHistoryItem(BaseModel):
    id: UUID
    payment_date: date
    amount: Decimal
    mode: str
    receipt_number: str
    created_by: Optional[UUID] = None
    notes: Optional[str] = None
    allocations: List[PaymentHistoryAllocation] = Field(default_factory=list)


class PaymentSummary(BaseModel):
    total_due: Decimal
    total_paid: Decimal
    overall_balance: Decimal
    overdue_amount: Decimal
    last_payment_date: Optional[date] = None
    next_due_date: Optional[date] = None


class StudentPaymentContext(BaseModel):
    student: StudentIdentity
    fee_structures: List[FeeStructureSnapshot]
    payment_history: List[PaymentHistoryItem]
    summary: PaymentSummary


# --- Allocation ---
class PaymentAllocation(BaseModel):
    """One line of a payment split. Only component_id and amount are required on input."""

    component_id: UUID
    amount: Decimal
    component_name: Optional[str] = None
    structure_id: Optional[UUID] = None
    structure_name: Optional[str] = None
    student_fee_assignment_id: Optional[UUID] = None
    priority: Optional[int] = None


class AllocationCandidate(BaseModel):
    """Component with an outstanding balance, in structure order then component order."""

    component_id: UUID
    component_name: str
    balance: Decimal
    is_overdue: bool
    priority: Optional[int] = None
    structure_id: UUID
    structure_name: str
    student_fee_assignment_id: UUID


class AllocationSuggestionRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    strategy: AllocationStrategy = AllocationStrategy.OVERDUE_FIRST


class AllocationSuggestion(BaseModel):
    """Proposed split. unallocated_amount is what the strategy could not place."""

    strategy: AllocationStrategy
    payment_amount: Decimal
    allocations: List[PaymentAllocation]
    allocated_amount: Decimal
    unallocated_amount: Decimal


class ValidateAllocationRequest(BaseModel):
    allocations: List[PaymentAllocation] = Field(default_factory=list)


class ValidationIssue(BaseModel):
    field: str
    message: str
    type: ValidationIssueType


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)


# --- Recording ---
class PaymentCreate(BaseModel):
    """Request body for recording a payment; tenant and collector come from the session."""

    student_id: UUID
    student_fee_assignment_id: UUID
    total_amount: Decimal = Field(..., gt=0)
    payment_mode: PaymentMode
    payment_date: Optional[date] = None
    allocations: List[PaymentAllocation] = Field(..., min_length=1)
    receipt_number: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = None


class NewPaymentData(BaseModel):
    student_id: UUID
    student_fee_assignment_id: UUID
    total_amount: Decimal
    payment_mode: PaymentMode
    payment_date: date
    allocations: List[PaymentAllocation]
    created_by: Optional[UUID] = None
    school_id: UUID
    receipt_number: Optional[str] = None
    notes: Optional[str] = None


class PaymentResult(BaseModel):
    success: bool
    message: str
    payment_id: Optional[UUID] = None
    receipt_number: Optional[str] = None
    allocations: Optional[List[PaymentAllocation]] = None
    error_code: Optional[PaymentErrorCode] = None


# --- Reports ---
class OutstandingStudent(BaseModel):
    id: UUID
    name: str
    admission_number: str
    total_outstanding: Decimal
    is_overdue: bool


class PaymentCollectionItem(BaseModel):
    id: UUID
    student_id: UUID
    student_name: str
    admission_number: str
    batch_name: str
    structure_id: UUID
    structure_name: str
    amount_due: Decimal
    amount_paid: Decimal
    balance: Decimal
    last_payment_date: Optional[date] = None
    last_payment_mode: Optional[str] = None
    last_receipt_number: Optional[str] = None
    status: FeeStatus


class StudentTransaction(BaseModel):
    id: str
    transaction_date: date
    description: str
    debit: Decimal
    credit: Decimal
    balance: Decimal
    payment_mode: Optional[str] = None
    receipt_number: Optional[str] = None


class StudentLedger(BaseModel):
    student_id: UUID
    student_name: str
    admission_number: str
    batch_name: str
    applied_structures: List[str]
    total_fees: Decimal
    paid_amount: Decimal
    balance: Decimal
    last_payment_date: Optional[date] = None
    transactions: List[StudentTransaction]


class StudentDues(BaseModel):
    """Per-student dues across all assignments. due_date is the earliest one still outstanding."""

    student_id: UUID
    student_name: str
    admission_number: str
    batch_name: str
    total_fees: Decimal
    paid_amount: Decimal
    balance: Decimal
    due_date: Optional[date] = None
    last_payment_date: Optional[date] = None
    status: FeeStatus
    days_past_due: Optional[int] = None


class DuesReportSummary(BaseModel):
    total_students: int
    paid_students: int
    partial_students: int
    overdue_students: int
    due_students: int
    total_collected: Decimal
    total_outstanding: Decimal
    collection_rate: int  # % of students fully paid


class BatchDuesReport(BaseModel):
    batch_name: str
    total_students: int
    paid_students: int
    overdue_students: int
    total_fees: Decimal
    collected_amount: Decimal
    outstanding_amount: Decimal
    collection_rate: int
