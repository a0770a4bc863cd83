from app.core.models.student import Batch, BatchStudent, Student
from app.core.models.fee_structure import FeeStructure
from app.core.models.fee_component import FeeComponent
from app.core.models.student_fee_assignment import StudentFeeAssignment
from app.core.models.fee_payment import FeePayment
from app.core.models.fee_payment_allocation import FeePaymentAllocation
from app.core.models.fee_audit_log import FeeAuditLog

__all__ = [
    "Batch",
    "BatchStudent",
    "Student",
    "FeeStructure",
    "FeeComponent",
    "StudentFeeAssignment",
    "FeePayment",
    "FeePaymentAllocation",
    "FeeAuditLog",
]
