"""Student fee assignment: binds one student to one fee structure and tracks aggregate paid/balance."""

import uuid
from datetime import date, datetime

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, Numeric, Uuid
from sqlalchemy.orm import relationship

from app.db.session import Base


class StudentFeeAssignment(Base):
    """
    balance = total_amount - paid_amount, never negative.
    Status is not stored; see app.api.v1.fee_payments.allocation.derive_fee_status.
    Only the payment recorder writes paid_amount/balance, bumping version on each write.
    """

    __tablename__ = "student_fees"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="chk_student_fee_balance_non_negative"),
        CheckConstraint("paid_amount >= 0", name="chk_student_fee_paid_non_negative"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, nullable=False, index=True)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    fee_structure_id = Column(
        Uuid,
        ForeignKey("fee_structures.id", ondelete="RESTRICT"),
        nullable=False,
    )
    total_amount = Column(Numeric(12, 2), nullable=False)
    paid_amount = Column(Numeric(12, 2), nullable=False, default=0)
    balance = Column(Numeric(12, 2), nullable=False)
    due_date = Column(Date, nullable=True)
    assignment_date = Column(Date, nullable=False, default=date.today)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    student = relationship("Student")
    fee_structure = relationship("FeeStructure")
