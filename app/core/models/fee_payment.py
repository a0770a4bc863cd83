"""Fee payment: one recorded transaction against a student fee assignment. Immutable once committed."""

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import relationship

from app.db.session import Base


class FeePayment(Base):
    __tablename__ = "fee_payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="chk_fee_payment_amount_positive"),
        CheckConstraint(
            "payment_mode IN ('cash','upi','card','bank_transfer','cheque')",
            name="chk_fee_payment_mode",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, nullable=False, index=True)
    student_fee_assignment_id = Column(
        Uuid,
        ForeignKey("student_fees.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    amount = Column(Numeric(12, 2), nullable=False)
    payment_mode = Column(String(30), nullable=False)
    payment_date = Column(Date, nullable=False)
    receipt_number = Column(String(50), nullable=False, unique=True)
    notes = Column(Text, nullable=True)
    created_by = Column(Uuid, nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    student_fee_assignment = relationship("StudentFeeAssignment", backref="payments")
    allocations = relationship(
        "FeePaymentAllocation",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="FeePaymentAllocation.line_number",
    )
