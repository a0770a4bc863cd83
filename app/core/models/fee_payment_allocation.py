"""Split of one fee payment across fee components."""

import uuid

from sqlalchemy import CheckConstraint, Column, ForeignKey, Integer, Numeric, Uuid
from sqlalchemy.orm import relationship

from app.db.session import Base


class FeePaymentAllocation(Base):
    """Sum of allocated_amount over a payment equals the payment amount."""

    __tablename__ = "fee_payment_allocations"
    __table_args__ = (
        CheckConstraint("allocated_amount > 0", name="chk_fee_payment_allocation_positive"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id = Column(Uuid, ForeignKey("fee_payments.id", ondelete="CASCADE"), nullable=False, index=True)
    component_id = Column(
        Uuid,
        ForeignKey("fee_components.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    allocated_amount = Column(Numeric(12, 2), nullable=False)
    line_number = Column(Integer, nullable=False, default=0)

    payment = relationship("FeePayment", back_populates="allocations")
    component = relationship("FeeComponent")
