"""Fee component: one billable line item (Tuition, Library, Bus) inside a fee structure."""

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Uuid
from sqlalchemy.orm import relationship

from app.core.enums import FeeRecurrence
from app.db.session import Base


class FeeComponent(Base):
    """
    amount is immutable once billed.
    priority: lower is paid first; NULL sorts after every explicit priority.
    """

    __tablename__ = "fee_components"
    __table_args__ = (
        CheckConstraint(
            "recurrence IN ('monthly','quarterly','one-time')",
            name="chk_fee_component_recurrence",
        ),
        CheckConstraint("amount >= 0", name="chk_fee_component_amount"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    fee_structure_id = Column(
        Uuid,
        ForeignKey("fee_structures.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(100), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    due_date = Column(Date, nullable=True)
    recurrence = Column(String(20), nullable=False, default=FeeRecurrence.ONE_TIME.value)
    priority = Column(Integer, nullable=True)
    display_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    fee_structure = relationship("FeeStructure", back_populates="components")
