"""Fee structure: named bundle of fee components for an academic year."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Column, DateTime, String, Uuid
from sqlalchemy.orm import relationship

from app.db.session import Base


class FeeStructure(Base):
    """Owns its components; deleting a structure deletes them."""

    __tablename__ = "fee_structures"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    academic_year = Column(String(20), nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    components = relationship(
        "FeeComponent",
        back_populates="fee_structure",
        cascade="all, delete-orphan",
        order_by="FeeComponent.display_order",
    )

    @property
    def total_amount(self) -> Decimal:
        return sum((Decimal(c.amount) for c in self.components), Decimal("0"))
