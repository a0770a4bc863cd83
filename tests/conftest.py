import os
import uuid
from datetime import date
from decimal import Decimal
from typing import AsyncGenerator, Callable, Dict, List, Optional

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.auth.security import create_access_token
from app.core.models import (
    Batch,
    BatchStudent,
    FeeComponent,
    FeeStructure,
    Student,
    StudentFeeAssignment,
)
from app.db.session import Base, get_db
from app.main import app


@pytest.fixture()
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """File-backed SQLite per test so separate sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fees.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture()
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for a test and override FastAPI dependency."""
    async with session_factory() as session:

        async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
            yield session

        app.dependency_overrides[get_db] = override_get_db
        yield session
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture()
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def cashier_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def auth_headers(tenant_id, cashier_id) -> Dict[str, str]:
    token = create_access_token(
        subject={
            "user_id": str(cashier_id),
            "tenant_id": str(tenant_id),
            "role": "ACCOUNTANT",
            "permissions": {"fees": {"read": True, "create": True}},
        }
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def make_student(db_session: AsyncSession, tenant_id) -> Callable:
    async def _make(
        first_name: str = "Asha",
        last_name: str = "Rao",
        admission_number: Optional[str] = None,
        batch_name: Optional[str] = None,
    ) -> Student:
        student = Student(
            tenant_id=tenant_id,
            first_name=first_name,
            last_name=last_name,
            admission_number=admission_number or f"ADM-{uuid.uuid4().hex[:6].upper()}",
        )
        db_session.add(student)
        if batch_name:
            batch = Batch(tenant_id=tenant_id, name=batch_name)
            db_session.add(batch)
            await db_session.flush()
            db_session.add(BatchStudent(batch_id=batch.id, student_id=student.id, is_current=True))
        await db_session.commit()
        return student

    return _make


@pytest.fixture()
def assign_structure(db_session: AsyncSession, tenant_id) -> Callable:
    """Create a fee structure from (name, amount, due_date, priority) tuples and assign it to a student."""

    async def _assign(
        student: Student,
        components: List[tuple],
        name: str = "Annual Fees",
        due_date: Optional[date] = None,
        assignment_date: Optional[date] = None,
    ) -> StudentFeeAssignment:
        structure = FeeStructure(tenant_id=tenant_id, name=name, academic_year="2025-26")
        db_session.add(structure)
        await db_session.flush()
        total = Decimal("0")
        for order, (comp_name, amount, comp_due, priority) in enumerate(components):
            db_session.add(
                FeeComponent(
                    fee_structure_id=structure.id,
                    name=comp_name,
                    amount=Decimal(str(amount)),
                    due_date=comp_due,
                    recurrence="one-time",
                    priority=priority,
                    display_order=order,
                )
            )
            total += Decimal(str(amount))
        sfa = StudentFeeAssignment(
            tenant_id=tenant_id,
            student_id=student.id,
            fee_structure_id=structure.id,
            total_amount=total,
            paid_amount=Decimal("0"),
            balance=total,
            due_date=due_date,
            assignment_date=assignment_date or date(2025, 4, 1),
        )
        db_session.add(sfa)
        await db_session.commit()
        return sfa

    return _assign
