"""
LessonLoop Backend — Application Package Initializer
=====================================================

What: Marks the `lessonloop` directory as a Python package.
Who:  Imported by uvicorn (`lessonloop.main:app`), Alembic, and pytest.

Architecture Note:
    The backend follows a layered architecture:

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns, auth dependencies
    ├─────────────────────────────────────┤
    │         Services (Business Logic)   │  ← billing runs, invoices, credits
    ├─────────────────────────────────────┤
    │       Models & Schemas (Data)       │  ← SQLAlchemy ORM + Pydantic
    ├─────────────────────────────────────┤
    │        Database (Persistence)       │  ← Async SQLAlchemy sessions
    └─────────────────────────────────────┘

    Every tenant-owned row carries an `org_id`; services always filter by it.
"""

__version__ = "1.0.0"
