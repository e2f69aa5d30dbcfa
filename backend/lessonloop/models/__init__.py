# Models package init
"""
LessonLoop Backend — ORM Models
================================

Importing this package registers every table on `Base.metadata`, which
Alembic (`alembic/env.py`) and the test suite (`create_all`) depend on.
"""

from lessonloop.models.organisation import Organisation, OrgMembership  # noqa: F401
from lessonloop.models.billing import (  # noqa: F401
    BillingRun,
    Invoice,
    InvoiceItem,
    MakeUpCredit,
    Payment,
    RateCard,
)
from lessonloop.models.roster import (  # noqa: F401
    AttendanceRecord,
    Guardian,
    Lesson,
    LessonParticipant,
    Student,
    StudentGuardian,
)
from lessonloop.models.assistant import ActionProposal, QueuedMessage  # noqa: F401
