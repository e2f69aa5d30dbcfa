"""
LessonLoop Backend — LoopAssist Service
========================================

What:  Stores LLM action proposals and runs them once a human confirms.
Who:   /api/orgs/{org_id}/assistant/proposals routes.

Proposal lifecycle:
    create  → LLM proposes {action_type, description, params, entities}
              → stored as 'proposed'
    confirm → role check → entity checks → executor → 'executed' | 'failed'
    cancel  → 'cancelled'

Executors run inside a SAVEPOINT: a failing action leaves no partial writes
but the proposal itself is still updated to 'failed' with the error.
Nothing LoopAssist does sends a message; reminders are queued for staff
review.
"""

import logging
import re
import uuid
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lessonloop.config import settings
from lessonloop.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from lessonloop.models.assistant import (
    PROPOSAL_CANCELLED,
    PROPOSAL_EXECUTED,
    PROPOSAL_FAILED,
    PROPOSAL_PROPOSED,
    ActionProposal,
    QueuedMessage,
)
from lessonloop.models.billing import INVOICE_OVERDUE, INVOICE_SENT, Invoice
from lessonloop.models.organisation import (
    ROLE_ADMIN,
    ROLE_FINANCE,
    ROLE_OWNER,
    ROLE_TEACHER,
    Organisation,
    OrgMembership,
    utcnow,
)
from lessonloop.models.roster import LESSON_SCHEDULED, Guardian, Lesson, Student
from lessonloop.schemas.billing import BillingRunCreate
from lessonloop.services.billing_run_service import billing_run_service
from lessonloop.services.gemini_service import gemini_service
from lessonloop.services.invoice_service import invoice_service
from lessonloop.services.llm_base import LLMService
from lessonloop.services.roster_service import roster_service

logger = logging.getLogger(__name__)

ACTION_ROLE_PERMISSIONS: Dict[str, tuple] = {
    "generate_billing_run": (ROLE_OWNER, ROLE_ADMIN, ROLE_FINANCE),
    "send_invoice_reminders": (ROLE_OWNER, ROLE_ADMIN, ROLE_FINANCE),
    "complete_lessons": (ROLE_OWNER, ROLE_ADMIN, ROLE_TEACHER),
    "mark_attendance": (ROLE_OWNER, ROLE_ADMIN, ROLE_TEACHER),
    "reschedule_lessons": (ROLE_OWNER, ROLE_ADMIN, ROLE_TEACHER),
    "draft_email": (ROLE_OWNER, ROLE_ADMIN, ROLE_TEACHER),
    "send_progress_report": (ROLE_OWNER, ROLE_ADMIN, ROLE_TEACHER),
    "cancel_lesson": (ROLE_OWNER, ROLE_ADMIN),
}
DEFAULT_ACTION_ROLES = (ROLE_OWNER, ROLE_ADMIN)

MESSAGING_ACTIONS = {"send_invoice_reminders", "draft_email", "send_progress_report"}
QUEUED_FOR_REVIEW_NOTE = (
    "Note: Messages are queued for your review in the Messages page. "
    "They are not sent automatically."
)

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


def allowed_roles_for(action_type: str) -> tuple:
    return ACTION_ROLE_PERMISSIONS.get(action_type, DEFAULT_ACTION_ROLES)


def validate_entities(entities: List[Dict[str, Any]]) -> None:
    """Raises ValueError for oversized or malformed entity lists."""
    if len(entities) > settings.max_proposal_entities:
        raise ValueError(
            f"Too many entities in proposal (max {settings.max_proposal_entities})"
        )
    for entity in entities:
        entity_id = entity.get("id")
        if entity_id and not UUID_RE.match(str(entity_id)):
            raise ValueError(f"Invalid entity ID format: {entity_id}")


def _uuid_list(values: Any, name: str) -> List[uuid.UUID]:
    if values is None:
        return []
    if not isinstance(values, list):
        raise ValueError(f"{name} must be a list")
    try:
        return [uuid.UUID(str(v)) for v in values]
    except ValueError:
        raise ValueError(f"{name} must contain UUIDs")


class AssistantService:
    """LoopAssist proposals. The LLM provider is injected so tests can mock it."""

    def __init__(self, llm: LLMService):
        self.llm = llm

    async def create_proposal(
        self, db: AsyncSession, org_id: uuid.UUID, membership: OrgMembership, message: str
    ) -> ActionProposal:
        context = await self._build_context(db, org_id, membership)
        proposal_data = await self.llm.propose_action(message, context)

        action_type = proposal_data["action_type"]
        if action_type not in ACTION_ROLE_PERMISSIONS:
            raise ValidationError(
                f"LoopAssist proposed an unsupported action '{action_type}'",
                field="action_type",
            )

        proposal = ActionProposal(
            org_id=org_id,
            user_id=membership.user_id,
            prompt=message,
            action_type=action_type,
            description=proposal_data.get("description", ""),
            params=proposal_data.get("params", {}),
            entities=proposal_data.get("entities", []),
            status=PROPOSAL_PROPOSED,
        )
        db.add(proposal)
        await db.flush()
        logger.info("Proposal %s (%s) created for user %s", proposal.id, action_type, membership.user_id)
        return proposal

    async def get_proposal(
        self, db: AsyncSession, org_id: uuid.UUID, user_id: uuid.UUID, proposal_id: uuid.UUID
    ) -> ActionProposal:
        result = await db.execute(
            select(ActionProposal).where(
                ActionProposal.id == proposal_id,
                ActionProposal.org_id == org_id,
                ActionProposal.user_id == user_id,
            )
        )
        proposal = result.scalar_one_or_none()
        if proposal is None:
            raise NotFoundError(resource="proposal", resource_id=str(proposal_id))
        return proposal

    async def confirm_proposal(
        self,
        db: AsyncSession,
        org_id: uuid.UUID,
        membership: OrgMembership,
        proposal_id: uuid.UUID,
    ) -> ActionProposal:
        """
        Executes a proposal on behalf of the user who asked for it.

        Raises:
            NotFoundError:         not this user's proposal in this org
            ConflictError:         already executed, failed or cancelled
            PermissionDeniedError: the user's role may not run this action
        """
        proposal = await self.get_proposal(db, org_id, membership.user_id, proposal_id)
        if proposal.status != PROPOSAL_PROPOSED:
            raise ConflictError("Proposal already processed", context={"status": proposal.status})

        if membership.role not in allowed_roles_for(proposal.action_type):
            raise PermissionDeniedError(
                "Your role does not have permission to execute this action",
                context={"action_type": proposal.action_type, "role": membership.role},
            )

        try:
            async with db.begin_nested():
                validate_entities(proposal.entities or [])
                result = await self._execute(db, org_id, membership.user_id, proposal)
            status = PROPOSAL_EXECUTED
        except Exception as e:
            logger.warning("Proposal %s (%s) failed: %s", proposal.id, proposal.action_type, str(e))
            status = PROPOSAL_FAILED
            result = {"error": str(e) or "Execution failed"}

        if status == PROPOSAL_EXECUTED and proposal.action_type in MESSAGING_ACTIONS:
            result["message"] = f"{result.get('message', '')}\n\n{QUEUED_FOR_REVIEW_NOTE}"

        proposal.status = status
        proposal.result = result
        proposal.executed_at = utcnow()
        await db.flush()
        logger.info("Proposal %s → %s", proposal.id, status)
        return proposal

    async def cancel_proposal(
        self, db: AsyncSession, org_id: uuid.UUID, user_id: uuid.UUID, proposal_id: uuid.UUID
    ) -> ActionProposal:
        proposal = await self.get_proposal(db, org_id, user_id, proposal_id)
        if proposal.status != PROPOSAL_PROPOSED:
            raise ConflictError("Proposal already processed", context={"status": proposal.status})
        proposal.status = PROPOSAL_CANCELLED
        await db.flush()
        return proposal

    # ── Executors ─────────────────────────────────────────────────────────

    async def _execute(
        self, db: AsyncSession, org_id: uuid.UUID, user_id: uuid.UUID, proposal: ActionProposal
    ) -> Dict[str, Any]:
        params = proposal.params or {}
        if proposal.action_type == "generate_billing_run":
            return await self._generate_billing_run(db, org_id, user_id, params)
        if proposal.action_type == "send_invoice_reminders":
            return await self._send_invoice_reminders(db, org_id, user_id, params)
        if proposal.action_type == "complete_lessons":
            return await self._complete_lessons(db, org_id, params)
        return {
            "message": f"Action type '{proposal.action_type}' acknowledged but not implemented"
        }

    async def _generate_billing_run(
        self, db: AsyncSession, org_id: uuid.UUID, user_id: uuid.UUID, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        data = BillingRunCreate(
            run_type="manual",
            start_date=params.get("start_date"),
            end_date=params.get("end_date"),
            billing_mode=params.get("billing_mode") or "delivered",
        )
        run = await billing_run_service.create_billing_run(db, org_id, user_id, data)
        summary = run.summary or {}
        return {
            "message": (
                f"Billing run created: {summary.get('invoice_count', 0)} draft invoice(s) "
                f"totalling {summary.get('total_amount', 0)} (minor units)"
            ),
            "billing_run_id": str(run.id),
            "status": run.status,
            "entities": [
                {"type": "invoice", "id": invoice_id, "label": "Draft invoice"}
                for invoice_id in summary.get("invoice_ids", [])
            ],
        }

    async def _send_invoice_reminders(
        self, db: AsyncSession, org_id: uuid.UUID, user_id: uuid.UUID, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        invoice_ids = _uuid_list(params.get("invoice_ids"), "invoice_ids")
        await invoice_service.mark_overdue_invoices(db, org_id, utcnow().date())

        query = select(Invoice).where(Invoice.org_id == org_id)
        if invoice_ids:
            query = query.where(
                Invoice.id.in_(invoice_ids),
                Invoice.status.in_([INVOICE_SENT, INVOICE_OVERDUE]),
            )
        else:
            query = query.where(Invoice.status == INVOICE_OVERDUE)
        invoices = list((await db.execute(query.order_by(Invoice.due_date))).scalars().all())

        queued = 0
        details: List[str] = []
        entities: List[Dict[str, Any]] = []
        for invoice in invoices:
            name, email = await self._payer_contact(db, invoice)
            if not email:
                details.append(f"{invoice.invoice_number}: No email address")
                continue
            db.add(
                QueuedMessage(
                    org_id=org_id,
                    recipient_email=email,
                    subject=f"Payment Reminder: Invoice {invoice.invoice_number}",
                    body=(
                        f"Dear {name},\n\nThis is a friendly reminder that invoice "
                        f"{invoice.invoice_number} for {invoice.currency_code} "
                        f"{invoice.outstanding_minor / 100:.2f} is outstanding. "
                        f"The due date was {invoice.due_date.isoformat()}.\n\n"
                        "Please arrange payment at your earliest convenience.\n\nThank you."
                    ),
                    related_invoice_id=invoice.id,
                    created_by=user_id,
                )
            )
            queued += 1
            details.append(f"{invoice.invoice_number}: Queued for {email}")
            entities.append(
                {"type": "invoice", "id": str(invoice.id), "label": invoice.invoice_number}
            )

        await db.flush()
        return {
            "message": f"Queued {queued} payment reminder(s) for review",
            "reminders_queued": queued,
            "details": details,
            "entities": entities,
        }

    async def _complete_lessons(
        self, db: AsyncSession, org_id: uuid.UUID, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        lesson_ids = _uuid_list(params.get("lesson_ids"), "lesson_ids")
        lessons = await roster_service.complete_past_lessons(db, org_id, lesson_ids or None)
        return {
            "message": f"Marked {len(lessons)} lesson(s) as completed",
            "completed_count": len(lessons),
            "entities": [
                {"type": "lesson", "id": str(lesson.id), "label": lesson.title}
                for lesson in lessons
            ],
        }

    # ── Helpers ───────────────────────────────────────────────────────────

    async def _payer_contact(self, db: AsyncSession, invoice: Invoice):
        if invoice.payer_guardian_id:
            guardian = await db.get(Guardian, invoice.payer_guardian_id)
            if guardian is not None:
                return guardian.full_name, guardian.email
        if invoice.payer_student_id:
            student = await db.get(Student, invoice.payer_student_id)
            if student is not None:
                return student.full_name, student.email
        return "Customer", None

    async def _build_context(
        self, db: AsyncSession, org_id: uuid.UUID, membership: OrgMembership
    ) -> Dict[str, Any]:
        """Facts the model may reference. Kept small; IDs only for recent items."""
        org = await db.get(Organisation, org_id)
        if org is None:
            raise NotFoundError(resource="organisation", resource_id=str(org_id))

        overdue = (
            await db.execute(
                select(Invoice.id, Invoice.invoice_number, Invoice.due_date)
                .where(Invoice.org_id == org_id, Invoice.status == INVOICE_OVERDUE)
                .order_by(Invoice.due_date)
                .limit(20)
            )
        ).all()
        unfinished = (
            await db.execute(
                select(Lesson.id, Lesson.title, Lesson.start_at)
                .where(
                    Lesson.org_id == org_id,
                    Lesson.status == LESSON_SCHEDULED,
                    Lesson.end_at <= utcnow(),
                )
                .order_by(Lesson.start_at.desc())
                .limit(20)
            )
        ).all()

        return {
            "organisation": org.name,
            "currency": org.currency_code,
            "today": utcnow().date().isoformat(),
            "user_role": membership.role,
            "action_types": sorted(ACTION_ROLE_PERMISSIONS),
            "overdue_invoices": [
                {"id": str(i), "number": n, "due_date": d.isoformat()} for i, n, d in overdue
            ],
            "lessons_awaiting_completion": [
                {"id": str(i), "title": t, "start_at": s.isoformat()} for i, t, s in unfinished
            ],
        }


# ── Singleton Instance ────────────────────────────────────────────────────
assistant_service = AssistantService(llm=gemini_service)
