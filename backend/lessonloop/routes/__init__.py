"""
LessonLoop Backend — API Routes Package
=========================================

What:  HTTP route handlers. Each module owns one resource.

Route Inventory (org-scoped routes are under /api/orgs/{org_id}):
    - health.py        GET  /health
    - rate_cards.py    /rate-cards
    - billing_runs.py  /billing-runs, /billing-runs/{id}/retry
    - invoices.py      /invoices, /invoices/stats, /invoices/mark-overdue,
                       /invoices/{id}/status, /invoices/{id}/payments
    - credits.py       /credits, /credits/eligibility, /credits/{id}/redeem
    - roster.py        /guardians, /students, /lessons
    - assistant.py     /assistant/proposals

Routes stay thin: authorise via require_org_role, call a service, shape the
response. Transactions are committed by get_db_session after the handler
returns.
"""

from lessonloop.schemas.common import ErrorResponse

# Every org-scoped route can answer with these
AUTH_RESPONSES = {
    401: {"description": "Missing or invalid bearer token", "model": ErrorResponse},
    403: {"description": "Not a member with a permitted role", "model": ErrorResponse},
}
