"""
LessonLoop Backend — Services Layer
=====================================

What:  Business rules between the routes (HTTP) and the models (persistence).
How:   Services receive an AsyncSession and an org_id, flush but never commit.
       The request-scoped session commits or rolls back as a unit.

Service Inventory:
    - pricing:              rate card lookup, duration rounding, VAT (pure)
    - billing_run_service:  billing runs: grouping, dedupe, per-payer invoicing, retry
    - invoice_service:      invoice numbering, manual invoices, payments, overdue sweep
    - credit_service:       make-up credits: issue, eligibility, redemption
    - rate_card_service:    rate card CRUD and default-card rules
    - roster_service:       guardians, students, lessons, attendance
    - assistant_service:    LoopAssist proposals and confirmed execution
    - LLMService (abstract) / GeminiService: the model behind LoopAssist
"""
