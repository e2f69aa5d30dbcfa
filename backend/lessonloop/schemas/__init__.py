# Schemas package init
"""
LessonLoop Backend — API Schemas
=================================

Pydantic request/response models, one module per resource area:
    common.py     error envelope, health
    billing.py    rate cards, billing runs
    invoice.py    invoices, payments, make-up credits
    roster.py     guardians, students, lessons, attendance
    assistant.py  LoopAssist proposals
"""
