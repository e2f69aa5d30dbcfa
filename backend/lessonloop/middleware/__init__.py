"""
LessonLoop Backend — Middleware Package
========================================

What:  Cross-cutting request handling shared by every route.

Chain (outermost first):
    Request → [Rate Limit] → [Request ID] → [Access Log] → [GZip] → [CORS] → Route

    1. Rate limiting rejects abusive clients before any other work
    2. The request ID is set before anything logs, so every line of a
       request (billing run progress included) carries the same ID
    3. The access log sees the final status code and duration

Starlette runs middleware in reverse order of registration, so main.py adds
them last-to-first.
"""
