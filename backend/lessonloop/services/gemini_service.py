"""
LessonLoop Backend — Google Gemini Service Implementation
==========================================================

What:  LoopAssist's LLM provider. Turns a user's request into a JSON action
       proposal using Google Gemini.
How:   One prompt per request, JSON response mode, tenacity retry around
       the API call, and a circuit breaker in front of it.
Who:   Module-level singleton used by AssistantService and GET /health.

Resilience:
    1. Tenacity retry with exponential backoff + jitter for transient failures
    2. Circuit breaker so a Gemini outage fails fast instead of stacking
       retries on every request
    3. Malformed model output is NOT retried; it becomes LLMServiceError
"""

import asyncio
import json
import logging
import time
import uuid
from typing import Any, Dict, Optional

import google.generativeai as genai
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from lessonloop.config import settings
from lessonloop.exceptions import CircuitBreakerOpenError, LLMServiceError
from lessonloop.services.llm_base import LLMService

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker
# ══════════════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    CLOSED → OPEN → HALF_OPEN → CLOSED guard around the Gemini API.

        CLOSED     calls pass; consecutive failures are counted
        OPEN       calls fail immediately with CircuitBreakerOpenError until
                   recovery_timeout seconds have passed
        HALF_OPEN  one trial call passes; success closes the circuit,
                   failure opens it again

    State lives in-process. Each uvicorn worker keeps its own breaker.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None

    def can_execute(self) -> bool:
        """True when a call may proceed; raises CircuitBreakerOpenError otherwise."""
        if self.state == self.OPEN:
            elapsed = time.time() - (self.last_failure_time or 0)
            if elapsed < self.recovery_timeout:
                raise CircuitBreakerOpenError(recovery_time=int(self.recovery_timeout - elapsed))
            logger.info("Circuit breaker HALF_OPEN after %.1fs", elapsed)
            self.state = self.HALF_OPEN
        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker CLOSED (Gemini recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker back to OPEN (trial call failed)")
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker OPEN after %d consecutive failures", self.failure_count
            )
            self.state = self.OPEN


# ══════════════════════════════════════════════════════════════════════════
# Gemini Service
# ══════════════════════════════════════════════════════════════════════════

class GeminiService(LLMService):
    """
    Gemini-backed LoopAssist.

    Error chain:
        API call fails → tenacity retries (retry_max_attempts, backoff)
        → retries exhausted → circuit breaker failure, LLMServiceError
        → threshold reached → later calls rejected until recovery timeout
    """

    PROPOSAL_PROMPT = """You are LoopAssist, the assistant inside a music school \
administration app. Staff ask you to do things; you never do them yourself. \
Instead you propose exactly ONE action for a human to confirm.

Organisation context (JSON):
{context}

Supported action types:
{action_types}

Respond with a single JSON object and nothing else:
{{
  "action_type": "<one of the supported action types>",
  "description": "<one sentence a human can confirm>",
  "params": {{ ...action parameters, dates as YYYY-MM-DD... }},
  "entities": [{{"type": "<lesson|invoice|student|guardian>", "id": "<uuid>", "label": "<name>"}}]
}}

Only reference entity IDs that appear in the context. Use an empty list when
there are none.

Request: {message}"""

    def __init__(self):
        if settings.gemini_api_key and settings.gemini_api_key != "your_gemini_api_key_here":
            genai.configure(api_key=settings.gemini_api_key)

        self.model = genai.GenerativeModel(
            settings.gemini_model,
            generation_config={"response_mime_type": "application/json", "temperature": 0.2},
        )
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=settings.cb_failure_threshold,
            recovery_timeout=settings.cb_recovery_timeout,
        )

        logger.info(
            "GeminiService initialized with model=%s, circuit_breaker(threshold=%d, recovery=%ds)",
            settings.gemini_model,
            settings.cb_failure_threshold,
            settings.cb_recovery_timeout,
        )

    @property
    def is_configured(self) -> bool:
        return bool(settings.gemini_api_key) and settings.gemini_api_key != "your_gemini_api_key_here"

    async def propose_action(self, message: str, context: Dict[str, Any]) -> Dict[str, Any]:
        request_id = str(uuid.uuid4())[:8]
        self.circuit_breaker.can_execute()

        prompt = self.PROPOSAL_PROMPT.format(
            context=json.dumps(context, default=str, indent=2),
            action_types=", ".join(context.get("action_types", [])),
            message=message,
        )
        logger.info("[%s] Requesting LoopAssist proposal (%d chars)", request_id, len(message))

        try:
            raw = await self._call_gemini_with_retry(prompt, request_id)
            self.circuit_breaker.record_success()
        except CircuitBreakerOpenError:
            raise
        except Exception as e:
            # reraise=True: this is the last attempt's own exception
            self.circuit_breaker.record_failure()
            logger.error(
                "[%s] Gemini failed after %d attempt(s): %s",
                request_id, settings.retry_max_attempts, str(e), exc_info=True,
            )
            raise LLMServiceError(
                message="LoopAssist could not reach the AI service. Please try again later.",
                retry_after=self.circuit_breaker.recovery_timeout,
                context={
                    "request_id": request_id,
                    "attempts": settings.retry_max_attempts,
                    "error_type": type(e).__name__,
                },
            )

        return self.parse_proposal(raw, request_id)

    @staticmethod
    def parse_proposal(raw: str, request_id: str = "-") -> Dict[str, Any]:
        """Validates the model output shape. Anything else is an LLMServiceError."""
        text = raw.strip()
        # Models sometimes wrap JSON in a markdown fence despite JSON mode
        if text.startswith("```"):
            text = text.strip("`")
            if text.lower().startswith("json"):
                text = text[4:]
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("[%s] Gemini returned non-JSON output", request_id)
            raise LLMServiceError(
                message="LoopAssist returned an answer it could not understand. Please rephrase.",
                context={"request_id": request_id},
            )

        if not isinstance(data, dict) or not isinstance(data.get("action_type"), str):
            raise LLMServiceError(
                message="LoopAssist returned an answer it could not understand. Please rephrase.",
                context={"request_id": request_id},
            )

        entities = data.get("entities") or []
        return {
            "action_type": data["action_type"],
            "description": str(data.get("description") or ""),
            "params": data.get("params") if isinstance(data.get("params"), dict) else {},
            "entities": [e for e in entities if isinstance(e, dict)] if isinstance(entities, list) else [],
        }

    @retry(
        retry=retry_if_not_exception_type(LLMServiceError),
        stop=stop_after_attempt(settings.retry_max_attempts),
        wait=wait_exponential_jitter(
            initial=settings.retry_min_wait,
            max=settings.retry_max_wait,
            jitter=1,
        ),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _call_gemini_with_retry(self, prompt: str, request_id: str) -> str:
        """The raw API call. Kept separate so only this part is retried."""
        start_time = time.time()
        try:
            response = await self.model.generate_content_async(
                prompt,
                request_options={"timeout": 30},
            )
        except Exception as e:
            logger.warning(
                "[%s] Gemini call failed after %.0fms: %s",
                request_id, (time.time() - start_time) * 1000, str(e),
            )
            raise

        text = response.text or ""
        logger.info(
            "[%s] Gemini responded in %.0fms (%d chars)",
            request_id, (time.time() - start_time) * 1000, len(text),
        )
        return text

    async def health_check(self) -> bool:
        """
        Lists the available models. GET /health does not call this; it only
        reports configuration and circuit state, so probes never spend quota.
        """
        if not self.is_configured:
            return False
        loop = asyncio.get_running_loop()
        try:
            # The SDK's model listing is blocking
            models = await loop.run_in_executor(None, lambda: list(genai.list_models()))
            names = [m.name for m in models]
            if f"models/{settings.gemini_model}" not in names:
                logger.warning("Configured model %s not listed by Gemini", settings.gemini_model)
            return True
        except Exception as e:
            logger.warning("Gemini health check failed: %s", str(e))
            return False


# ── Singleton Instance ────────────────────────────────────────────────────
# The circuit breaker state must be shared by every request.
gemini_service = GeminiService()
