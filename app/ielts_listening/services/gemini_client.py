"""Client wrapper around the Google Gemini Generative Language API."""
from __future__ import annotations

import json
import os
import time
from typing import Any, Dict, Optional

import requests
from flask import current_app

from .deadlines import Deadline, DeadlineExceeded

API_URL_TEMPLATE = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


class GeminiError(RuntimeError):
    """Raised when Gemini cannot be reached or keeps failing.

    The message carries a provider-specific reason (HTTP status, timeout,
    connection failure) so callers can report it without inspecting
    ``requests`` exceptions.
    """

    def __init__(self, reason: str, status_code: Optional[int] = None):
        super().__init__(reason)
        self.status_code = status_code


class GeminiClient:
    """Lightweight client for structured content generation via Gemini."""

    DEFAULT_MODEL = "gemini-2.5-flash-lite"
    DEFAULT_TIMEOUT = 40
    MAX_RETRIES = 5
    RETRY_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504}
    BACKOFF_INITIAL_SECONDS = 1.5
    BACKOFF_MAX_SECONDS = 30

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or os.getenv("GEMINI_API_KEY")
        self.model = os.getenv("GEMINI_MODEL", self.DEFAULT_MODEL)
        self.api_root = os.getenv("GEMINI_API_URL", API_URL_TEMPLATE.format(model=self.model))
        try:
            self.timeout = int(os.getenv("GEMINI_TIMEOUT_SECONDS", str(self.DEFAULT_TIMEOUT)))
        except ValueError:
            self.timeout = self.DEFAULT_TIMEOUT
        self.fallback_model = os.getenv("GEMINI_FALLBACK_MODEL", "gemini-2.5-flash")
        self.enable_fallback_on_max_tokens = (
            os.getenv("GEMINI_FALLBACK_ON_MAX_TOKENS", "true").strip().lower() in {"1", "true", "yes", "y"}
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def generate_json(
        self,
        prompt: str,
        temperature: float = 0.7,
        system_instruction: Optional[str] = None,
        response_mime: str = "application/json",
        max_output_tokens: Optional[int] = None,
        model_override: Optional[str] = None,
        disable_retries: bool = False,
        strict: bool = False,
        deadline: Optional[Deadline] = None,
    ) -> Optional[Any]:
        """Send a prompt and parse the JSON document Gemini returns.

        Args:
            prompt: The user prompt
            temperature: Sampling temperature (0.0-1.0)
            system_instruction: Optional system instruction
            response_mime: MIME type requested for the response
            max_output_tokens: Optional output token cap
            model_override: Use this model instead of the configured one
            disable_retries: Send a single request only
            strict: Accept only a bare JSON document; prose or code fences
                around it count as a parse failure
            deadline: Time budget shared by all attempts

        Returns:
            Parsed JSON, or None when the response had no usable text or
            could not be parsed.

        Raises:
            GeminiError: transport failure after retries (HTTP error,
                timeout, connection error) or missing API key.
            DeadlineExceeded: the deadline ran out before a response arrived.
        """
        if not self.is_configured:
            current_app.logger.error("Gemini API not configured - API key missing")
            raise GeminiError("Gemini API key is not configured")

        payload: Dict[str, Any] = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": temperature,
                "responseMimeType": response_mime,
            },
        }
        if max_output_tokens is not None:
            payload["generationConfig"]["maxOutputTokens"] = max_output_tokens
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        max_attempts = 1 if disable_retries else self.MAX_RETRIES
        data = self._post_with_retries(payload, model_override, max_attempts, deadline)
        text, finish_reason = self._extract_text_and_finish_reason(data)

        # MAX_TOKENS with nothing usable: retry once on the fallback model
        if not text and finish_reason == "MAX_TOKENS" and self.enable_fallback_on_max_tokens:
            primary_model = model_override or self.model
            if self.fallback_model and self.fallback_model != primary_model:
                current_app.logger.warning(
                    "Gemini returned MAX_TOKENS with empty content on model=%s; retrying once with fallback model=%s",
                    primary_model,
                    self.fallback_model,
                )
                data = self._post_with_retries(payload, self.fallback_model, max_attempts, deadline)
                text, finish_reason = self._extract_text_and_finish_reason(data)

        if not text:
            candidates = data.get("candidates") or []
            current_app.logger.error(
                "Gemini response contained empty text. Finish reason: %s, Candidates count: %s, Response: %s",
                finish_reason,
                len(candidates),
                str(data)[:500],
            )
            return None

        parsed = self._parse_strict(text) if strict else self._robust_parse_json(text)
        if parsed is None:
            current_app.logger.error(
                "Gemini JSON parsing failed (strict=%s). Text length: %s, First 500 chars: %s",
                strict,
                len(text),
                text[:500],
            )
        return parsed

    def _endpoint(self, model: Optional[str]) -> str:
        if not model or model == self.model:
            return self.api_root
        return API_URL_TEMPLATE.format(model=model)

    def _post_with_retries(
        self,
        payload: Dict[str, Any],
        model: Optional[str],
        max_attempts: int,
        deadline: Optional[Deadline],
    ) -> Dict[str, Any]:
        """POST the payload, retrying transient failures with exponential backoff."""
        url = f"{self._endpoint(model)}?key={self.api_key}"
        model_name = model or self.model
        backoff = self.BACKOFF_INITIAL_SECONDS

        for attempt in range(max_attempts):
            if deadline is not None:
                deadline.check("Gemini request")
            timeout = deadline.cap(self.timeout) if deadline is not None else self.timeout
            try:
                response = requests.post(url, json=payload, timeout=timeout)
                response.raise_for_status()
            except requests.exceptions.HTTPError as exc:
                status_code = exc.response.status_code if exc.response is not None else None
                retryable = status_code in self.RETRY_STATUS_CODES
                reason = f"Gemini HTTP {status_code} for model {model_name}"
            except requests.exceptions.Timeout:
                status_code, retryable = None, True
                reason = f"Gemini request timed out after {timeout:.0f}s"
            except requests.exceptions.ConnectionError as exc:
                status_code, retryable = None, True
                reason = f"Gemini connection error: {exc}"
            else:
                try:
                    return response.json()
                except ValueError as exc:
                    current_app.logger.error("Failed to parse Gemini response envelope as JSON: %s", exc)
                    return {}

            last_attempt = attempt >= max_attempts - 1
            if not retryable or last_attempt:
                current_app.logger.error("%s (attempt %s/%s), giving up", reason, attempt + 1, max_attempts)
                raise GeminiError(reason, status_code=status_code)
            wait = min(backoff, self.BACKOFF_MAX_SECONDS)
            if deadline is not None and wait >= deadline.remaining():
                current_app.logger.error("%s; no time left in stage budget to retry", reason)
                raise DeadlineExceeded(reason)

            current_app.logger.warning(
                "%s. Retrying in %.1fs (attempt %s/%s).", reason, wait, attempt + 1, max_attempts
            )
            time.sleep(wait)
            backoff *= 2

        return {}

    @staticmethod
    def _parse_strict(text: str) -> Optional[Any]:
        """Parse text that must be exactly one JSON document."""
        try:
            return json.loads(text.strip())
        except json.JSONDecodeError:
            return None

    @staticmethod
    def _parse_json_response(text: str) -> Optional[Any]:
        """Attempt to parse JSON payload even if wrapped in fences."""
        if not text:
            return None

        text = text.strip()
        if text.startswith("```"):
            parts = text.split("```")
            text = parts[1] if len(parts) > 1 else text
            if text.startswith("json"):
                text = text[4:]
            text = text.strip()

        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            current_app.logger.debug("JSON decode error at position %s: %s", e.pos, e.msg)
            return None

    @staticmethod
    def _robust_parse_json(text: str) -> Optional[Any]:
        """Parse JSON with additional heuristics for stray prose or truncated wrappers."""
        parsed = GeminiClient._parse_json_response(text)
        if parsed is not None:
            return parsed

        candidate = GeminiClient._extract_json_substring(text)
        if candidate:
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                return None
        return None

    @staticmethod
    def _extract_json_substring(text: str) -> Optional[str]:
        """Extract the first balanced JSON object (or else the outer array) from text.

        Braces inside string values do not count towards the nesting depth.
        """
        if not text:
            return None

        start_obj = text.find("{")
        if start_obj != -1:
            depth = 0
            in_string = False
            escaped = False
            for i in range(start_obj, len(text)):
                char = text[i]
                if in_string:
                    if escaped:
                        escaped = False
                    elif char == "\\":
                        escaped = True
                    elif char == '"':
                        in_string = False
                elif char == '"':
                    in_string = True
                elif char == "{":
                    depth += 1
                elif char == "}":
                    depth -= 1
                    if depth == 0:
                        return text[start_obj : i + 1]

        start_arr = text.find("[")
        end_arr = text.rfind("]")
        if start_arr != -1 and end_arr > start_arr:
            return text[start_arr : end_arr + 1]
        return None

    @staticmethod
    def _extract_text_and_finish_reason(data: Dict[str, Any]) -> tuple[str, Optional[str]]:
        """Return the first non-empty candidate text and its finish reason."""
        candidates = data.get("candidates") or []
        if not candidates:
            prompt_feedback = data.get("promptFeedback", {})
            block_reason = prompt_feedback.get("blockReason")
            if block_reason:
                current_app.logger.error(
                    "Gemini blocked request. Reason: %s, Safety ratings: %s",
                    block_reason,
                    prompt_feedback.get("safetyRatings", []),
                )
            else:
                current_app.logger.warning("Gemini response missing candidates. Full response: %s", data)
            return "", None

        fallback_finish: Optional[str] = None
        for cand in candidates:
            finish_reason = cand.get("finishReason")
            if not fallback_finish:
                fallback_finish = finish_reason
            parts = (cand.get("content") or {}).get("parts", [])
            collected = [
                part["text"]
                for part in parts
                if isinstance(part, dict) and isinstance(part.get("text"), str) and part["text"].strip()
            ]
            if collected:
                return "".join(collected), finish_reason

        return "", fallback_finish


def get_gemini_client() -> GeminiClient:
    """Factory helper to allow lazy imports without circular references."""
    return GeminiClient()
