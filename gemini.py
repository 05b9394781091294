"""
Gemini API Integration

Drafts outreach messages (first DMs and follow-ups) for a lead with
Google's Gemini models over the REST API.

Features:
- Model fallback: tries each configured model in turn
- Fails fast on API key errors (400/401/403)
- Request timeouts
- Structured logging
- Environment variable configuration
- Context manager support

The rest of the tracker only relies on the contract: a message string
comes back, or GeminiAPIError is raised.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests

from outreach_engine import Lead, TemplateType, fill_template

# =========================================
# Logging
# =========================================

logger = logging.getLogger(__name__)

# =========================================
# Configuration
# =========================================

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_TIMEOUT = (3.05, 30)  # (connect, read) timeouts in seconds
DEFAULT_MODELS = (
    "gemini-1.5-flash",
    "gemini-1.5-flash-latest",
    "gemini-pro",
    "gemini-1.0-pro",
)
AUTH_ERROR_STATUS_CODES = {400, 401, 403}

GENERATION_CONFIG = {
    "temperature": 0.85,
    "topK": 40,
    "topP": 0.95,
    "maxOutputTokens": 512,
}

TONE_GUIDES = {
    "professional": "Professional and polished.",
    "friendly": "Warm and approachable.",
    "casual": "Relaxed, like texting a friend.",
    "bold": "Confident and direct.",
    "witty": "Playful with a light touch of humor.",
}

LENGTH_GUIDES = {
    "short": "Under 60 words.",
    "medium": "Between 80 and 120 words.",
    "long": "Between 150 and 200 words.",
}


# =========================================
# Exceptions
# =========================================


class GeminiAPIError(RuntimeError):
    """
    Raised when no model produced a message.

    Attributes:
        message: Human-readable error description
        status_code: HTTP status code (if applicable)
        payload: Raw response body (if parseable)
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Optional[Dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def __str__(self) -> str:
        parts = [self.message]
        if self.status_code:
            parts.append(f"(status={self.status_code})")
        return " ".join(parts)


@dataclass
class GeminiConfig:
    """
    Configuration for the Gemini API.

    Can be initialized from environment variables:
        config = GeminiConfig.from_env()
    """

    api_key: str
    base_url: str = DEFAULT_BASE_URL
    timeout: Tuple[float, float] = DEFAULT_TIMEOUT
    models: Tuple[str, ...] = DEFAULT_MODELS

    @classmethod
    def from_env(cls) -> "GeminiConfig":
        """
        Load configuration from environment variables.

        Environment variables:
            GEMINI_API_KEY: Required API key
            GEMINI_BASE_URL: Optional custom base URL
            GEMINI_TIMEOUT_CONNECT: Optional connect timeout (default: 3.05)
            GEMINI_TIMEOUT_READ: Optional read timeout (default: 30)
        """
        api_key = os.environ.get("GEMINI_API_KEY")
        if not api_key:
            raise ValueError("GEMINI_API_KEY environment variable is required")

        connect_timeout = float(os.environ.get("GEMINI_TIMEOUT_CONNECT", "3.05"))
        read_timeout = float(os.environ.get("GEMINI_TIMEOUT_READ", "30"))

        return cls(
            api_key=api_key,
            base_url=os.environ.get("GEMINI_BASE_URL", DEFAULT_BASE_URL),
            timeout=(connect_timeout, read_timeout),
        )


@dataclass
class MessageRequest:
    """Everything the generator needs to draft one message."""

    lead: Lead
    message_type: TemplateType = TemplateType.DM
    tone: str = "friendly"
    length: str = "short"
    custom_instructions: str = ""
    service_description: str = ""
    previous_dm: Optional[str] = None
    template_base: Optional[str] = None


def build_prompt(request: MessageRequest) -> str:
    """Assemble the prompt text for one message request."""
    lead = request.lead
    lines: List[str] = []

    if request.message_type is TemplateType.FOLLOWUP:
        lines.append("Write a short follow-up DM to a lead who has not replied to my first message.")
    else:
        lines.append("Write a personal first DM to a lead.")

    lines += [
        "",
        f"What I offer: {request.service_description or 'not specified'}",
        f"Lead name: {lead.name}",
        f"Platform: {lead.platform.value}",
        f"Category: {lead.category.value}",
        f"Notes: {lead.notes or 'none'}",
    ]

    if request.previous_dm:
        lines += ["", "First DM I sent:", request.previous_dm]

    if request.template_base:
        lines += [
            "",
            "Personalize this template, keeping its structure:",
            fill_template(request.template_base, lead.name),
        ]

    lines += [
        "",
        f"Tone: {TONE_GUIDES.get(request.tone, TONE_GUIDES['friendly'])}",
        f"Length: {LENGTH_GUIDES.get(request.length, LENGTH_GUIDES['short'])}",
        f"Extra instructions: {request.custom_instructions or 'none'}",
        "",
        "Write as the sender, with no placeholders. Return only the message.",
    ]
    return "\n".join(lines)


def _error_detail(payload: Any) -> Optional[str]:
    """Pull the error message out of an error body of any shape."""
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        return str(message) if message else None
    if isinstance(error, str):
        return error or None
    return None


# =========================================
# Client
# =========================================


class GeminiClient:
    """
    Client for Gemini text generation.

    Usage:
        # From API key (e.g. the one saved in Settings)
        client = GeminiClient(api_key=settings.gemini_api_key)

        # From environment
        client = GeminiClient.from_env()

        # As context manager
        with GeminiClient.from_env() as client:
            text = client.generate_message(MessageRequest(lead=lead))
    """

    def __init__(self, api_key: Optional[str] = None, config: Optional[GeminiConfig] = None):
        """
        Initialize client with API key or config.

        Args:
            api_key: Gemini API key (ignored if config is provided)
            config: Full configuration object
        """
        if config:
            self.config = config
        elif api_key:
            self.config = GeminiConfig(api_key=api_key)
        else:
            raise ValueError("Either api_key or config must be provided")

        self.session = requests.Session()
        self.session.headers.update(
            {
                "User-Agent": "leadpulse/1.0",
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )

        logger.debug("GeminiClient initialized with base_url=%s", self.config.base_url)

    @classmethod
    def from_env(cls) -> "GeminiClient":
        """Create client from environment variables."""
        return cls(config=GeminiConfig.from_env())

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self.session.close()
        logger.debug("GeminiClient session closed")

    def __enter__(self) -> "GeminiClient":
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb) -> None:
        self.close()

    # =========================================
    # Internal: single model call
    # =========================================

    def _call_model(self, model: str, prompt: str) -> str:
        """
        Ask one model for a completion.

        Raises:
            GeminiAPIError: On HTTP errors, transport errors or an empty answer
        """
        url = f"{self.config.base_url}/models/{model}:generateContent"
        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": GENERATION_CONFIG,
        }

        try:
            response = self.session.post(
                url,
                params={"key": self.config.api_key},
                json=body,
                timeout=self.config.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise GeminiAPIError(f"{model} request error: {e}")

        logger.debug("POST %s -> %d", model, response.status_code)

        if not response.ok:
            payload = None
            try:
                payload = response.json()
            except ValueError:
                pass
            raise GeminiAPIError(
                _error_detail(payload) or f"HTTP {response.status_code}",
                status_code=response.status_code,
                payload=payload,
            )

        try:
            data = response.json()
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError):
            text = None

        if not text or not text.strip():
            raise GeminiAPIError(f"Empty response from {model}")
        return text.strip()

    # =========================================
    # Generation
    # =========================================

    def generate_text(self, prompt: str) -> str:
        """
        Run a prompt against each configured model until one answers.

        Raises:
            GeminiAPIError: API key rejected, or every model failed
        """
        last_error: Optional[GeminiAPIError] = None

        for model in self.config.models:
            try:
                return self._call_model(model, prompt)
            except GeminiAPIError as e:
                if e.status_code in AUTH_ERROR_STATUS_CODES:
                    logger.error("Gemini rejected the API key: %s", e.message)
                    raise GeminiAPIError(
                        f"API Key Error: {e.message}", status_code=e.status_code, payload=e.payload
                    )
                logger.warning("Model %s failed: %s", model, e)
                last_error = e

        raise GeminiAPIError(
            f"All models failed. Last error: {last_error.message if last_error else 'no models configured'}",
            status_code=last_error.status_code if last_error else None,
        )

    def generate_message(self, request: MessageRequest) -> str:
        """Draft a first DM or follow-up for `request.lead`."""
        logger.info("Generating %s message for %s", request.message_type.value, request.lead.name)
        return self.generate_text(build_prompt(request))
