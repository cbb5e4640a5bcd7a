"""
Reply Generator - advisor replies from an OpenAI-compatible completion API.
"""

from typing import Protocol

import httpx
from structlog import get_logger

from psychic_metering.exceptions import ReplyGenerationError
from psychic_metering.models.api import AdvisorType
from psychic_metering.models.domain import AdvisorData, ConversationTurn

logger = get_logger(__name__)

# Number of stored messages sent along as conversation context
HISTORY_WINDOW = 3

PERSONA_PROMPTS: dict[AdvisorType, str] = {
    AdvisorType.ASTROLOGY: "You are {name}, a warm astrologer who reads the stars.",
    AdvisorType.LOVE: "You are {name}, a caring love and relationship advisor.",
    AdvisorType.NUMEROLOGY: "You are {name}, a numerologist who reads meaning in numbers.",
    AdvisorType.TAROT: "You are {name}, a tarot reader. Draw cards and interpret them.",
}

PERSONA_TEMPERATURE: dict[AdvisorType, float] = {
    AdvisorType.ASTROLOGY: 0.75,
    AdvisorType.LOVE: 0.7,
    AdvisorType.NUMEROLOGY: 0.6,
    AdvisorType.TAROT: 0.8,
}


class ReplyGenerator(Protocol):
    """Produces an advisor's reply to a user message."""

    async def generate(
        self, advisor: AdvisorData, history: list[ConversationTurn], message: str
    ) -> str: ...


class OpenAIReplyGenerator:
    """Reply generator backed by a `/chat/completions` endpoint."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str,
        timeout_seconds: float,
        max_tokens: int = 350,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    def build_messages(
        self, advisor: AdvisorData, history: list[ConversationTurn], message: str
    ) -> list[dict[str, str]]:
        """System persona, the last few stored turns, then the new user message."""
        system_prompt = PERSONA_PROMPTS[advisor.advisor_type].format(name=advisor.name)
        messages = [{"role": "system", "content": system_prompt}]
        for turn in history[-HISTORY_WINDOW:]:
            role = "user" if turn.sender == "user" else "assistant"
            messages.append({"role": role, "content": turn.text})
        messages.append({"role": "user", "content": message})
        return messages

    async def generate(
        self, advisor: AdvisorData, history: list[ConversationTurn], message: str
    ) -> str:
        """
        Generate the advisor's reply.

        Raises:
            ReplyGenerationError: API error, timeout, or an empty completion
        """
        payload = {
            "model": self.model,
            "messages": self.build_messages(advisor, history, message),
            "temperature": PERSONA_TEMPERATURE[advisor.advisor_type],
            "max_tokens": self.max_tokens,
        }

        try:
            response = await self.http_client.post(
                f"{self.api_url}/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.error("reply_generation_timeout", advisor_id=str(advisor.advisor_id))
            raise ReplyGenerationError("completion API timed out") from e
        except httpx.HTTPStatusError as e:
            logger.error(
                "reply_generation_failed", status=e.response.status_code, text=e.response.text
            )
            raise ReplyGenerationError(f"completion API returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("reply_generation_error", error=str(e))
            raise ReplyGenerationError("completion API unreachable") from e

        try:
            text = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ReplyGenerationError("malformed completion response") from e

        if not text or not text.strip():
            raise ReplyGenerationError("empty completion")
        return text.strip()

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
