"""Conversational AI fallback used when no deterministic path answers a message."""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from app.logging_config import get_logger
from app.services.chat_log_service import ORIGIN_CLIENT, LoggedMessage
from app.services.llm import LLMProvider

logger = get_logger("agent_service")

FALLBACK_REPLY = "Lo siento, ¿puedes repetirlo de otra forma?"


@dataclass
class AgentReply:
    text: str
    tool_calls: List[dict] = field(default_factory=list)
    used_fallback: bool = False
    error: Optional[str] = None
    latency_ms: int = 0


class AIAgent(ABC):
    @abstractmethod
    async def respond(
        self,
        phone: str,
        user_message: str,
        history: Optional[List[LoggedMessage]] = None,
    ) -> AgentReply:
        """Return a reply; failures come back as a fallback reply, not as exceptions."""


class LLMAgent(AIAgent):
    def __init__(
        self,
        provider: LLMProvider,
        *,
        model: str,
        system_prompt: str,
        fallback_model: Optional[str] = None,
        temperature: float = 0.4,
        max_tokens: int = 600,
        timeout_seconds: float = 60.0,
    ):
        self.provider = provider
        self.model = model
        self.system_prompt = system_prompt
        self.fallback_model = fallback_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds

    def build_messages(self, user_message: str, history: Optional[List[LoggedMessage]] = None) -> List[dict]:
        messages = [{"role": "system", "content": self.system_prompt}]
        for item in history or []:
            if not item.text:
                continue
            role = "user" if item.origin == ORIGIN_CLIENT else "assistant"
            messages.append({"role": role, "content": item.text})
        messages.append({"role": "user", "content": user_message})
        return messages

    async def respond(
        self,
        phone: str,
        user_message: str,
        history: Optional[List[LoggedMessage]] = None,
    ) -> AgentReply:
        started = time.monotonic()
        messages = self.build_messages(user_message, history)
        errors: List[str] = []

        models = [self.model]
        if self.fallback_model and self.fallback_model != self.model:
            models.append(self.fallback_model)

        for model in models:
            try:
                response = await self.provider.generate(
                    messages,
                    model=model,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                    timeout_seconds=self.timeout_seconds,
                )
            except Exception as e:
                logger.warning(
                    "LLM call failed",
                    extra={"context": {"phone": phone, "model": model, "error": str(e)}},
                )
                errors.append(f"{model}: {e}")
                continue

            text = (response.content or "").strip()
            if not text:
                errors.append(f"{model}: empty response")
                continue

            return AgentReply(
                text=text,
                tool_calls=response.tool_calls,
                used_fallback=model != self.model,
                error="; ".join(errors) or None,
                latency_ms=int((time.monotonic() - started) * 1000),
            )

        logger.error("All LLM models failed", extra={"context": {"phone": phone, "errors": errors}})
        return AgentReply(
            text=FALLBACK_REPLY,
            used_fallback=True,
            error="; ".join(errors) or "no_response",
            latency_ms=int((time.monotonic() - started) * 1000),
        )
