"""
Request governor for clion.

`RequestGovernor` sends one prompt to the configured provider within a
persisted session.  It centralizes session bookkeeping, cost estimation
and the over-limit confirmation step, so the CLI and tests only deal with
`dispatch` and the typed errors from `clion.errors`.

Order of operations for a dispatch: pick the target session, persist the
user turn, estimate tokens and cost, ask for confirmation when the
estimate exceeds the model's context window, send exactly once, persist
the assistant turn.  The user turn stays in history even if a later step
fails.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import httpx

from .config import ProviderConfig
from .errors import UserDeclinedError
from .providers import LLMResponse, ProviderAdapter, get_adapter
from .session import SessionStore
from .tokens import TokenCounter, get_pricing

logger = logging.getLogger(__name__)


@dataclass
class RequestAnalysis:
    """Token and cost estimate computed before a request is sent."""

    input_tokens: int
    estimated_output_tokens: int
    estimated_cost: float
    within_limits: bool
    max_context_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.estimated_output_tokens


ConfirmCallback = Callable[[RequestAnalysis], bool]


class RequestGovernor:
    """Session-aware, single-shot LLM requests with cost gating."""

    def __init__(
        self,
        config: ProviderConfig,
        sessions: SessionStore,
        confirm: Optional[ConfirmCallback] = None,
        http_client: Optional[httpx.Client] = None,
        token_counter: Optional[TokenCounter] = None,
    ) -> None:
        if not config.api_key:
            raise ValueError(f"An API key is required for provider '{config.provider.value}'.")
        self.config = config
        self.sessions = sessions
        self.confirm = confirm
        self.http_client = http_client
        self.token_counter = token_counter or TokenCounter(config.model)
        self.adapter: ProviderAdapter = get_adapter(config.provider)

    def analyze(
        self, system_instruction: str, prompt: str, max_output_tokens: Optional[int] = None
    ) -> RequestAnalysis:
        input_tokens = self.token_counter.count(system_instruction + "\n" + prompt)
        cap = max_output_tokens or self.config.max_tokens
        output_tokens = min(input_tokens // 2, cap)
        pricing = get_pricing(self.config.model)
        return RequestAnalysis(
            input_tokens=input_tokens,
            estimated_output_tokens=output_tokens,
            estimated_cost=pricing.cost(input_tokens, output_tokens),
            within_limits=input_tokens + output_tokens <= pricing.max_context_tokens,
            max_context_tokens=pricing.max_context_tokens,
        )

    def _target_session(self, session_id: Optional[str]) -> str:
        if session_id:
            self.sessions.require(session_id)
        else:
            session_id = self.sessions.get_current() or self.sessions.create()
        self.sessions.set_current(session_id)
        return session_id

    def _messages(self, session_id: str, system_instruction: str, prompt: str) -> List[Dict[str, str]]:
        session = self.sessions.require(session_id)
        messages: List[Dict[str, str]] = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        messages.extend({"role": e.role, "content": e.content} for e in session.entries)
        messages.append({"role": "user", "content": prompt})
        return messages

    def dispatch(
        self,
        prompt: str,
        session_id: Optional[str] = None,
        system_instruction: str = "",
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """Send `prompt` and record both turns in the target session.

        Raises `SessionNotFoundError` for an unknown explicit session,
        `UserDeclinedError` when an over-limit request is not confirmed
        and a `RequestError` subclass when the provider call fails.
        """
        session_id = self._target_session(session_id)
        messages = self._messages(session_id, system_instruction, prompt)
        self.sessions.append_entry(session_id, "user", prompt)

        analysis = self.analyze(system_instruction, prompt, max_output_tokens)
        logger.info(
            "Estimated request will use ~%s input tokens (+~%s output) and cost up to $%.4f",
            analysis.input_tokens,
            analysis.estimated_output_tokens,
            analysis.estimated_cost,
        )
        if not analysis.within_limits:
            logger.warning(
                "Request (~%s tokens) exceeds the %s-token context window of %s",
                analysis.total_tokens,
                analysis.max_context_tokens,
                self.config.model,
            )
            if self.confirm is None or not self.confirm(analysis):
                raise UserDeclinedError("Request cancelled by user")

        payload = self.adapter.build_payload(
            messages,
            self.config,
            self.config.temperature if temperature is None else temperature,
            max_output_tokens or self.config.max_tokens,
        )
        logger.debug(
            "Sending %d messages to %s (model=%s, session=%s)",
            len(messages),
            self.adapter.endpoint(self.config),
            self.config.model,
            session_id,
        )
        data = self.adapter.send(payload, self.config, self.http_client)
        response = self.adapter.parse_response(data)
        if not response.model:
            response.model = self.config.model

        self.sessions.append_entry(session_id, "assistant", response.content, tokens=response.tokens_used)
        logger.info("Received %d tokens from %s for session %s", response.tokens_used, self.adapter.name, session_id)
        return response
