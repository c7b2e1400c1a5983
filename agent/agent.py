from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Tuple

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from agent.core.exceptions import ConfigurationError, GatewayError
from config.settings import Settings, get_settings


logger = logging.getLogger(__name__)

# Provider state for Gemini: the prior turns as an immutable message tuple.
ConversationState = Tuple[BaseMessage, ...]


@dataclass(frozen=True)
class GatewayReply:
    text: str
    state: Any


class ConversationGateway(Protocol):
    def new_state(self) -> Any:
        ...

    def send(self, state: Any, user_input: str) -> GatewayReply:
        ...


def _message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    # Multi-part replies come back as a list of strings or {"type": "text"} blocks.
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text") or "")
    return "".join(parts)


def build_llm(settings: Optional[Settings] = None) -> ChatGoogleGenerativeAI:
    settings = settings or get_settings()
    if not settings.gemini_api_key:
        raise ConfigurationError(
            "GEMINI_API_KEY not set. Please configure it in environment or .env"
        )

    return ChatGoogleGenerativeAI(
        model=settings.gemini_model,
        google_api_key=settings.gemini_api_key,
        temperature=settings.temperature,
        top_p=settings.top_p,
        top_k=settings.top_k,
        max_output_tokens=settings.max_output_tokens,
        timeout=settings.gateway_timeout_seconds,
        max_retries=settings.gateway_max_retries,
    )


class GeminiGateway:
    """Conversation gateway backed by Gemini through LangChain.

    The state handed back by ``send`` is a new tuple; the previous one is
    never modified, so a failed call leaves the caller's state untouched.
    """

    def __init__(self, llm: Any, system_instruction: str, model_name: str = "") -> None:
        self.llm = llm
        self.system_instruction = system_instruction
        self.model_name = model_name

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "GeminiGateway":
        settings = settings or get_settings()
        return cls(
            llm=build_llm(settings),
            system_instruction=settings.system_instruction,
            model_name=settings.gemini_model,
        )

    def new_state(self) -> ConversationState:
        return ()

    def build_messages(self, state: ConversationState, user_input: str) -> List[BaseMessage]:
        messages: List[BaseMessage] = []
        if self.system_instruction:
            messages.append(SystemMessage(content=self.system_instruction))
        messages.extend(state or ())
        messages.append(HumanMessage(content=user_input))
        return messages

    def send(self, state: ConversationState, user_input: str) -> GatewayReply:
        messages = self.build_messages(state, user_input)
        logger.debug(
            "Gemini request: model=%s prior_messages=%s input_len=%s",
            self.model_name,
            len(state or ()),
            len(user_input),
        )
        try:
            result = self.llm.invoke(messages)
        except Exception as exc:
            raise GatewayError(f"Gemini call failed: {exc}") from exc

        text = _message_text(result).strip()
        if not text:
            raise GatewayError("Gemini returned an empty response")

        new_state = tuple(state or ()) + (HumanMessage(content=user_input), AIMessage(content=text))
        return GatewayReply(text=text, state=new_state)

