from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from agent.agent import ConversationGateway, GatewayReply
from agent.core.exceptions import GatewayError, GatewayTimeout
from agent.core.memory import (
    EvictionResult,
    SessionRegistry,
    SessionSnapshot,
    SessionSummary,
)


logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(hours=24)


@dataclass(frozen=True)
class SendResult:
    response: str
    exchange_id: str
    session_id: str
    message_count: int


@dataclass(frozen=True)
class ServiceInfo:
    model: str
    system_instruction: str
    generation_config: Dict[str, Any]
    active_sessions: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "systemInstruction": self.system_instruction,
            "generationConfig": dict(self.generation_config),
            "activeSessions": self.active_sessions,
        }


class ChatService:
    """Orchestrates one conversation turn between the registry and the gateway.

    The gateway call runs in a worker thread with a timeout, outside every
    registry lock except the session's own turn lock. Nothing is written to
    the session unless the gateway returned a reply in time.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        gateway: ConversationGateway,
        *,
        timeout: Optional[float] = 60.0,
        default_max_age: timedelta = DEFAULT_MAX_AGE,
        max_workers: int = 8,
        model_name: str = "",
        system_instruction: str = "",
        generation_config: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.registry = registry
        self.gateway = gateway
        self.timeout = timeout
        self.default_max_age = default_max_age
        self.model_name = model_name
        self.system_instruction = system_instruction
        self.generation_config = dict(generation_config or {})
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="gateway")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def create_session(self, session_id: Optional[str] = None) -> SessionSnapshot:
        return self.registry.create(session_id)

    def history(self, session_id: str) -> SessionSnapshot:
        return self.registry.get(session_id)

    def clear_session(self, session_id: str) -> datetime:
        return self.registry.clear(session_id)

    def delete_session(self, session_id: str) -> datetime:
        return self.registry.delete(session_id)

    def list_sessions(self) -> List[SessionSummary]:
        return self.registry.list()

    def cleanup(self, max_age: Optional[timedelta] = None) -> EvictionResult:
        result = self.registry.evict_stale(max_age if max_age is not None else self.default_max_age)
        logger.info("Cleanup: evicted=%s remaining=%s", result.evicted, result.remaining)
        return result

    def info(self) -> ServiceInfo:
        return ServiceInfo(
            model=self.model_name,
            system_instruction=self.system_instruction,
            generation_config=self.generation_config,
            active_sessions=len(self.registry),
        )

    def _generate(self, snapshot: SessionSnapshot, message: str) -> GatewayReply:
        future = self._executor.submit(self.gateway.send, snapshot.provider_state, message)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as exc:
            future.cancel()
            raise GatewayTimeout(
                f"Conversation provider did not respond within {self.timeout}s"
            ) from exc
        except GatewayError:
            raise
        except Exception as exc:
            raise GatewayError(f"Conversation provider failed: {exc}") from exc

    def send_message(self, session_id: str, message: str) -> SendResult:
        with self.registry.turn(session_id) as turn:
            try:
                reply = self._generate(turn.snapshot, message)
            except GatewayError as exc:
                logger.warning("Gateway failed for session=%s: %s", session_id, exc)
                raise
            exchange, count = turn.append(message, reply.text, provider_state=reply.state)

        logger.info(
            "Message handled: session=%s input_len=%s output_len=%s count=%s",
            session_id,
            len(message),
            len(reply.text),
            count,
        )
        return SendResult(
            response=reply.text,
            exchange_id=exchange.id,
            session_id=session_id,
            message_count=count,
        )
