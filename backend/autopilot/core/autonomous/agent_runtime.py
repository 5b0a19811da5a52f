"""
Agent Runtime Adapter
=====================

Thin interface over the LLM coding-agent runtime plus the retry/timeout
wrapping the controller relies on.

A turn is a stream of AgentMessages whose final assistant text ends with
a ``STATUS: <SIGNAL>`` line (see signal_parser).
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Optional
from uuid import uuid4

import structlog

from autopilot.core.autonomous.backoff import is_transient, retry_after_or_backoff
from autopilot.core.autonomous.signal_parser import ParseResult, SignalParser
from autopilot.core.config import settings
from autopilot.core.exceptions import (
    AgentRateLimitError,
    AgentRuntimeError,
    AgentSpawnError,
    AgentTimeoutError,
)
from autopilot.core.models import AgentType

logger = structlog.get_logger()


# ==========================================================================
# Handles & Messages
# ==========================================================================

@dataclass
class AgentHandle:
    """Addressable agent context. Continuations reuse the same handle."""
    agent_id: str
    agent_type: AgentType
    model: str
    session_ref: Optional[str] = None       # Runtime-side conversation id
    worktree_ref: Optional[str] = None

    @classmethod
    def new(cls, agent_type: AgentType, model: str, worktree_ref: Optional[str] = None) -> "AgentHandle":
        return cls(
            agent_id=f"agent-{uuid4().hex[:12]}",
            agent_type=agent_type,
            model=model,
            worktree_ref=worktree_ref,
        )


@dataclass
class AgentMessage:
    role: str = "assistant"                 # assistant, tool, system
    content: str = ""
    tool_name: Optional[str] = None
    modifies_files: bool = False
    tokens: int = 0
    is_error: bool = False


@dataclass
class TurnResult:
    """One agent turn folded into a single record."""
    agent_id: str
    text: str = ""
    final_message: str = ""
    turns: int = 0
    tool_calls: int = 0
    file_modifications: int = 0
    tokens: int = 0
    errors: list[str] = field(default_factory=list)
    signal: Optional[ParseResult] = None


MessageCallback = Callable[[AgentHandle, AgentMessage], Awaitable[None]]


# ==========================================================================
# Runtime Interface
# ==========================================================================

class AgentRuntime(ABC):
    """The black-box coding agent. Implementations talk to the real runtime."""

    @abstractmethod
    async def spawn(
        self,
        agent_type: AgentType,
        task: str,
        model: str,
        worktree_ref: Optional[str] = None,
    ) -> AgentHandle:
        """Start an agent on ``task``; the first turn is read with ``messages``."""
        pass

    @abstractmethod
    def messages(self, handle: AgentHandle) -> AsyncIterator[AgentMessage]:
        """Message stream of the turn started by ``spawn``."""
        pass

    @abstractmethod
    def continue_agent(self, handle: AgentHandle, message: str) -> AsyncIterator[AgentMessage]:
        """Append ``message`` to the agent's existing context and stream the reply."""
        pass

    @abstractmethod
    async def terminate(self, handle: AgentHandle) -> None:
        pass


async def collect_turn(
    handle: AgentHandle,
    stream: AsyncIterator[AgentMessage],
    on_message: Optional[MessageCallback] = None,
    parser: Optional[SignalParser] = None,
) -> TurnResult:
    """Drain a message stream into a TurnResult and parse its STATUS signal."""
    result = TurnResult(agent_id=handle.agent_id)
    texts: list[str] = []

    async for message in stream:
        if on_message is not None:
            await on_message(handle, message)

        result.tokens += message.tokens
        if message.tool_name:
            result.tool_calls += 1
        if message.modifies_files:
            result.file_modifications += 1
        if message.is_error:
            result.errors.append(message.content)
        if message.role == "assistant":
            result.turns += 1
            if message.content:
                texts.append(message.content)
                result.final_message = message.content

    result.text = "\n".join(texts)
    result.signal = (parser or SignalParser()).parse(result.text)
    return result


# ==========================================================================
# Resilient Wrapper
# ==========================================================================

class ResilientAgentRuntime(AgentRuntime):
    """
    Wraps a runtime with bounded retries and timeouts.

    - spawn: retried on recoverable errors, ``delay = min(delay * 2, max)``
    - streams: per-message idle timeout raising AgentTimeoutError
    - run_turn: rate limits retried with backoff, then re-raised
    """

    def __init__(
        self,
        runtime: AgentRuntime,
        spawn_retries: Optional[int] = None,
        initial_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        message_timeout: Optional[float] = None,
        rate_limit_base: Optional[float] = None,
        rate_limit_max: Optional[float] = None,
        rate_limit_retries: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_rate_limit: Optional[Callable[[AgentHandle, AgentRateLimitError], Awaitable[None]]] = None,
    ):
        self.runtime = runtime
        self.spawn_retries = spawn_retries if spawn_retries is not None else settings.AGENT_SPAWN_RETRIES
        self.initial_delay = initial_delay if initial_delay is not None else settings.AGENT_RETRY_INITIAL_DELAY
        self.max_delay = max_delay if max_delay is not None else settings.AGENT_RETRY_MAX_DELAY
        self.message_timeout = (
            message_timeout if message_timeout is not None else settings.AGENT_MESSAGE_TIMEOUT_SECONDS
        )
        self.rate_limit_base = rate_limit_base if rate_limit_base is not None else settings.RATE_LIMIT_BASE_SECONDS
        self.rate_limit_max = rate_limit_max if rate_limit_max is not None else settings.RATE_LIMIT_MAX_SECONDS
        self.rate_limit_retries = (
            rate_limit_retries if rate_limit_retries is not None else settings.RATE_LIMIT_MAX_RETRIES
        )
        self._sleep = sleep
        self.on_rate_limit = on_rate_limit

    async def spawn(
        self,
        agent_type: AgentType,
        task: str,
        model: str,
        worktree_ref: Optional[str] = None,
    ) -> AgentHandle:
        delay = self.initial_delay
        for attempt in range(self.spawn_retries + 1):
            try:
                return await self.runtime.spawn(agent_type, task, model, worktree_ref)
            except AgentRateLimitError as e:
                if attempt >= self.spawn_retries:
                    raise
                wait = retry_after_or_backoff(e.retry_after, attempt, self.rate_limit_base, self.rate_limit_max)
                logger.warning("Agent spawn rate limited", agent_type=agent_type.value, attempt=attempt + 1, delay=wait)
                await self._sleep(wait)
            except Exception as e:
                if attempt >= self.spawn_retries or not is_transient(e):
                    if isinstance(e, AgentRuntimeError):
                        raise
                    raise AgentSpawnError(f"Failed to spawn {agent_type.value} agent: {e}") from e
                logger.warning(
                    "Agent spawn failed, retrying",
                    agent_type=agent_type.value,
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(e),
                )
                await self._sleep(delay)
                delay = min(delay * 2.0, self.max_delay)
        raise AgentSpawnError(f"Failed to spawn {agent_type.value} agent")

    def messages(self, handle: AgentHandle) -> AsyncIterator[AgentMessage]:
        return self._with_idle_timeout(handle, self.runtime.messages(handle))

    def continue_agent(self, handle: AgentHandle, message: str) -> AsyncIterator[AgentMessage]:
        return self._with_idle_timeout(handle, self.runtime.continue_agent(handle, message))

    async def terminate(self, handle: AgentHandle) -> None:
        await self.runtime.terminate(handle)

    async def _with_idle_timeout(
        self,
        handle: AgentHandle,
        stream: AsyncIterator[AgentMessage],
    ) -> AsyncIterator[AgentMessage]:
        iterator = stream.__aiter__()
        while True:
            try:
                message = await asyncio.wait_for(iterator.__anext__(), timeout=self.message_timeout)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError as e:
                raise AgentTimeoutError(
                    f"No message from {handle.agent_id} within {self.message_timeout:.0f}s",
                    agent_id=handle.agent_id,
                ) from e
            yield message

    async def run_turn(
        self,
        handle: AgentHandle,
        message: Optional[str] = None,
        on_message: Optional[MessageCallback] = None,
    ) -> TurnResult:
        """
        Run one turn: the initial turn when ``message`` is None, else a continuation.

        Rate limits are retried up to ``rate_limit_retries`` times with
        exponential backoff; the last one propagates to the caller.
        """
        attempt = 0
        while True:
            stream = self.messages(handle) if message is None else self.continue_agent(handle, message)
            try:
                return await collect_turn(handle, stream, on_message=on_message)
            except AgentRateLimitError as e:
                e.agent_id = e.agent_id or handle.agent_id
                if self.on_rate_limit is not None:
                    await self.on_rate_limit(handle, e)
                if attempt >= self.rate_limit_retries:
                    logger.error("Rate limit retries exhausted", agent_id=handle.agent_id, attempts=attempt)
                    raise
                delay = retry_after_or_backoff(e.retry_after, attempt, self.rate_limit_base, self.rate_limit_max)
                logger.warning("Agent rate limited", agent_id=handle.agent_id, attempt=attempt + 1, delay=delay)
                await self._sleep(delay)
                attempt += 1

