"""Agent loop: the core processing engine.

Each processing pass runs a small state machine:

    AWAITING_PROVIDER -> (final answer) -> DONE
    AWAITING_PROVIDER -> (tool calls) -> EXECUTING_TOOL -> AWAITING_PROVIDER -> ...

bounded by ``max_iterations`` provider rounds. Passes for the same session
key are serialized by the session lock; different sessions run concurrently.
Tool failures become observed tool turns; provider failures and the
iteration cap end the pass.
"""

from __future__ import annotations

import asyncio
import json
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable

import frontmatter
from loguru import logger

from crabgate.agent.tools.base import Tool
from crabgate.agent.tools.cron import CronTool
from crabgate.agent.tools.registry import ToolRegistry
from crabgate.bus.events import Envelope
from crabgate.bus.queue import WILDCARD, MessageBus, Subscription
from crabgate.errors import (
    IterationLimitExceeded,
    NotFoundError,
    ProviderError,
    ToolExecutionError,
    ValidationError,
)
from crabgate.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from crabgate.session.manager import Session, SessionManager, Turn
from crabgate.utils.helpers import truncate

ProgressCallback = Callable[..., Awaitable[None]]

_HELP_TEXT = "crabgate commands:\n/new - Start a new conversation\n/help - Show available commands"


class AgentLoop:
    """
    The agent loop is the core processing engine.

    It:
    1. Receives inbound envelopes from the bus (or direct calls)
    2. Builds the provider request from session history and tool schemas
    3. Calls the LLM
    4. Executes tool calls
    5. Publishes responses back on the bus
    """

    def __init__(
        self,
        bus: MessageBus,
        provider: LLMProvider,
        workspace: Path | None = None,
        tools: ToolRegistry | None = None,
        sessions: SessionManager | None = None,
        model: str | None = None,
        max_iterations: int = 20,
        temperature: float = 0.1,
        max_tokens: int = 4096,
        memory_window: int = 100,
        tool_timeout_s: float | None = 60.0,
        provider_timeout_s: float | None = 120.0,
        shutdown_grace_s: float = 10.0,
        system_prompt: str | None = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.bus = bus
        self.provider = provider
        self.workspace = workspace
        self.tools = tools or ToolRegistry()
        self.sessions = sessions or SessionManager()
        self.model = model or provider.get_default_model()
        self.max_iterations = max_iterations
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.memory_window = memory_window
        self.tool_timeout_s = tool_timeout_s
        self.provider_timeout_s = provider_timeout_s
        self.shutdown_grace_s = shutdown_grace_s
        self.system_prompt = system_prompt

        self._running = False
        self._subscription: Subscription | None = None
        self._stopped = asyncio.Event()
        # Set by stop(); a run that has not started yet returns at once
        self._stop_requested = False
        # In-flight envelope tasks, drained on shutdown
        self._inflight: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def register_tool(self, tool: Tool) -> None:
        """Register a tool. Raises DuplicateToolError on a name collision."""
        if self._running:
            raise RuntimeError("Tools must be registered before the agent loop starts")
        self.tools.register(tool)
        logger.debug("Tool registered: {}", tool.name)

    def _set_tool_context(self, channel: str, chat_id: str) -> None:
        """Update context for all tools that need routing info."""
        if cron_tool := self.tools.get("cron"):
            if isinstance(cron_tool, CronTool):
                cron_tool.set_context(channel, chat_id)

    def _scan_skills(self) -> tuple[list[str], list[dict[str, str]]]:
        """Skill directories under workspace/skills, and the ones with a readable SKILL.md."""
        if self.workspace is None:
            return [], []
        skills_dir = self.workspace / "skills"
        if not skills_dir.is_dir():
            return [], []

        total = sorted(p.name for p in skills_dir.iterdir() if p.is_dir())
        available: list[dict[str, str]] = []
        for name in total:
            skill_file = skills_dir / name / "SKILL.md"
            if not skill_file.is_file():
                continue
            try:
                post = frontmatter.load(skill_file)
            except Exception as e:
                logger.error("Failed to read skill file {}: {}", skill_file, e)
                continue
            available.append({
                "name": str(post.get("name") or name),
                "description": str(post.get("description") or ""),
            })
        return total, available

    def get_startup_info(self) -> dict[str, Any]:
        """Diagnostic snapshot of the loaded tools and skills."""
        total, available = self._scan_skills()
        return {
            "tools": {"count": len(self.tools), "names": self.tools.tool_names},
            "skills": {"total": len(total), "available": len(available), "names": [s["name"] for s in available]},
            "model": self.model,
            "max_iterations": self.max_iterations,
        }

    # ------------------------------------------------------------------
    # Provider / tool helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _strip_think(text: str | None) -> str | None:
        """Remove <think>...</think> blocks that some models embed in content."""
        if not text:
            return None
        return re.sub(r"<think>[\s\S]*?</think>", "", text).strip() or None

    @staticmethod
    def _tool_hint(tool_calls: list[ToolCallRequest]) -> str:
        """Format tool calls as concise hint, e.g. 'web_search("query")'."""
        def _fmt(tc: ToolCallRequest) -> str:
            val = next(iter(tc.arguments.values()), None) if tc.arguments else None
            if not isinstance(val, str):
                return tc.name
            return f'{tc.name}("{val[:40]}...")' if len(val) > 40 else f'{tc.name}("{val}")'
        return ", ".join(_fmt(tc) for tc in tool_calls)

    def _build_messages(self, turns: list[Turn]) -> list[dict[str, Any]]:
        now = datetime.now().astimezone().strftime("%Y-%m-%d %H:%M (%A) %Z")
        parts = [self.system_prompt or (
            "You are crabgate, a personal AI assistant. Use the available tools when they help, "
            "and answer concisely."
        )]
        _, skills = self._scan_skills()
        if skills:
            lines = [f"- {s['name']}: {s['description']}" if s["description"] else f"- {s['name']}" for s in skills]
            parts.append("Available skills (instructions in workspace/skills/<name>/SKILL.md):\n" + "\n".join(lines))
        parts.append(f"Current time: {now}")

        messages: list[dict[str, Any]] = [{"role": "system", "content": "\n\n".join(parts)}]
        messages.extend(t.to_message() for t in turns)
        return messages

    async def _call_provider(self, turns: list[Turn]) -> LLMResponse:
        """One provider round. Raises ProviderError on failure or timeout."""
        try:
            response = await asyncio.wait_for(
                self.provider.chat(
                    messages=self._build_messages(turns),
                    tools=self.tools.get_definitions() or None,
                    model=self.model,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                ),
                timeout=self.provider_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise ProviderError(f"Provider timed out after {self.provider_timeout_s}s") from e
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Provider call failed: {e}") from e

        if response.finish_reason == "error":
            raise ProviderError(response.content or "Provider returned an error")
        return response

    async def _run_tool(self, call: ToolCallRequest) -> Turn:
        """Execute one requested tool; failures become an error turn."""
        args_str = json.dumps(call.arguments, ensure_ascii=False)
        logger.info("Tool call: {}({})", call.name, args_str[:200])
        try:
            result = await self.tools.execute(call.name, call.arguments, timeout=self.tool_timeout_s)
        except (ToolExecutionError, ValidationError, NotFoundError) as e:
            logger.warning("Tool {} failed: {}", call.name, e)
            return Turn.tool(call, f"Error: {e}", is_error=True)
        return Turn.tool(call, result)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def _run_agent_loop(
        self,
        session: Session,
        content: str,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """
        Run the tool-calling iteration loop for one user message.

        The caller holds ``session.lock``. Turns of this pass are collected
        locally and committed to the session in one step, so the history is
        never seen half-written. A provider failure discards the pass.

        Returns:
            The final assistant text.

        Raises:
            ProviderError: The provider failed or timed out.
            IterationLimitExceeded: No final answer within max_iterations rounds.
        """
        history = session.get_history(self.memory_window)
        pending: list[Turn] = [Turn.user(content)]
        partial: str | None = None

        for iteration in range(1, self.max_iterations + 1):
            response = await self._call_provider(history + pending)

            if not response.has_tool_calls:
                final = self._strip_think(response.content) or ""
                pending.append(Turn.assistant(final))
                session.commit(pending)
                return final

            clean = self._strip_think(response.content)
            if clean:
                partial = clean
            if on_progress:
                if clean:
                    await on_progress(clean)
                await on_progress(self._tool_hint(response.tool_calls), tool_hint=True)

            pending.append(Turn.assistant(clean, response.tool_calls))
            for call in response.tool_calls:
                pending.append(await self._run_tool(call))
            logger.debug("Iteration {}/{} done for {}", iteration, self.max_iterations, session.key)

        session.commit(pending)
        logger.warning("Max iterations ({}) reached for {}", self.max_iterations, session.key)
        raise IterationLimitExceeded(self.max_iterations, partial=partial)

    async def process_direct(
        self,
        content: str,
        session_key: str = "cli:direct",
        channel: str = "cli",
        chat_id: str = "direct",
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """
        Process a message directly (for CLI or cron usage).

        Holds the session lock for the whole pass; it is released on return,
        error or cancellation.
        """
        session = self.sessions.get_or_create(session_key)
        async with session.lock:
            cmd = content.strip().lower()
            if cmd == "/new":
                session.clear()
                logger.info("Session reset: {}", session_key)
                return "New session started."
            if cmd == "/help":
                return _HELP_TEXT

            logger.info("Processing message for {}: {}", session_key, truncate(content))
            self._set_tool_context(channel, chat_id)
            response = await self._run_agent_loop(session, content, on_progress=on_progress)
            logger.info("Response to {}: {}", session_key, truncate(response, 120))
            return response

    async def _handle_envelope(self, envelope: Envelope) -> None:
        """Process one inbound envelope and publish the reply."""
        async def _bus_progress(content: str, *, tool_hint: bool = False) -> None:
            meta = dict(envelope.metadata)
            meta["_progress"] = True
            meta["_tool_hint"] = tool_hint
            await self.bus.publish_outbound(Envelope.outbound(
                channel=envelope.channel, chat_id=envelope.chat_id, text=content,
                session_key=envelope.session_key, metadata=meta,
            ))

        try:
            text = await self.process_direct(
                envelope.text,
                session_key=envelope.session_key,
                channel=envelope.channel,
                chat_id=envelope.chat_id,
                on_progress=_bus_progress,
            )
            text = text or "I've completed processing but have no response to give."
        except IterationLimitExceeded as e:
            notice = (
                f"I reached the maximum number of tool call iterations ({e.iterations}) "
                "without completing the task. You can try breaking the task into smaller steps."
            )
            text = f"{e.partial}\n\n{notice}" if e.partial else notice
        except Exception as e:
            logger.error("Error processing message for {}: {}", envelope.session_key, e)
            text = f"Sorry, I encountered an error: {str(e)}"

        await self.bus.publish_outbound(Envelope.outbound(
            channel=envelope.channel,
            chat_id=envelope.chat_id,
            text=text,
            session_key=envelope.session_key,
            metadata=envelope.metadata,
        ))

    async def run(self) -> None:
        """
        Run the agent loop, processing inbound envelopes from the bus.

        Each envelope is handled on its own task; the session lock keeps
        passes for one session in order. Returns after ``stop()`` (or
        cancellation), once in-flight passes finish or the grace period ends.
        A ``stop()`` issued before this coroutine gets scheduled is honoured:
        the run returns immediately without subscribing.
        """
        if self._running:
            raise RuntimeError("Agent loop already running")
        if self._stop_requested:
            self._stop_requested = False
            self._stopped.set()
            logger.info("Agent loop stopped before it started")
            return
        self._running = True
        self._stopped.clear()
        self._subscription = self.bus.subscribe(WILDCARD)
        logger.info("Agent loop started")

        try:
            async for envelope in self._subscription:
                if not envelope.is_inbound:
                    continue
                task = asyncio.create_task(
                    self._handle_envelope(envelope), name=f"agent:{envelope.session_key}"
                )
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
        finally:
            self._subscription.close()
            await self._drain()
            self._running = False
            self._stop_requested = False
            self._stopped.set()
            logger.info("Agent loop stopped")

    async def _drain(self) -> None:
        """Wait for in-flight passes up to the grace period, then cancel the rest."""
        if not self._inflight:
            return
        logger.info("Waiting for {} in-flight message(s)", len(self._inflight))
        _, pending = await asyncio.wait(set(self._inflight), timeout=self.shutdown_grace_s)
        if pending:
            logger.warning("Cancelling {} message(s) still running after {}s", len(pending), self.shutdown_grace_s)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def stop(self) -> None:
        """
        Stop the agent loop and wait for ``run`` to exit or the grace period to pass.

        When the loop is not running yet the request is recorded and the next
        ``run`` returns without processing anything.
        """
        self._stop_requested = True
        if not self._running:
            return
        logger.info("Agent loop stopping")
        if self._subscription:
            self._subscription.close()
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=self.shutdown_grace_s + 1.0)
        except asyncio.TimeoutError:
            logger.warning("Agent loop did not stop within {}s", self.shutdown_grace_s)

    @property
    def is_running(self) -> bool:
        return self._running
