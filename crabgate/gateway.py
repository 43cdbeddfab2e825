"""Gateway wiring: builds the bus, agent, scheduler and channels and runs them together.

Everything is constructed here and passed in explicitly; no component
reaches for a process-wide bus or config.
"""

from __future__ import annotations

import asyncio
from typing import Iterable

from loguru import logger

from crabgate.agent.loop import AgentLoop
from crabgate.agent.tools.cron import CronTool
from crabgate.agent.tools.registry import ToolRegistry
from crabgate.bus.queue import MessageBus
from crabgate.channels.base import BaseChannel
from crabgate.channels.manager import ChannelManager
from crabgate.config.schema import Config, CronJobConfig
from crabgate.cron.service import CronService
from crabgate.cron.types import CronJob, CronSchedule
from crabgate.errors import CrabgateError
from crabgate.providers.base import LLMProvider
from crabgate.providers.litellm_provider import LiteLLMProvider
from crabgate.utils.helpers import get_workspace_path


def build_provider(config: Config) -> LiteLLMProvider:
    """Create the LiteLLM provider for the configured model."""
    model = config.agents.defaults.model
    p = config.get_provider(model)
    return LiteLLMProvider(
        api_key=p.api_key if p else None,
        api_base=p.api_base if p else None,
        default_model=model,
        extra_headers=p.extra_headers if p else None,
        provider_name=config.get_provider_name(model),
    )


def ensure_jobs(cron: CronService, entries: Iterable[CronJobConfig]) -> tuple[int, int]:
    """
    Register jobs by name, replacing any existing job(s) with the same name.

    The scheduler itself does not deduplicate names, so this is the
    idempotent upsert used at startup.

    Returns:
        (registered, replaced) counts.
    """
    registered = replaced = 0
    for entry in entries:
        for stale in cron.find_jobs(entry.name):
            cron.remove_job(stale.id)
            replaced += 1

        if entry.every_s is not None:
            schedule = CronSchedule.every(entry.every_s)
        else:
            schedule = CronSchedule.cron(entry.cron_expr)
        try:
            cron.add_job(entry.name, schedule, entry.message, entry.deliver, entry.channel, entry.to)
        except CrabgateError as e:
            logger.warning("Failed to register cron job {}: {}", entry.name, e)
            continue
        registered += 1

    if replaced:
        logger.info("Updated {} existing cron job(s)", replaced)
    if registered:
        logger.info("Registered {} cron job(s)", registered)
    return registered, replaced


class Gateway:
    """Owns one bus, agent loop, scheduler and channel manager."""

    def __init__(
        self,
        config: Config,
        provider: LLMProvider | None = None,
        channels: Iterable[BaseChannel] = (),
    ):
        self.config = config
        defaults = config.agents.defaults

        self.bus = MessageBus(capacity=config.bus.queue_capacity)
        self.tools = ToolRegistry()
        self.provider = provider or build_provider(config)
        self.agent = AgentLoop(
            bus=self.bus,
            provider=self.provider,
            workspace=get_workspace_path(defaults.workspace),
            tools=self.tools,
            model=defaults.model,
            max_iterations=defaults.max_tool_iterations,
            temperature=defaults.temperature,
            max_tokens=defaults.max_tokens,
            memory_window=defaults.memory_window,
            tool_timeout_s=defaults.tool_timeout_s,
            provider_timeout_s=defaults.provider_timeout_s,
            shutdown_grace_s=defaults.shutdown_grace_s,
            system_prompt=defaults.system_prompt,
        )
        self.cron = CronService(
            store_path=config.cron_store_path,
            bus=self.bus,
            tick_interval_s=config.cron.tick_interval_s,
            max_concurrent_jobs=config.cron.max_concurrent_jobs,
        )
        self.cron.set_on_job(self.on_cron_job)
        self.agent.register_tool(CronTool(self.cron))

        self.channels = ChannelManager(self.bus, config.channels)
        for channel in channels:
            self.channels.register(channel)

        self._agent_task: asyncio.Task | None = None

    async def on_cron_job(self, job: CronJob) -> str:
        """Hand a due job to the agent loop as a synthetic conversation turn."""
        return await self.agent.process_direct(
            job.message,
            session_key=f"cron:{job.id}",
            channel=job.channel or "cli",
            chat_id=job.to or "direct",
        )

    def startup_info(self) -> dict:
        """Log and return the agent's startup snapshot."""
        info = self.agent.get_startup_info()
        logger.info(
            "Agent initialized: {} tools, {}/{} skills available",
            info["tools"]["count"], info["skills"]["available"], info["skills"]["total"],
        )
        return info

    async def start(self) -> None:
        """Start scheduler, channels and the agent loop."""
        self.startup_info()
        if self.config.cron.jobs:
            ensure_jobs(self.cron, self.config.cron.jobs)
        if self.config.cron.enabled:
            await self.cron.start()
        await self.channels.start_all()
        self._agent_task = asyncio.create_task(self.agent.run(), name="agent-loop")
        logger.info("Gateway started on {}:{}", self.config.gateway.host, self.config.gateway.port)

    async def stop(self) -> None:
        """Shut everything down in reverse order."""
        logger.info("Shutting down...")
        self.cron.stop()
        await self.agent.stop()
        if self._agent_task:
            await asyncio.gather(self._agent_task, return_exceptions=True)
            self._agent_task = None
        await self.channels.stop_all()
        logger.info("Gateway stopped")
