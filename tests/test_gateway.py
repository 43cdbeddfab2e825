"""End-to-end wiring tests: channel -> bus -> agent -> bus -> channel, and cron -> agent."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from crabgate.config.schema import Config, CronJobConfig
from crabgate.cron.service import CronService
from crabgate.cron.types import CronSchedule
from crabgate.gateway import Gateway, ensure_jobs
from fakes import FakeChannel, ScriptedProvider, final, last_user_text


def _config(tmp_path) -> Config:
    config = Config()
    config.agents.defaults.workspace = str(tmp_path)
    config.cron.tick_interval_s = 0.01
    return config


def test_ensure_jobs_replaces_by_name(tmp_path, clock):
    cron = CronService(store_path=tmp_path / "jobs.json", clock=clock)
    specs = [
        CronJobConfig(name="econ:scan_markets", message="Scan the markets", every_s=900),
        CronJobConfig(name="morning", message="Brief me", cron_expr="0 7 * * *", deliver=True,
                      channel="telegram", to="42"),
    ]

    assert ensure_jobs(cron, specs) == (2, 0)
    first_ids = {j.id for j in cron.list_jobs()}
    assert ensure_jobs(cron, specs) == (2, 2)

    jobs = cron.list_jobs()
    assert sorted(j.name for j in jobs) == ["econ:scan_markets", "morning"]
    assert not first_ids & {j.id for j in jobs}
    [scan] = cron.find_jobs("econ:scan_markets")
    assert scan.schedule.every_ms == 900_000
    assert scan.state.next_run_at_ms == clock.now + 900_000


def test_ensure_jobs_skips_invalid_specs(tmp_path, clock):
    cron = CronService(store_path=tmp_path / "jobs.json", clock=clock)
    specs = [CronJobConfig(name="broken", message="m", cron_expr="not cron")]
    assert ensure_jobs(cron, specs) == (0, 0)
    assert cron.list_jobs() == []


def test_gateway_registers_cron_tool(tmp_path):
    gateway = Gateway(_config(tmp_path), provider=ScriptedProvider([]))
    info = gateway.startup_info()
    assert info["tools"] == {"count": 1, "names": ["cron"]}
    assert gateway.cron.store_path == tmp_path / "cron" / "jobs.json"


@pytest.mark.asyncio
async def test_cron_job_runs_through_agent_and_is_delivered(tmp_path):
    provider = ScriptedProvider(lambda messages: final(f"Report: {last_user_text(messages)}"))
    gateway = Gateway(_config(tmp_path), provider=provider)
    channel = FakeChannel(gateway.bus)
    gateway.channels.register(channel)
    await gateway.channels.start_all()

    job = gateway.cron.add_job("report", CronSchedule.every(3600), "Summarize the markets",
                               deliver=True, channel="fake", to="7")
    assert await gateway.cron.run_job(job.id) is True
    await asyncio.wait_for(channel.delivered.wait(), timeout=1.0)

    [sent] = channel.sent
    assert sent.text == "Report: Summarize the markets"
    assert sent.chat_id == "7"
    assert gateway.cron.get_job(job.id).state.last_result == sent.text
    assert len(gateway.agent.sessions.get(f"cron:{job.id}").turns) == 2

    await gateway.channels.stop_all()


@pytest.mark.asyncio
async def test_gateway_round_trip(tmp_path):
    config = _config(tmp_path)
    config.cron.jobs = [CronJobConfig(name="econ:scan_markets", message="Scan", every_s=900)]
    provider = ScriptedProvider(lambda messages: final(f"You said: {last_user_text(messages)}"))
    channel = FakeChannel(None)
    gateway = Gateway(config, provider=provider)
    channel.bus = gateway.bus
    gateway.channels.register(channel)

    await gateway.start()
    await asyncio.sleep(0.01)
    assert gateway.cron.is_running
    assert gateway.agent.is_running
    assert [j.name for j in gateway.cron.list_jobs()] == ["econ:scan_markets"]

    await channel._handle_message("alice", "7", "hello")
    await asyncio.wait_for(channel.delivered.wait(), timeout=1.0)
    assert channel.sent[0].text == "You said: hello"
    assert channel.sent[0].session_key == "fake:7"

    await gateway.stop()
    assert not gateway.cron.is_running
    assert not gateway.agent.is_running
    assert not channel.is_running


@pytest.mark.asyncio
async def test_stop_right_after_start_returns(tmp_path):
    gateway = Gateway(_config(tmp_path), provider=ScriptedProvider([]))
    channel = FakeChannel(gateway.bus)
    gateway.channels.register(channel)

    await gateway.start()
    async with asyncio.timeout(2.0):
        await gateway.stop()

    assert not gateway.agent.is_running
    assert not gateway.cron.is_running
    assert not channel.is_running


@pytest.mark.asyncio
async def test_on_cron_job_uses_job_session_and_target(tmp_path):
    gateway = Gateway(_config(tmp_path), provider=ScriptedProvider([]))
    gateway.agent.process_direct = AsyncMock(return_value="done")

    job = gateway.cron.add_job("ping", CronSchedule.every(60), "Ping", deliver=True, channel="telegram", to="42")
    assert await gateway.on_cron_job(job) == "done"
    gateway.agent.process_direct.assert_awaited_once_with(
        "Ping", session_key=f"cron:{job.id}", channel="telegram", chat_id="42",
    )

    quiet = gateway.cron.add_job("quiet", CronSchedule.every(60), "Tidy up")
    await gateway.on_cron_job(quiet)
    assert gateway.agent.process_direct.await_args.kwargs == {
        "session_key": f"cron:{quiet.id}", "channel": "cli", "chat_id": "direct",
    }


@pytest.mark.asyncio
async def test_provider_failure_in_cron_job_is_recorded(tmp_path):
    provider = MagicMock()
    provider.get_default_model.return_value = "m"
    provider.chat = AsyncMock(side_effect=RuntimeError("quota exceeded"))
    gateway = Gateway(_config(tmp_path), provider=provider)

    job = gateway.cron.add_job("scan", CronSchedule.every(60), "Scan")
    await gateway.cron.run_job(job.id)

    state = gateway.cron.get_job(job.id).state
    assert state.last_status == "error"
    assert "quota exceeded" in state.last_error
    assert gateway.cron.get_job(job.id).enabled
