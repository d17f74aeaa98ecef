"""
Tests for onboarding.services.unit_installer
============================================

Test Categories:
1. Install request building (method, auto-configuration, env vars)
2. Health classification and install percent mapping
3. Runner: success path, retries, retry budget, timeouts, health failures
4. Dependency classification
5. Terminal transition

The runner is driven directly against a registered session with fake
installer/prober collaborators.
"""

import asyncio
from typing import List

import pytest

from fakes import FakeInstaller, FakeProber, fast_config, make_rec, make_session
from onboarding.services.events import EventType, InMemoryEventSink
from onboarding.services.models import (
    EnvironmentContext,
    HealthReport,
    HealthVerdict,
    InstallMethod,
    LifecycleEvent,
    UnitStatus,
)
from onboarding.services.progress_store import SessionRegistry
from onboarding.services.unit_installer import (
    PERCENT_INSTALL_END,
    PERCENT_INSTALL_START,
    UnitInstallRunner,
    UnitOutcome,
    build_install_request,
    classify_health,
    determine_install_method,
    generate_auto_configuration,
    generate_environment_variables,
    install_progress_percent,
)


def _runner(installer, prober, sink=None):
    registry = SessionRegistry()
    runner = UnitInstallRunner(installer, prober, registry, sink or InMemoryEventSink())
    return runner, registry


def _registered(registry, recs, **config):
    session = make_session(recs, config=fast_config(**config))
    registry.add(session)
    return session


# =============================================================================
# 1. Install request building
# =============================================================================


class TestDetermineInstallMethod:

    def test_docker_when_available_and_image_present(self) -> None:
        rec = make_rec("pg", docker_image="postgres:16", npm_package="@mcp/pg")
        env = EnvironmentContext(project_type="nodejs", tools={"docker": True})
        assert determine_install_method(rec, env) == InstallMethod.DOCKER

    def test_npm_for_node_projects(self) -> None:
        rec = make_rec("pg", docker_image="postgres:16", npm_package="@mcp/pg")
        env = EnvironmentContext(project_type="nodejs", tools={"docker": False})
        assert determine_install_method(rec, env) == InstallMethod.NPM

    def test_binary_when_only_binary_available(self) -> None:
        rec = make_rec("gh", binary_url="https://example.com/gh.tar.gz")
        assert determine_install_method(rec, EnvironmentContext()) == InstallMethod.BINARY

    def test_npm_is_the_fallback(self) -> None:
        assert determine_install_method(make_rec("x"), EnvironmentContext()) == InstallMethod.NPM


class TestAutoConfiguration:

    def test_database_tag(self) -> None:
        config = generate_auto_configuration(make_rec("pg", tags=["database"]), EnvironmentContext())
        assert config == {"auto_discover": True, "connection_pool_size": 5}

    def test_cloud_tag_needs_aws_cli(self) -> None:
        rec = make_rec("s3", tags=["cloud"])
        assert generate_auto_configuration(rec, EnvironmentContext()) == {}
        with_cli = generate_auto_configuration(rec, EnvironmentContext(tools={"aws_cli": True}))
        assert with_cli == {"provider": "aws", "use_iam_roles": True}

    def test_monitoring_tag(self) -> None:
        config = generate_auto_configuration(make_rec("prom", tags=["monitoring"]), EnvironmentContext())
        assert config["auto_alerts"] is True
        assert config["health_check_interval"] == 60

    def test_database_env_vars(self) -> None:
        env = generate_environment_variables(make_rec("pg", tags=["database"]))
        assert env["NODE_ENV"] == "production"
        assert env["DB_POOL_SIZE"] == "5"
        assert env["DB_TIMEOUT"] == "30000"

    def test_plain_env_vars(self) -> None:
        assert generate_environment_variables(make_rec("x")) == {"NODE_ENV": "production", "LOG_LEVEL": "info"}

    def test_build_install_request(self) -> None:
        request = build_install_request(make_rec("pg", tags=["database"]), EnvironmentContext())
        assert request.unit.id == "pg"
        assert request.method == InstallMethod.NPM
        assert request.configuration["auto_discover"] is True
        assert request.auto_start is True


# =============================================================================
# 2. Health classification / percent mapping
# =============================================================================


class TestClassifyHealth:

    def test_fast_connected_is_healthy(self) -> None:
        assert classify_health(HealthReport(status="connected", response_time_ms=999), 1000) == HealthVerdict.HEALTHY

    def test_slow_connected_is_degraded(self) -> None:
        assert classify_health(HealthReport(status="connected", response_time_ms=1000), 1000) == HealthVerdict.DEGRADED

    def test_not_connected_is_unhealthy(self) -> None:
        assert classify_health(HealthReport(status="error", response_time_ms=5), 1000) == HealthVerdict.UNHEALTHY


class TestInstallProgressPercent:

    def test_band_bounds(self) -> None:
        assert install_progress_percent(0, 120) == PERCENT_INSTALL_START
        assert install_progress_percent(60, 120) == 50.0
        assert install_progress_percent(500, 120) == PERCENT_INSTALL_END

    def test_zero_timeout(self) -> None:
        assert install_progress_percent(1, 0) == PERCENT_INSTALL_END


# =============================================================================
# 3. Runner
# =============================================================================


class PercentSnapshotSink(InMemoryEventSink):
    """Records the unit's percent/status at the moment each retry is announced."""

    def __init__(self, session_ref: List) -> None:
        super().__init__()
        self._session_ref = session_ref
        self.snapshots: List[tuple] = []

    async def emit(self, event: LifecycleEvent) -> None:
        await super().emit(event)
        if event.type == EventType.UNIT_RETRYING:
            unit = self._session_ref[0].units[event.data["unit_id"]]
            self.snapshots.append((unit.percent, unit.status, unit.retry_count))


class TestRunnerSuccess:

    @pytest.mark.asyncio
    async def test_installs_and_reports_healthy(self) -> None:
        installer, prober = FakeInstaller(), FakeProber()
        runner, registry = _runner(installer, prober)
        rec = make_rec("pg")
        session = _registered(registry, [rec])

        outcome = await runner.run(session, rec)

        assert outcome.success is True
        assert outcome.verdict == HealthVerdict.HEALTHY
        assert outcome.attempts == 1
        progress = session.units["pg"]
        assert progress.status == UnitStatus.TESTING
        assert progress.install_handle is not None
        assert progress.health_verdict == HealthVerdict.HEALTHY
        assert installer.calls == ["pg"]

    @pytest.mark.asyncio
    async def test_degraded_is_accepted(self) -> None:
        prober = FakeProber({"pg": [HealthReport(status="connected", response_time_ms=2500)]})
        runner, registry = _runner(FakeInstaller(), prober)
        rec = make_rec("pg")
        session = _registered(registry, [rec])

        outcome = await runner.run(session, rec)

        assert outcome.success is True
        assert outcome.verdict == HealthVerdict.DEGRADED

    @pytest.mark.asyncio
    async def test_install_percent_is_monotonic_while_polling(self) -> None:
        seen: List[float] = []
        installer = FakeInstaller(delay=0.01, hang=["slow"])

        runner, registry = _runner(installer, FakeProber())
        rec = make_rec("slow")
        session = _registered(registry, [rec], install_timeout_seconds=0.08, retry_budget=0)

        async def sample() -> None:
            while True:
                seen.append(session.units["slow"].percent)
                await asyncio.sleep(0.003)

        sampler = asyncio.create_task(sample())
        try:
            await runner.run(session, rec)
        finally:
            sampler.cancel()

        in_band = [p for p in seen if p >= PERCENT_INSTALL_START]
        assert in_band == sorted(in_band)
        assert max(in_band) <= PERCENT_INSTALL_END


class TestRunnerRetries:

    @pytest.mark.asyncio
    async def test_retry_resets_percent_and_increments_once(self) -> None:
        ref: List = []
        sink = PercentSnapshotSink(ref)
        installer = FakeInstaller(poll_failures={"pg": 2})
        runner, registry = _runner(installer, FakeProber(), sink)
        rec = make_rec("pg")
        session = _registered(registry, [rec], retry_budget=2)
        ref.append(session)

        outcome = await runner.run(session, rec)

        assert outcome.success is True
        assert outcome.attempts == 3
        assert session.units["pg"].retry_count == 2
        assert sink.snapshots == [
            (0.0, UnitStatus.PENDING, 1),
            (0.0, UnitStatus.PENDING, 2),
        ]
        retries = sink.of_type(EventType.UNIT_RETRYING)
        assert [e.data["retry_count"] for e in retries] == [1, 2]
        assert retries[0].data["error"] == "npm ERR! code E404"

    @pytest.mark.asyncio
    async def test_budget_exhausted_returns_failure(self) -> None:
        installer = FakeInstaller(install_failures={"pg": 10})
        sink = InMemoryEventSink()
        runner, registry = _runner(installer, FakeProber(), sink)
        rec = make_rec("pg")
        session = _registered(registry, [rec], retry_budget=1)

        outcome = await runner.run(session, rec)

        assert outcome.success is False
        assert outcome.attempts == 2
        assert outcome.error == "Installer error: registry refused pg"
        assert installer.calls == ["pg", "pg"]
        assert session.units["pg"].retry_count == 1
        assert len(sink.of_type(EventType.UNIT_RETRYING)) == 1

    @pytest.mark.asyncio
    async def test_zero_budget_never_retries(self) -> None:
        installer = FakeInstaller(poll_failures={"pg": 1})
        runner, registry = _runner(installer, FakeProber())
        rec = make_rec("pg")
        session = _registered(registry, [rec], retry_budget=0)

        outcome = await runner.run(session, rec)

        assert outcome.success is False
        assert outcome.attempts == 1
        assert session.units["pg"].retry_count == 0

    @pytest.mark.asyncio
    async def test_retry_waits_fixed_delay(self) -> None:
        installer = FakeInstaller(poll_failures={"pg": 1}, delay=0.0)
        runner, registry = _runner(installer, FakeProber())
        rec = make_rec("pg")
        session = _registered(registry, [rec], retry_budget=1, retry_delay_seconds=0.05)

        loop = asyncio.get_running_loop()
        start = loop.time()
        outcome = await runner.run(session, rec)

        assert outcome.success is True
        assert loop.time() - start >= 0.05


class TestRunnerTimeoutsAndHealth:

    @pytest.mark.asyncio
    async def test_install_poll_timeout(self) -> None:
        installer = FakeInstaller(delay=0.005, hang=["pg"])
        runner, registry = _runner(installer, FakeProber())
        rec = make_rec("pg")
        session = _registered(registry, [rec], install_timeout_seconds=0.05, retry_budget=0)

        outcome = await runner.run(session, rec)

        assert outcome.success is False
        assert outcome.error == "install timed out after 0.05s"

    @pytest.mark.asyncio
    async def test_unhealthy_probe_fails_unit(self) -> None:
        prober = FakeProber({"pg": [HealthReport(status="disconnected")]})
        runner, registry = _runner(FakeInstaller(), prober)
        rec = make_rec("pg")
        session = _registered(registry, [rec], retry_budget=0)

        outcome = await runner.run(session, rec)

        assert outcome.success is False
        assert outcome.error == "Health check failed: Server not responding properly"
        assert session.units["pg"].health_verdict == HealthVerdict.UNHEALTHY

    @pytest.mark.asyncio
    async def test_probe_error_is_health_failure(self) -> None:
        prober = FakeProber({"pg": [ConnectionRefusedError("port 5432")]})
        runner, registry = _runner(FakeInstaller(), prober)
        rec = make_rec("pg")
        session = _registered(registry, [rec], retry_budget=0)

        outcome = await runner.run(session, rec)

        assert outcome.success is False
        assert outcome.error == "Health check failed: port 5432"

    @pytest.mark.asyncio
    async def test_probe_timeout_is_timeout_failure(self) -> None:
        prober = FakeProber(delay=1.0)
        runner, registry = _runner(FakeInstaller(), prober)
        rec = make_rec("pg")
        session = _registered(
            registry, [rec],
            retry_budget=0, health_probe_timeout_seconds=0.02, health_probe_retries=0,
        )

        outcome = await runner.run(session, rec)

        assert outcome.success is False
        assert outcome.error == "health_probe timed out after 0.02s"
        assert session.units["pg"].health_verdict == HealthVerdict.UNHEALTHY

    @pytest.mark.asyncio
    async def test_unhealthy_then_healthy_on_retry(self) -> None:
        prober = FakeProber({"pg": [HealthReport(status="error"), HealthReport(status="connected")]})
        runner, registry = _runner(FakeInstaller(), prober)
        rec = make_rec("pg")
        session = _registered(registry, [rec], retry_budget=1)

        outcome = await runner.run(session, rec)

        assert outcome.success is True
        assert session.units["pg"].retry_count == 1
        assert session.units["pg"].last_error.startswith("Health check failed")


# =============================================================================
# 4. Dependencies
# =============================================================================


class TestResolveDependencies:

    @pytest.mark.asyncio
    async def test_classifies_against_session(self) -> None:
        runner, registry = _runner(FakeInstaller(), FakeProber())
        app = make_rec("app", dependencies=["db", "cache", "vault"])
        session = _registered(registry, [make_rec("db"), make_rec("cache"), app])
        session.units["db"].status = UnitStatus.COMPLETED

        summary = await runner.resolve_dependencies(session, app)

        assert summary == "db=satisfied, cache=queued, vault=external"

    @pytest.mark.asyncio
    async def test_failed_dependency_is_reported_as_failed(self) -> None:
        runner, registry = _runner(FakeInstaller(), FakeProber())
        app = make_rec("app", dependencies=["db", "cache"])
        session = _registered(registry, [make_rec("db"), make_rec("cache"), app])
        session.units["db"].status = UnitStatus.FAILED
        session.units["cache"].status = UnitStatus.INSTALLING

        summary = await runner.resolve_dependencies(session, app)

        assert summary == "db=failed, cache=queued"

    @pytest.mark.asyncio
    async def test_dependencies_do_not_block_install(self) -> None:
        installer = FakeInstaller()
        runner, registry = _runner(installer, FakeProber())
        app = make_rec("app", dependencies=["db"])
        session = _registered(registry, [app, make_rec("db")])

        outcome = await runner.run(session, app)

        assert outcome.success is True
        assert installer.calls == ["app"]


# =============================================================================
# 5. Terminal transition
# =============================================================================


class TestMarkTerminal:

    def test_success(self) -> None:
        session = make_session([make_rec("pg")])
        progress = session.units["pg"]
        UnitInstallRunner.mark_terminal(
            progress, UnitOutcome(unit_id="pg", success=True, verdict=HealthVerdict.HEALTHY, elapsed_time=1.23456),
        )
        assert progress.status == UnitStatus.COMPLETED
        assert progress.percent == 100.0
        assert progress.elapsed_time == 1.235
        assert progress.finished_at is not None

    def test_failure_keeps_last_error(self) -> None:
        session = make_session([make_rec("pg")])
        progress = session.units["pg"]
        progress.percent = 30.0
        UnitInstallRunner.mark_terminal(progress, UnitOutcome(unit_id="pg", success=False, error="boom"))
        assert progress.status == UnitStatus.FAILED
        assert progress.last_error == "boom"
        assert progress.percent == 30.0
