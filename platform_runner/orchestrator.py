"""Run orchestrator scheduling suites across platforms."""

import ast
import asyncio
import contextlib
import logging
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from platform_runner.aggregator import RunAggregator
from platform_runner.config import RunnerConfig
from platform_runner.errors import ConfigError, UsageError
from platform_runner.models.platform import SuitePlatform
from platform_runner.models.result import RunSummary, SuiteState
from platform_runner.models.runtime import Runtime, RuntimeRegistry
from platform_runner.platforms.base import PlatformAdapter
from platform_runner.platforms.loading import load_platform_manifest
from platform_runner.remote.listener import SUITE_SELECTOR_NAME
from platform_runner.selector import ALL, PlatformSelector, known_variables
from platform_runner.suite import SuiteController, SuiteOptions, format_seconds

log = logging.getLogger(__name__)

type AdapterOpener = Callable[[Runtime], AbstractAsyncContextManager[PlatformAdapter]]


def resolve_platforms(
    config: RunnerConfig, registry: RuntimeRegistry
) -> Sequence[SuitePlatform]:
    """Turn the configured platform identifiers into suite platforms.

    Raises:
        UsageError: If a platform is unknown or does not support the compiler

    """
    platforms = []
    for identifier in config.platforms:
        try:
            runtime = registry.from_identifier(identifier)
            platforms.append(SuitePlatform.create(runtime, config.compiler))
        except ValueError as e:
            raise UsageError(str(e)) from e
    return platforms


def open_platform(
    runtime: Runtime, config: RunnerConfig
) -> AbstractAsyncContextManager[PlatformAdapter]:
    """Open the adapter registered for `runtime`'s platform.

    Custom platforms use the adapter of the platform they extend, with
    settings configured for either of them.

    Raises:
        PlatformNotFoundError: If no adapter is registered for the platform
        ConfigError: If the platform's settings are invalid

    """
    manifest = load_platform_manifest(runtime.root.identifier)
    parent = runtime.parent.identifier if runtime.parent is not None else None
    try:
        settings = manifest.config_cls.model_validate(
            config.settings_for(runtime.identifier, parent)
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid settings for {runtime.name}: {e}") from e
    return manifest.adapter_factory(runtime, settings)


def suite_selector(path: Path) -> str | None:
    """Read a suite's module-level `TEST_ON` without running it."""
    try:
        tree = ast.parse(path.read_text(), filename=str(path))
    except (OSError, SyntaxError, ValueError):
        return None
    for node in tree.body:
        if not isinstance(node, ast.Assign):
            continue
        for target in node.targets:
            if isinstance(target, ast.Name) and target.id == SUITE_SELECTOR_NAME:
                if isinstance(node.value, ast.Constant) and isinstance(
                    node.value.value, str
                ):
                    return node.value.value
    return None


@dataclass(frozen=True, kw_only=True)
class SuiteJob:
    """One suite scheduled on one platform."""

    suite_id: int
    path: Path
    platform: SuitePlatform


@dataclass(kw_only=True)
class RunOrchestrator:
    """Runs every suite on every platform with bounded concurrency.

    Adapters are opened on first use and closed when the run ends, however
    it ends. A suite that cannot be started on its platform is recorded as a
    load failure and does not affect the others.
    """

    config: RunnerConfig
    aggregator: RunAggregator
    registry: RuntimeRegistry = field(default_factory=RuntimeRegistry)
    opener: AdapterOpener | None = None
    _adapters: dict[str, asyncio.Future[PlatformAdapter]] = field(
        default_factory=dict, repr=False
    )

    async def run(self, paths: Sequence[Path]) -> RunSummary:
        """Run the suites at `paths` on every configured platform.

        Returns:
            Summary of the finished run

        Raises:
            UsageError: If the configured platforms are invalid

        """
        platforms = resolve_platforms(self.config, self.registry)
        jobs = self._schedule(paths, platforms)
        if not jobs:
            log.info("No suites to run")
            return self.aggregator.finish()

        log.info(
            "Running %d suite(s) on %s",
            len(jobs),
            ", ".join(p.runtime.name for p in platforms),
        )
        semaphore = asyncio.Semaphore(self.config.concurrency)
        async with contextlib.AsyncExitStack() as stack:
            tasks = [
                asyncio.create_task(self._run_suite(job, semaphore, stack))
                for job in jobs
            ]
            try:
                async with asyncio.timeout(self.config.global_timeout):
                    results = await asyncio.gather(*tasks, return_exceptions=True)
            except TimeoutError:
                assert self.config.global_timeout is not None
                message = (
                    "Run timed out after "
                    f"{format_seconds(self.config.global_timeout)} seconds."
                )
                log.error("%s", message)
                await asyncio.gather(*tasks, return_exceptions=True)
                results = [message] * len(jobs)
            self._process_results(jobs, results)
            log.info("Closing platforms")

        log.info("Run completed")
        return self.aggregator.finish()

    def _schedule(
        self, paths: Sequence[Path], platforms: Sequence[SuitePlatform]
    ) -> list[SuiteJob]:
        jobs = []
        variables = known_variables(self.registry)
        for path in paths:
            selector_source = suite_selector(path)
            selector = ALL
            invalid = None
            if selector_source is not None:
                try:
                    selector = PlatformSelector.parse(selector_source)
                    selector.validate(variables)
                except ValueError as e:
                    invalid = f"Invalid {SUITE_SELECTOR_NAME} in {path}: {e}"
                    log.error("%s", invalid)
            for platform in platforms:
                if invalid is not None:
                    suite_id = self.aggregator.add_suite(
                        str(path), platform.runtime.identifier
                    )
                    self.aggregator.suite_load_failed(suite_id, invalid)
                    continue
                if not selector.evaluate(platform):
                    log.info("Skipping %s on %s", path, platform.runtime.name)
                    continue
                suite_id = self.aggregator.add_suite(
                    str(path), platform.runtime.identifier
                )
                jobs.append(SuiteJob(suite_id=suite_id, path=path, platform=platform))
        return jobs

    def _process_results(
        self,
        jobs: Sequence[SuiteJob],
        results: Sequence[object],
    ) -> None:
        """Record suites that ended without completing."""
        for job, result in zip(jobs, results, strict=True):
            if self.aggregator.suite(job.suite_id).state is SuiteState.DONE:
                continue
            if isinstance(result, BaseException):
                log.error("Suite %s failed: %s", job.path, result, exc_info=result)
                message = str(result) or type(result).__name__
            else:
                message = str(result) if result else "Suite did not complete"
            self.aggregator.suite_failed(job.suite_id, message)

    async def _run_suite(
        self,
        job: SuiteJob,
        semaphore: asyncio.Semaphore,
        stack: contextlib.AsyncExitStack,
    ) -> None:
        async with semaphore:
            name = job.platform.runtime.name
            try:
                adapter = await self._adapter_for(job.platform.runtime, stack)
                async with asyncio.timeout(self.config.load_timeout):
                    handle = await adapter.start(job.path, job.platform)
            except TimeoutError:
                message = (
                    f"Timed out starting {name} after "
                    f"{format_seconds(self.config.load_timeout)} seconds."
                )
                log.error("%s", message)
                self.aggregator.suite_load_failed(job.suite_id, message)
                return
            except Exception as e:
                log.error("Failed to start %s for %s: %s", name, job.path, e)
                self.aggregator.suite_load_failed(job.suite_id, str(e))
                return

            controller = SuiteController(
                suite_id=job.suite_id,
                path=job.path,
                platform=job.platform,
                handle=handle,
                aggregator=self.aggregator,
                options=SuiteOptions(
                    timeout=self.config.timeout,
                    load_timeout=self.config.load_timeout,
                    retry=self.config.retry,
                    pause_after_load=self.config.debug,
                    known_variables=known_variables(self.registry),
                ),
            )
            try:
                await controller.run()
            finally:
                await handle.close()

    async def _adapter_for(
        self, runtime: Runtime, stack: contextlib.AsyncExitStack
    ) -> PlatformAdapter:
        """Open the adapter for `runtime` once and share it between suites."""
        future = self._adapters.get(runtime.identifier)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._adapters[runtime.identifier] = future
            try:
                opener = self.opener or (lambda r: open_platform(r, self.config))
                adapter = await stack.enter_async_context(opener(runtime))
            except BaseException as e:
                future.set_exception(e)
                # Retrieved by every suite waiting on this platform.
                future.exception()
                raise
            future.set_result(adapter)
        return await asyncio.shield(future)
