from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Optional, Tuple

from autofetch.config import YamlConfigLoader
from autofetch.config.models import AppConfig, ConfigLoadRequest
from autofetch.engine import AutoFetchEngine
from autofetch.host.artifacts import DirectoryArtifactStore
from autofetch.host.json_records import JsonRecordStore
from autofetch.host.task_runner import AsyncioTaskRunner
from autofetch.logging import init_logging

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autofetch", description="Monitor record file URLs and fetch changed files")
    parser.add_argument(
        "--config",
        default="data/config/config.yaml",
        help="Path to config.yaml (default: data/config/config.yaml)",
    )
    parser.add_argument("--log-level", default=None, help="Override the configured log level.")
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    subparsers.add_parser("scan", help="Run one scan and wait for the queued URL checks")

    check_parser = subparsers.add_parser("check", help="Check a single monitored URL now")
    check_parser.add_argument("url")

    run_parser = subparsers.add_parser("run", help="Scan periodically until interrupted")
    run_parser.add_argument(
        "--run-seconds",
        type=float,
        default=None,
        help="Run for N seconds then exit (useful for smoke testing).",
    )

    status_parser = subparsers.add_parser("status", help="Show monitored URLs, errors and fetches")
    status_parser.add_argument("--limit", type=int, default=10, help="Number of recent checks to show.")

    delete_parser = subparsers.add_parser("delete-artifact", help="Delete a fetched artifact")
    delete_parser.add_argument("artifact_id", type=int)

    return parser


async def _load_config(args: argparse.Namespace) -> AppConfig:
    loader = YamlConfigLoader()
    request = ConfigLoadRequest(yaml_path=args.config)
    return await loader.load(request)


def _build_engine(config: AppConfig) -> Tuple[AutoFetchEngine, AsyncioTaskRunner, DirectoryArtifactStore]:
    runner = AsyncioTaskRunner(concurrency=config.autofetch.check_concurrency)
    artifacts = DirectoryArtifactStore(config.storage.artifacts_dir)
    engine = AutoFetchEngine(
        config=config,
        record_store=JsonRecordStore(config.storage.records_path),
        artifact_store=artifacts,
        task_runner=runner,
    )
    return engine, runner, artifacts


async def _scan(engine: AutoFetchEngine, runner: AsyncioTaskRunner) -> None:
    queued = await engine.run_scan()
    logger.info("Waiting for URL checks. queued=%d", queued)
    await runner.wait_idle()


async def _check(engine: AutoFetchEngine, url: str) -> None:
    outcome = await engine.check_url(url)
    if outcome is None:
        logger.info("URL was not checked. url=%s", url)
        return
    logger.info("URL checked. url=%s status=%s", url, outcome.status)


async def _run(engine: AutoFetchEngine, runner: AsyncioTaskRunner, run_seconds: Optional[float]) -> None:
    engine.start_periodic()
    try:
        if run_seconds is not None:
            await asyncio.sleep(run_seconds)
        else:
            await asyncio.Event().wait()
    finally:
        await engine.stop_periodic()
        await runner.shutdown()


async def _status(engine: AutoFetchEngine, limit: int) -> None:
    print(f"Monitored URLs: {await engine.url_count()}")

    errors = await engine.error_list()
    print(f"\nErrors ({len(errors)}):")
    for row in errors:
        print(f"  {row.error_date}  record={row.record_id}  {row.url}  {row.message}")

    fetches = await engine.fetch_list()
    print(f"\nFetched files ({len(fetches)}):")
    for entry in fetches:
        print(f"  {entry.fetch_date}  artifact={entry.artifact_id}  {entry.url}")

    recent = await engine.recently_checked(limit)
    print(f"\nRecently checked ({len(recent)}):")
    for row in recent:
        print(f"  {row.last_check}  record={row.record_id}  {row.url}")


async def _delete_artifact(engine: AutoFetchEngine, artifacts: DirectoryArtifactStore, artifact_id: int) -> None:
    if not await artifacts.delete(artifact_id):
        logger.warning("Artifact not found. artifact_id=%s", artifact_id)
        return
    await engine.on_artifact_deleted(artifact_id)


async def _main_async() -> None:
    parser = _build_parser()
    args = parser.parse_args()

    config = await _load_config(args)
    init_logging(config.logging, level_override=args.log_level)
    engine, runner, artifacts = _build_engine(config)
    if not engine.enabled:
        logger.warning("URL fetching is disabled in configuration.")

    if args.command == "scan":
        await _scan(engine, runner)
    elif args.command == "check":
        await _check(engine, args.url)
    elif args.command == "run":
        logger.info("Starting periodic scanning. interval_seconds=%s", config.autofetch.scan_interval_seconds)
        await _run(engine, runner, args.run_seconds)
    elif args.command == "status":
        await _status(engine, args.limit)
    elif args.command == "delete-artifact":
        await _delete_artifact(engine, artifacts, args.artifact_id)


def main() -> None:
    try:
        asyncio.run(_main_async())
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")


if __name__ == "__main__":
    main()
