import asyncio
import json
import signal
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from prometheus_client import start_http_server

from .broker import BrokerClient
from .coordinator.dlq import DeadLetterQueue
from .errors import ConnError, EventValidationError
from .models import Action
from .pipeline import PipelineCoordinator
from .settings import get_settings

app = typer.Typer(help="tweet-pipeline CLI (run the coordinator, submit events, inspect the DLQ)")


def redis_opt() -> Optional[str]:
    return typer.Option(None, "--redis-url", envvar="PIPELINE_REDIS_URL", help="Broker URL")


async def _connect(redis_url: Optional[str]) -> BrokerClient:
    settings = get_settings()
    cfg = settings.broker_config()
    if redis_url:
        cfg = replace(cfg, url=redis_url)
    return await BrokerClient(cfg).connect()


@app.command()
def run(
    redis_url: Optional[str] = redis_opt(),
    metrics_port: Optional[int] = typer.Option(
        None, "--metrics-port", help="Expose Prometheus metrics on this port"
    ),
):
    """Run the coordinator: publish buffered events and log dispatched actions until interrupted."""
    settings = get_settings()
    port = metrics_port or settings.metrics_port
    if port:
        start_http_server(port)
        logger.info(f"Prometheus metrics available at http://localhost:{port}/metrics")

    async def _main() -> None:
        broker = await _connect(redis_url)
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass  # Windows

        async with PipelineCoordinator(
            broker, settings=settings, dead_letters=DeadLetterQueue(settings.dlq_path)
        ) as coord:

            @coord.on_action
            def _log_action(action: Action) -> None:
                logger.success(
                    f"ACTION {action.action} params={json.dumps(action.params)} "
                    f"event={action.event_id}"
                )

            logger.info(f"Listening on {settings.action_queue}; Ctrl+C to stop")
            await stop.wait()

    try:
        asyncio.run(_main())
    except ConnError as e:
        logger.error(f"Broker unavailable: {e}")
        sys.exit(1)


@app.command()
def submit(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="NDJSON file of events"),
    redis_url: Optional[str] = redis_opt(),
):
    """Submit every event in an NDJSON file, then drain and report."""
    settings = get_settings()

    async def _main() -> dict:
        broker = await _connect(redis_url)
        accepted, rejected = 0, 0
        coord = PipelineCoordinator(
            broker, settings=settings, dead_letters=DeadLetterQueue(settings.dlq_path)
        )
        await coord.start()
        try:
            with open(path, "r", encoding="utf-8") as f:
                for lineno, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        await coord.submit(json.loads(line))
                        accepted += 1
                    except (EventValidationError, ValueError) as e:
                        rejected += 1
                        logger.warning(f"line {lineno}: {e}")
        finally:
            await coord.stop(drain=True)
        h = coord.health()
        return {
            "accepted": accepted,
            "rejected": rejected,
            "delivered": h.delivered,
            "dead_lettered": h.dead_lettered,
        }

    try:
        summary = asyncio.run(_main())
    except ConnError as e:
        logger.error(f"Broker unavailable: {e}")
        sys.exit(1)
    typer.echo(json.dumps(summary, indent=2))
    if summary["dead_lettered"]:
        logger.warning(f"{summary['dead_lettered']} event(s) dead-lettered to {settings.dlq_path}")
    else:
        logger.success("All accepted events delivered")


@app.command()
def dlq(
    limit: int = typer.Option(20, "--limit", help="Number of records to show"),
    oldest: bool = typer.Option(False, "--oldest", help="Show the oldest records instead"),
    path: Optional[Path] = typer.Option(None, "--path", help="DLQ file (default from settings)"),
):
    """Print dead-letter records as NDJSON."""
    target = path or Path(get_settings().dlq_path)
    if not target.exists():
        logger.info(f"No dead-letter file at {target}")
        return
    queue = DeadLetterQueue(target, mkdirs=False)
    records = asyncio.run(queue.replay(limit, latest=not oldest))
    for r in records:
        typer.echo(r.to_json())


if __name__ == "__main__":
    app()
