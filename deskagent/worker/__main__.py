"""Worker process entry point: ``python -m deskagent.worker``.

Speaks the frame protocol on stdin/stdout. Logging must go to stderr
(stdout is the protocol transport).
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from deskagent.engine.agent_definitions import load_agent_catalog
from deskagent.engine.capabilities import load_capabilities
from deskagent.engine.config import SessionConfig
from deskagent.engine.yaml_config import load_yaml_config
from deskagent.worker.claude_responder import ClaudeResponder
from deskagent.worker.runtime import WorkerRuntime, open_stdin_reader

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="deskagent-worker",
        description="deskagent worker process (stdio frame protocol)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="YAML config file. Also reads DESK_CONFIG_FILE env var.",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    return parser.parse_args(argv)


async def serve(config: SessionConfig) -> None:
    registry = load_capabilities(config)
    agents = load_agent_catalog(config.agents_dir)
    responder = ClaudeResponder(
        registry,
        agents,
        model_id=config.model_id,
        max_turns=config.max_turns,
        cwd=str(config.allowed_root_dir),
    )
    runtime = WorkerRuntime(responder, registry)
    await runtime.run(await open_stdin_reader())


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    config_file = args.config or os.getenv("DESK_CONFIG_FILE")
    config = load_yaml_config(config_file) if config_file else SessionConfig.from_env()

    level = logging.DEBUG if args.verbose else getattr(
        logging, config.log_level.upper(), logging.INFO,
    )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    logger.info("Worker starting (pid=%d, config=%s)", os.getpid(), config_file or "<env>")

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
