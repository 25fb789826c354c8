from __future__ import annotations

"""
Process entry point: `distsched --config scheduler.json`.

Configuration comes from the optional JSON file plus SCHEDULER_* / KAFKA_* env vars;
logging from DISTSCHED_LOG_*. uvicorn handles SIGINT/SIGTERM and runs the app
lifespan, which stops the coordinator.
"""

import argparse

import uvicorn

from .core.config import SchedulerConfig
from .core.log import configure_from_env, get_logger
from .http.app import create_app


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="distsched", description="Distributed job scheduler instance")
    p.add_argument("--config", "-c", default=None, help="path to a JSON config file")
    p.add_argument("--host", default=None, help="override the HTTP bind host")
    p.add_argument("--port", type=int, default=None, help="override the HTTP port")
    p.add_argument("--instance-id", default=None, help="override the instance id")
    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_from_env(default_stdout=True)
    log = get_logger("server")

    overrides = {
        k: v
        for k, v in (("http_host", args.host), ("http_port", args.port), ("instance_id", args.instance_id))
        if v is not None
    }
    cfg = SchedulerConfig.load(args.config, overrides=overrides)
    log.info(
        "server.boot",
        event="server.boot",
        instance_id=cfg.instance_id,
        host=cfg.http_host,
        port=cfg.http_port,
        kafka=cfg.kafka_bootstrap,
    )
    uvicorn.run(create_app(cfg), host=cfg.http_host, port=cfg.http_port, log_config=None)


if __name__ == "__main__":
    main()
