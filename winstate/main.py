from __future__ import annotations

import argparse
import json
import logging
import socket
import threading

from winstate.config import load_config
from winstate.engine import MetricsEngine
from winstate.errors import BackendUnavailable
from winstate.logging_utils import configure_logging, resolve_log_level
from winstate.models import MetricSample
from winstate.mqtt_client import MqttPublisher
from winstate.schema import validate_payload


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="WinState hardware metrics sampler")
    parser.add_argument(
        "--config",
        default="config/example.cfg",
        help="Path to CFG configuration file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable debug logging (-v) or trace logging (-vv)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log samples without publishing to MQTT",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Take a single sample, report it, then exit",
    )
    parser.add_argument(
        "--dump-json",
        help="Write the latest sample as JSON to a file (overwritten every tick)",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop sampling after this many seconds (default: run until interrupted)",
    )
    return parser


def describe(sample: MetricSample) -> str:
    power = f"{sample.cpu_power_watts:.1f} W" if sample.has_cpu_power else "n/a"
    return (
        f"CPU {sample.cpu_usage_pct:.1f}% GPU {sample.gpu_usage_pct:.1f}% "
        f"RAM {sample.ram_usage_pct:.1f}% Disk {sample.disk_usage_pct:.1f}% "
        f"Up {sample.net_upload_rate:.1f} {sample.net_upload_unit} "
        f"Down {sample.net_download_rate:.1f} {sample.net_download_unit} "
        f"Power {power}"
    )


class SampleReporter:
    """Engine listener that validates, dumps and forwards each new sample."""

    def __init__(
        self,
        engine: MetricsEngine,
        publisher: MqttPublisher | None = None,
        dump_json: str | None = None,
        pretty: bool = False,
    ) -> None:
        self.engine = engine
        self.publisher = publisher
        self.dump_json = dump_json
        self.pretty = pretty
        self.reported = 0
        self.logger = logging.getLogger("winstate")

    def __call__(self) -> None:
        self.report(self.engine.latest())

    def report(self, sample: MetricSample) -> None:
        payload = sample.to_dict()
        schema_errors = validate_payload(payload)
        if schema_errors:
            self.logger.warning("Schema validation failed with %s errors.", len(schema_errors))
            self.logger.debug("Schema errors: %s", schema_errors)
        payload_json = json.dumps(payload, indent=2) if self.pretty else json.dumps(payload)
        if self.dump_json:
            with open(self.dump_json, "w", encoding="utf-8") as handle:
                handle.write(payload_json)
        self.logger.info("%s", describe(sample))
        if self.publisher is not None:
            self.publisher.publish(payload_json)
        self.reported += 1


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = resolve_log_level(args.verbose, args.log_level)
    configure_logging(level)
    logger = logging.getLogger("winstate")
    config = load_config(args.config)

    engine = MetricsEngine.from_config(config.engine, config.network)
    publisher = None
    if config.mqtt.enabled and not args.dry_run:
        publisher = MqttPublisher(config.mqtt)
        publisher.connect()
        publisher.publish_discovery(socket.gethostname())
    elif args.dry_run:
        logger.info("Dry run enabled; skipping MQTT publish.")

    reporter = SampleReporter(
        engine,
        publisher=publisher,
        dump_json=args.dump_json or config.publish.dump_json,
        pretty=level <= logging.DEBUG,
    )

    try:
        try:
            engine.open()
        except BackendUnavailable as exc:
            logger.error("Cannot start sampling: %s", exc)
            return 1

        if args.once:
            reporter.report(engine.sample_now())
            logger.info("Single-run mode enabled; exiting after one sample.")
            return 0

        engine.subscribe(reporter)
        done = threading.Event()
        engine.start()
        logger.info("WinState started. Sampling every %s seconds.", config.engine.interval_s)
        try:
            done.wait(args.duration)
        except KeyboardInterrupt:
            logger.info("Interrupted.")
    finally:
        engine.close()
        if publisher is not None:
            publisher.disconnect()
        logger.info("WinState stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
