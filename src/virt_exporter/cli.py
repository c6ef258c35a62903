"""CLI interface for virt_exporter."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
import time
from typing import Any

from . import __version__
from .config import ConfigError, ExporterConfig, load_config, parse_listen_address

logger = logging.getLogger(__name__)


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Config values given on the command line; these win over file and env."""
    data: dict[str, Any] = {}
    if args.libvirt_uri:
        data.setdefault("libvirt", {})["uri"] = args.libvirt_uri
    if args.listen_address:
        data.setdefault("web", {})["listen_address"] = args.listen_address
    if args.telemetry_path:
        data.setdefault("web", {})["telemetry_path"] = args.telemetry_path
    if args.log_level:
        data.setdefault("logging", {})["level"] = args.log_level
    return data


def _load(args: argparse.Namespace) -> ExporterConfig:
    try:
        cfg = load_config(args.config, overrides=_overrides(args))
    except ConfigError as exc:
        print(f"virt-exporter: {exc}", file=sys.stderr)
        sys.exit(2)
    logging.getLogger().setLevel(cfg.logging.level.upper())
    return cfg


def _connect(cfg: ExporterConfig) -> Any:
    from .connection import ConnectionGuardian
    from .errors import ConnectionUnavailable

    guardian = ConnectionGuardian(cfg.libvirt)
    try:
        guardian.connect()
    except ConnectionUnavailable as exc:
        logger.error("%s", exc)
        sys.exit(1)
    return guardian


def _cmd_serve(args: argparse.Namespace) -> None:
    """Serve metrics over HTTP until interrupted."""
    cfg = _load(args)
    host, port = parse_listen_address(cfg.web.listen_address)

    from .collector.orchestrator import CollectionOrchestrator
    from .exporter.prometheus import make_app, serve

    guardian = _connect(cfg)
    orchestrator = CollectionOrchestrator(cfg, guardian)

    exporters = []
    if cfg.mode == "online":
        from .exporter.otel import OtelExporter
        otel_exp = OtelExporter(cfg.otel)
        exporters.append(otel_exp)
        orchestrator.add_sink(otel_exp)

    server = serve(make_app(orchestrator, cfg.web.telemetry_path), host, port)
    server_thread = threading.Thread(target=server.serve_forever, name="virt-exporter-http", daemon=True)

    stop = False

    def _handle_signal(_sig: int, _frame: object) -> None:
        nonlocal stop
        stop = True

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    server_thread.start()
    if exporters:
        orchestrator.start()
    logger.info(
        "virt-exporter %s serving %s on %s (mode=%s)",
        __version__, cfg.web.telemetry_path, cfg.web.listen_address, cfg.mode,
    )
    try:
        while not stop:
            time.sleep(0.5)
    finally:
        server.shutdown()
        server.server_close()
        orchestrator.stop()
        for exp in exporters:
            exp.shutdown()
        guardian.close()
    logger.info("Shut down")


def _cmd_scrape(args: argparse.Namespace) -> None:
    """Run a single scrape and print it in the Prometheus text format."""
    cfg = _load(args)

    from prometheus_client import generate_latest

    from .collector.orchestrator import CollectionOrchestrator
    from .exporter.prometheus import build_registry

    guardian = _connect(cfg)
    try:
        orchestrator = CollectionOrchestrator(cfg, guardian)
        sys.stdout.write(generate_latest(build_registry(orchestrator)).decode("utf-8"))
    finally:
        guardian.close()


def _cmd_describe(args: argparse.Namespace) -> None:
    """Print every metric the current configuration can emit."""
    cfg = _load(args)

    from .collector.orchestrator import CollectionOrchestrator
    from .connection import ConnectionGuardian

    orchestrator = CollectionOrchestrator(cfg, ConnectionGuardian(cfg.libvirt))
    for desc in orchestrator.describe():
        labels = ",".join(desc.labels)
        print(f"{desc.kind.value:<8} {desc.name:<56} {{{labels}}}  {desc.description}")


def _cmd_version(_args: argparse.Namespace) -> None:
    print(f"virt-exporter {__version__}")


def main(argv: list[str] | None = None) -> None:
    """Entry point for the virt-exporter CLI."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    parser = argparse.ArgumentParser(
        prog="virt-exporter",
        description="Prometheus exporter for libvirt domains and hosts",
    )
    parser.add_argument("--config", "-c", default=None, help="Path to the YAML configuration file")
    parser.add_argument("--libvirt-uri", default=None, help="libvirt connection URI (default qemu:///system)")
    parser.add_argument("--listen-address", default=None, help="Address to listen on (default :9177)")
    parser.add_argument("--telemetry-path", default=None, help="Path serving metrics (default /metrics)")
    parser.add_argument("--log-level", default=None, help="Logging level (debug, info, warning, error)")
    sub = parser.add_subparsers(dest="command")

    serve_p = sub.add_parser("serve", help="Serve metrics over HTTP (default)")
    serve_p.set_defaults(func=_cmd_serve)

    scrape_p = sub.add_parser("scrape", help="Scrape once and print the result")
    scrape_p.set_defaults(func=_cmd_scrape)

    describe_p = sub.add_parser("describe", help="List the metrics that can be emitted")
    describe_p.set_defaults(func=_cmd_describe)

    ver_p = sub.add_parser("version", help="Print version")
    ver_p.set_defaults(func=_cmd_version)

    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        args.func = _cmd_serve

    args.func(args)


if __name__ == "__main__":
    main()
