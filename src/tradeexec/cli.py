from __future__ import annotations

import argparse
import importlib
import json
import logging
import sys
import time
from collections.abc import Iterable
from uuid import uuid4

import httpx

from tradeexec.adapters.exchange import ExchangeAdapter, ExchangeRegistry
from tradeexec.config import Settings
from tradeexec.logging_utils import setup_logging
from tradeexec.security.redaction import redact_data
from tradeexec.services.decision_auth import compute_decision_signature

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tradeexec",
        epilog=(
            "Configuration comes from environment variables (or .env): "
            "DECISION_SHARED_SECRET, STATE_DB_PATH, CREDENTIALS_FILE, NOTIFY_WEBHOOK_URL, ..."
        ),
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Optional dotenv file to load settings from",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API and reconciliation loop")
    serve_parser.add_argument("--host", default=None, help="Bind host (default HTTP_HOST)")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port (default HTTP_PORT)")
    serve_parser.add_argument(
        "--adapter-factory",
        default=None,
        help="module:callable returning the exchange adapters to register",
    )

    reconcile_parser = subparsers.add_parser(
        "reconcile-once", help="Run one reconciliation pass and print the result"
    )
    reconcile_parser.add_argument(
        "--adapter-factory",
        default=None,
        help="module:callable returning the exchange adapters to register",
    )

    sign_parser = subparsers.add_parser(
        "sign-decision", help="Print signed execute-decision headers for a decision id"
    )
    sign_parser.add_argument("decision_id")
    sign_parser.add_argument("--timestamp", default=None, help="Unix seconds (default: now)")
    sign_parser.add_argument("--nonce", default=None, help="Nonce (default: random)")

    summary_parser = subparsers.add_parser(
        "health-summary", help="Fetch credential health from a running server"
    )
    summary_parser.add_argument("--url", default=None, help="Server base URL")
    summary_parser.add_argument("--timeout", type=float, default=5.0)

    args = parser.parse_args(argv)
    try:
        settings = _load_settings(args.env_file)
    except ValueError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return 2
    setup_logging(settings.log_level)

    try:
        if args.command == "serve":
            return run_serve(settings, host=args.host, port=args.port, factory=args.adapter_factory)
        if args.command == "reconcile-once":
            return run_reconcile_once(settings, factory=args.adapter_factory)
        if args.command == "sign-decision":
            return run_sign_decision(
                settings, args.decision_id, timestamp=args.timestamp, nonce=args.nonce
            )
        if args.command == "health-summary":
            return run_health_summary(settings, url=args.url, timeout=args.timeout)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    parser.error(f"unknown command {args.command}")
    return 2


def _load_settings(env_file: str | None) -> Settings:
    if env_file in (None, ""):
        return Settings()
    return Settings(_env_file=env_file)


def load_adapters(factory_path: str | None) -> ExchangeRegistry:
    if not factory_path:
        return ExchangeRegistry()
    module_name, _, attr = factory_path.partition(":")
    if not module_name or not attr:
        raise ValueError("adapter factory must look like 'package.module:callable'")
    factory = getattr(importlib.import_module(module_name), attr)
    adapters: Iterable[ExchangeAdapter] = factory()
    registry = ExchangeRegistry(adapters)
    logger.info("adapters_loaded", extra={"extra": {"venues": registry.venues()}})
    return registry


def run_serve(
    settings: Settings,
    *,
    host: str | None,
    port: int | None,
    factory: str | None,
) -> int:
    import uvicorn

    from tradeexec.api.app import create_app
    from tradeexec.runtime.container import build_container

    container = build_container(settings, exchanges=load_adapters(factory))
    app = create_app(container)
    uvicorn.run(
        app,
        host=host or settings.http_host,
        port=port or settings.http_port,
        log_config=None,
    )
    return 0


def run_reconcile_once(settings: Settings, *, factory: str | None) -> int:
    from tradeexec.runtime.container import build_container

    container = build_container(settings, exchanges=load_adapters(factory))
    try:
        result = container.reconciliation.run_once()
    finally:
        container.close()
    print(json.dumps(result.as_dict(), sort_keys=True, default=str))
    return 1 if result.errors else 0


def run_sign_decision(
    settings: Settings,
    decision_id: str,
    *,
    timestamp: str | None,
    nonce: str | None,
) -> int:
    ts = timestamp or str(int(time.time()))
    nonce_value = nonce or uuid4().hex
    signature = compute_decision_signature(settings.decision_secret(), decision_id, ts, nonce_value)
    payload = {
        "body": {"decision_id": decision_id},
        "headers": {
            "x-decision-signature": signature,
            "x-decision-timestamp": ts,
            "x-decision-nonce": nonce_value,
        },
    }
    print(json.dumps(payload, sort_keys=True))
    return 0


def run_health_summary(settings: Settings, *, url: str | None, timeout: float) -> int:
    base_url = (url or f"http://127.0.0.1:{settings.http_port}").rstrip("/")
    try:
        response = httpx.get(f"{base_url}/admin/credential-health", timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        print(f"health summary unavailable: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(redact_data(response.json()), sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
