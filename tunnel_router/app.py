#!/usr/bin/env python3
"""Entry point: provision, configure, supervise and front the backend.

Exit codes: 0 on graceful shutdown, 1 when no usable backend artifact (or
self-signed certificate) could be installed, 2 on invalid configuration.
"""

import argparse
import logging
import os
import signal
import ssl
import sys
import threading
from typing import List, Optional, Tuple

from . import __version__
from .backend_config import write_backend_config
from .certs import ensure_self_signed
from .config import Settings
from .credentials import CredentialStore
from .errors import ProvisionError
from .lock import InstanceLock
from .provision import ArtifactProvisioner, candidates_for_platform
from .routes import parse_routes
from .share import detect_public_host, publish
from .supervisor import BackoffPolicy, OutputSink, ProcessSupervisor
from .tunnel import TunnelRouter, build_ssl_context, make_forwarder

LOGGER = logging.getLogger("tunnel_router")

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def configure_logging(settings: Settings) -> None:
    settings.logs_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)
    if not LOGGER.handlers:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        LOGGER.addHandler(stream_handler)
        file_handler = logging.FileHandler(settings.logs_dir / "router.log", encoding="utf-8")
        file_handler.setFormatter(formatter)
        LOGGER.addHandler(file_handler)
    LOGGER.setLevel(getattr(logging, settings.log_level, logging.INFO))
    LOGGER.propagate = False


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="WebSocket tunnel front-end for a supervised proxy backend")
    ap.add_argument("--env-file", default=".env", help="Optional .env file read before the environment")
    ap.add_argument("--no-share", action="store_true", help="Skip public address lookup and node.txt")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    os.umask(0o077)
    try:
        settings = Settings.from_env(env_file=args.env_file)
    except ValueError as exc:
        print(f"[fatal] invalid configuration: {exc}", file=sys.stderr)
        return 2
    settings.work_dir.mkdir(parents=True, exist_ok=True)
    configure_logging(settings)
    LOGGER.info("[init] work_dir=%s port=%s", settings.work_dir, settings.listen_port)

    lock = InstanceLock(settings.lock_path, poll_interval=settings.lock_poll_interval)
    lock.acquire()
    try:
        return _serve(settings, args)
    finally:
        lock.release()


def _tls_setup(settings: Settings) -> Tuple[Optional[ssl.SSLContext], str]:
    """Listener TLS context and the certificate pin to publish (empty unless self-signed)."""
    if settings.tls_self_signed:
        cert = ensure_self_signed(settings.self_signed_cert_path, settings.self_signed_key_path,
                                  settings.sni_host)
        return build_ssl_context(str(cert.cert_path), str(cert.key_path)), cert.fingerprint
    if settings.tls_cert:
        return build_ssl_context(settings.tls_cert, settings.tls_key), ""
    return None, ""


def _serve(settings: Settings, args: argparse.Namespace) -> int:
    creds = CredentialStore(settings.state_path).load(settings.client_id, settings.node_name)
    try:
        routes = parse_routes(settings.routes, creds.client_id)
    except ValueError as exc:
        LOGGER.error("[fatal] invalid ROUTES: %s", exc)
        return 2

    provisioner = ArtifactProvisioner(settings.work_dir)
    candidates = candidates_for_platform(settings.bin_dir, settings.artifact_base_url, settings.artifact_url)
    try:
        executable = provisioner.ensure_artifact(candidates)
    except ProvisionError as exc:
        LOGGER.error("[fatal] %s", exc)
        return 1

    write_backend_config(settings.backend_config_path, routes)
    LOGGER.info("[config] wrote %s (%d inbound(s))", settings.backend_config_path, len(routes))

    try:
        ssl_context, pin = _tls_setup(settings)
    except ProvisionError as exc:
        LOGGER.error("[fatal] %s", exc)
        return 1
    except OSError as exc:
        LOGGER.error("[fatal] invalid TLS_CERT/TLS_KEY: %s", exc)
        return 2

    if not args.no_share:
        host = detect_public_host(settings.node_host)
        sni = settings.sni_host if settings.tls_self_signed else ""
        publish(routes, settings.share_path, host, settings.public_port, creds.node_name,
                sni=sni, pin=pin, show_qr=settings.show_qr)

    sink = OutputSink(settings.logs_dir / "backend.log")
    supervisor = ProcessSupervisor(
        sink,
        probe_ports=routes.ports(),
        backoff=BackoffPolicy(settings.backoff_initial, settings.backoff_cap, settings.backoff_reset_after),
    )
    router = TunnelRouter(
        routes,
        host=settings.listen_host,
        port=settings.listen_port,
        forwarder=make_forwarder(settings.forward_mode),
        readiness=supervisor.readiness,
        ready_timeout=settings.ready_timeout,
        ssl_context=ssl_context,
    )
    router.start()

    def _on_signal(signum, _frame):
        LOGGER.info("received %s", signal.Signals(signum).name)
        threading.Thread(target=router.stop_accepting, daemon=True, name="stop-accepting").start()
        supervisor.request_shutdown()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        supervisor.run(executable, settings.backend_config_path)
    finally:
        router.stop(grace=settings.shutdown_grace)
        sink.close()
    LOGGER.info("shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
