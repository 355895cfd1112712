"""Runtime settings, built once at startup and passed to each component."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import dotenv_values

DEFAULT_ROUTES = "vless:/vless:10001,vmess:/vmess:10002"
FORWARD_MODES = ("minimal", "passthrough")


def _int(env: Mapping[str, str], key: str, default: int, lo: int = 0, hi: Optional[int] = None) -> int:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from None
    if value < lo or (hi is not None and value > hi):
        raise ValueError(f"{key}={value} out of range")
    return value


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None
    if value < 0:
        raise ValueError(f"{key} must not be negative")
    return value


def _str(env: Mapping[str, str], key: str, default: str = "") -> str:
    return (env.get(key) or "").strip() or default


def _flag(env: Mapping[str, str], key: str) -> bool:
    return _str(env, key).lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    listen_host: str = "0.0.0.0"
    listen_port: int = 8080
    work_dir: Path = Path(".tunnel")
    client_id: str = ""
    routes: str = DEFAULT_ROUTES
    forward_mode: str = "minimal"
    artifact_url: str = ""
    artifact_base_url: str = "https://github.com/XTLS/Xray-core/releases/latest/download"
    backoff_initial: float = 2.0
    backoff_cap: float = 30.0
    backoff_reset_after: float = 300.0
    lock_poll_interval: float = 30.0
    shutdown_grace: float = 5.0
    ready_timeout: float = 5.0
    tls_cert: str = ""
    tls_key: str = ""
    tls_self_signed: bool = False
    sni_host: str = "localhost"
    node_host: str = ""
    node_name: str = ""
    public_port: int = 443
    log_level: str = "INFO"
    show_qr: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, env_file: Optional[str] = None) -> "Settings":
        """Read settings from ``environ`` (default ``os.environ``) over an optional .env file."""
        env = {}
        if env_file and Path(env_file).exists():
            env.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
        env.update(os.environ if environ is None else environ)

        forward_mode = _str(env, "FORWARD_MODE", "minimal").lower()
        if forward_mode not in FORWARD_MODES:
            raise ValueError(f"FORWARD_MODE must be one of {FORWARD_MODES}, got {forward_mode!r}")
        tls_cert = _str(env, "TLS_CERT")
        tls_key = _str(env, "TLS_KEY")
        if bool(tls_cert) != bool(tls_key):
            raise ValueError("TLS_CERT and TLS_KEY must be set together")
        tls_self_signed = _flag(env, "TLS_SELF_SIGNED")
        if tls_self_signed and tls_cert:
            raise ValueError("TLS_SELF_SIGNED cannot be combined with TLS_CERT/TLS_KEY")

        settings = cls(
            listen_host=_str(env, "LISTEN_HOST", "0.0.0.0"),
            listen_port=_int(env, "PORT", 8080, 1, 65535),
            work_dir=Path(_str(env, "WORK_DIR", ".tunnel")).expanduser(),
            client_id=_str(env, "CLIENT_ID"),
            routes=_str(env, "ROUTES", DEFAULT_ROUTES),
            forward_mode=forward_mode,
            artifact_url=_str(env, "ARTIFACT_URL"),
            artifact_base_url=_str(env, "ARTIFACT_BASE_URL", cls.artifact_base_url).rstrip("/"),
            backoff_initial=_float(env, "BACKOFF_INITIAL", 2.0),
            backoff_cap=_float(env, "BACKOFF_CAP", 30.0),
            backoff_reset_after=_float(env, "BACKOFF_RESET_AFTER", 300.0),
            lock_poll_interval=_float(env, "LOCK_POLL_INTERVAL", 30.0),
            shutdown_grace=_float(env, "SHUTDOWN_GRACE", 5.0),
            ready_timeout=_float(env, "READY_TIMEOUT", 5.0),
            tls_cert=tls_cert,
            tls_key=tls_key,
            tls_self_signed=tls_self_signed,
            sni_host=_str(env, "SNI_HOST", "localhost"),
            node_host=_str(env, "NODE_HOST"),
            node_name=_str(env, "NODE_NAME"),
            public_port=_int(env, "PUBLIC_PORT", 443, 1, 65535),
            log_level=_str(env, "LOG_LEVEL", "INFO").upper(),
            show_qr=_flag(env, "SHOW_QR"),
        )
        if settings.backoff_initial <= 0 or settings.backoff_cap < settings.backoff_initial:
            raise ValueError("BACKOFF_INITIAL must be > 0 and not larger than BACKOFF_CAP")
        return settings

    # paths under the work directory ---------------------------------
    @property
    def bin_dir(self) -> Path:
        return self.work_dir / "bin"

    @property
    def logs_dir(self) -> Path:
        return self.work_dir / "logs"

    @property
    def backend_config_path(self) -> Path:
        return self.work_dir / "config.json"

    @property
    def state_path(self) -> Path:
        return self.work_dir / "state.json"

    @property
    def lock_path(self) -> Path:
        return self.work_dir / "runner.lock"

    @property
    def share_path(self) -> Path:
        return self.work_dir / "node.txt"

    @property
    def self_signed_cert_path(self) -> Path:
        return self.work_dir / "tls" / "cert.pem"

    @property
    def self_signed_key_path(self) -> Path:
        return self.work_dir / "tls" / "key.pem"
