"""Backend (Xray-core) configuration synthesis."""

import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict

from .routes import LOOPBACK_HOST, ProtocolKind, Route, RouteTable


def _client_settings(route: Route) -> Dict[str, Any]:
    if route.kind is ProtocolKind.VLESS:
        return {"clients": [{"id": route.client_id}], "decryption": "none"}
    if route.kind is ProtocolKind.VMESS:
        return {"clients": [{"id": route.client_id, "alterId": 0}]}
    if route.kind is ProtocolKind.TROJAN:
        return {"clients": [{"password": route.client_id}]}
    raise ValueError(f"unsupported protocol kind {route.kind}")


def _inbound(route: Route) -> Dict[str, Any]:
    return {
        "tag": f"{route.kind.value}-ws-{route.backend_port}",
        "listen": LOOPBACK_HOST,
        "port": route.backend_port,
        "protocol": route.kind.value,
        "settings": _client_settings(route),
        "streamSettings": {
            "network": "ws",
            "security": "none",
            "wsSettings": {"path": route.path},
        },
        "sniffing": {"enabled": True, "destOverride": ["http", "tls", "quic"]},
    }


def synthesize(table: RouteTable, log_level: str = "warning") -> bytes:
    """Render the backend config for ``table``; equal input gives identical bytes."""
    doc = {
        "log": {"loglevel": log_level},
        "inbounds": [_inbound(route) for route in table],
        "outbounds": [
            {"protocol": "freedom", "tag": "direct"},
            {"protocol": "blackhole", "tag": "block"},
        ],
    }
    return (json.dumps(doc, indent=2, sort_keys=True) + "\n").encode("utf-8")


def write_backend_config(path: Path, table: RouteTable, log_level: str = "warning") -> bytes:
    data = synthesize(table, log_level=log_level)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".config-", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise
    return data
