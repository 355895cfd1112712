"""Connection URIs for the configured routes, plus an optional terminal QR code."""

import base64
import json
import logging
import os
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote, urlencode

import qrcode
import requests

from .routes import ProtocolKind, Route, RouteTable

LOGGER = logging.getLogger("tunnel_router.share")

IP_LOOKUP_URL = "https://api.ipify.org"
PLACEHOLDER_HOST = "your_host"


def detect_public_host(override: str = "", session: Optional[requests.Session] = None,
                       timeout: float = 5.0) -> str:
    if override:
        return override
    http = session or requests
    try:
        resp = http.get(IP_LOOKUP_URL, timeout=timeout)
        resp.raise_for_status()
        host = resp.text.strip()
    except requests.RequestException as exc:
        LOGGER.warning("public address lookup failed: %s", exc)
        return PLACEHOLDER_HOST
    return host or PLACEHOLDER_HOST


def _ws_query(host: str, route: Route, tls: bool, sni: str, pin: str) -> dict:
    params = {"type": "ws", "host": host, "path": route.path}
    if tls:
        params["security"] = "tls"
        params["sni"] = sni or host
        if pin:
            # self-signed listener: clients skip CA checks and pin the cert instead
            params["allowInsecure"] = "1"
            params["pinSHA256"] = pin
    else:
        params["security"] = "none"
    return params


def route_uri(route: Route, host: str, port: int, name: str, tls: bool = True,
              sni: str = "", pin: str = "") -> str:
    label = quote(f"{name}-{route.kind.value}", safe="")
    if route.kind is ProtocolKind.VMESS:
        doc = {
            "v": "2",
            "ps": f"{name}-{route.kind.value}",
            "add": host,
            "port": str(port),
            "id": route.client_id,
            "aid": "0",
            "scy": "auto",
            "net": "ws",
            "type": "none",
            "host": host,
            "path": route.path,
            "tls": "tls" if tls else "",
            "sni": (sni or host) if tls else "",
        }
        raw = json.dumps(doc, separators=(",", ":"), sort_keys=True).encode("utf-8")
        return "vmess://" + base64.b64encode(raw).decode("ascii")
    params = _ws_query(host, route, tls, sni, pin)
    if route.kind is ProtocolKind.VLESS:
        params = {"encryption": "none", **params}
    query = urlencode(params, quote_via=quote, safe="")
    return f"{route.kind.value}://{route.client_id}@{host}:{port}?{query}#{label}"


def build_links(table: RouteTable, host: str, port: int, name: str, tls: bool = True,
                sni: str = "", pin: str = "") -> List[str]:
    return [route_uri(route, host, port, name, tls=tls, sni=sni, pin=pin) for route in table]


def write_share_file(path: Path, links: List[str]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write("\n".join(links) + "\n")


# ──────────────────────────────────────────────────────────────
# QR helpers
# ──────────────────────────────────────────────────────────────
def _qr_matrix(text: str, border: int = 2) -> List[List[bool]]:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=1,
        border=max(0, border),
    )
    qr.add_data(text)
    qr.make(fit=True)
    return qr.get_matrix()


def render_qr_ascii(text: str, invert: bool = False) -> str:
    """Half-block rendering: two matrix rows per terminal line."""
    matrix = _qr_matrix(text)
    h = len(matrix)
    if not h:
        return text
    w = len(matrix[0])
    lines: List[str] = []
    for y in range(0, h, 2):
        top = matrix[y]
        bottom = matrix[y + 1] if (y + 1) < h else [False] * w
        row = []
        for x in range(w):
            t = top[x] != invert
            b = bottom[x] != invert
            if t and b:
                row.append("█")
            elif t:
                row.append("▀")
            elif b:
                row.append("▄")
            else:
                row.append(" ")
        lines.append("".join(row))
    return "\n".join(lines)


def publish(table: RouteTable, path: Path, host: str, port: int, name: str,
            tls: bool = True, sni: str = "", pin: str = "", show_qr: bool = False) -> List[str]:
    links = build_links(table, host, port, name, tls=tls, sni=sni, pin=pin)
    write_share_file(path, links)
    LOGGER.info("[node] saved: %s", path)
    for link in links:
        LOGGER.info("[node] %s", link)
        if show_qr:
            print(render_qr_ascii(link), flush=True)
    return links
