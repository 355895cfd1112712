"""Route table: static mapping from inbound path to backend loopback port."""

import enum
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

LOOPBACK_HOST = "127.0.0.1"


class ProtocolKind(str, enum.Enum):
    VLESS = "vless"
    VMESS = "vmess"
    TROJAN = "trojan"

    @classmethod
    def parse(cls, value: str) -> "ProtocolKind":
        try:
            return cls(value.strip().lower())
        except ValueError:
            known = ", ".join(k.value for k in cls)
            raise ValueError(f"unknown protocol kind {value!r} (expected one of: {known})") from None


@dataclass(frozen=True)
class Route:
    path: str
    backend_port: int
    kind: ProtocolKind
    client_id: str

    def __post_init__(self) -> None:
        if not self.path.startswith("/"):
            raise ValueError(f"route path must start with '/': {self.path!r}")
        if not 1 <= int(self.backend_port) <= 65535:
            raise ValueError(f"backend port out of range for {self.path}: {self.backend_port}")
        if not self.client_id:
            raise ValueError(f"route {self.path} has no client id")

    @property
    def backend_addr(self) -> Tuple[str, int]:
        return (LOOPBACK_HOST, self.backend_port)

    def matches(self, path: str) -> bool:
        if self.path == "/":
            return path.startswith("/")
        prefix = self.path.rstrip("/")
        return path == prefix or path.startswith(prefix + "/")


class RouteTable:
    """Immutable set of routes with longest-prefix lookup.

    A registered path matches the same path or anything below it at a
    segment boundary, so ``/v`` never captures ``/vless``.
    """

    def __init__(self, routes: Iterable[Route]):
        ordered: List[Route] = []
        by_path: Dict[str, Route] = {}
        by_port: Dict[int, Route] = {}
        for route in routes:
            if route.path in by_path:
                raise ValueError(f"duplicate route path {route.path}")
            other = by_port.get(route.backend_port)
            if other is not None:
                if other.kind != route.kind:
                    raise ValueError(
                        f"backend port {route.backend_port} shared by {other.kind.value} "
                        f"({other.path}) and {route.kind.value} ({route.path})"
                    )
                raise ValueError(f"backend port {route.backend_port} already bound by route {other.path}")
            by_path[route.path] = route
            by_port[route.backend_port] = route
            ordered.append(route)
        self._routes: Tuple[Route, ...] = tuple(ordered)
        self._by_specificity: Tuple[Route, ...] = tuple(
            sorted(ordered, key=lambda r: len(r.path.rstrip("/")), reverse=True)
        )

    def __iter__(self) -> Iterator[Route]:
        return iter(self._routes)

    def __len__(self) -> int:
        return len(self._routes)

    def __repr__(self) -> str:
        return f"RouteTable({list(self._routes)!r})"

    def match(self, path: str) -> Optional[Route]:
        for route in self._by_specificity:
            if route.matches(path):
                return route
        return None

    def ports(self) -> List[int]:
        return [r.backend_port for r in self._routes]


def parse_routes(text: str, client_id: str) -> RouteTable:
    """Parse ``kind:path:port`` entries separated by commas."""
    routes: List[Route] = []
    for raw in text.split(","):
        entry = raw.strip()
        if not entry:
            continue
        parts = entry.split(":")
        if len(parts) != 3:
            raise ValueError(f"bad route entry {entry!r}; expected kind:path:port")
        kind, path, port = parts
        try:
            port_num = int(port)
        except ValueError:
            raise ValueError(f"bad port in route entry {entry!r}") from None
        routes.append(Route(path=path.strip(), backend_port=port_num,
                            kind=ProtocolKind.parse(kind), client_id=client_id))
    if not routes:
        raise ValueError("route table is empty")
    return RouteTable(routes)
