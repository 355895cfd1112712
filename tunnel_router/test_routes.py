"""Route table construction and path matching."""

import pytest

from tunnel_router.routes import ProtocolKind, Route, RouteTable, parse_routes


def _route(path, port, kind=ProtocolKind.VLESS, cid="abc"):
    return Route(path=path, backend_port=port, kind=kind, client_id=cid)


def test_longest_prefix_wins_over_shorter_overlap():
    table = RouteTable([_route("/v", 10000), _route("/vless", 10001)])
    assert table.match("/vless").backend_port == 10001
    assert table.match("/vless/extra").backend_port == 10001
    assert table.match("/v").backend_port == 10000
    assert table.match("/v/deeper").backend_port == 10000


def test_prefix_matches_only_at_segment_boundary():
    table = RouteTable([_route("/v", 10000)])
    assert table.match("/vx") is None
    assert table.match("/") is None
    assert table.match("/v/") is not None


def test_registration_order_does_not_change_specificity():
    a = RouteTable([_route("/a", 1), _route("/a/b", 2)])
    b = RouteTable([_route("/a/b", 2), _route("/a", 1)])
    assert a.match("/a/b/c").backend_port == b.match("/a/b/c").backend_port == 2


def test_root_route_catches_everything():
    table = RouteTable([_route("/", 9000), _route("/up", 9001)])
    assert table.match("/anything").backend_port == 9000
    assert table.match("/up").backend_port == 9001


def test_duplicate_paths_rejected():
    with pytest.raises(ValueError, match="duplicate"):
        RouteTable([_route("/up", 1), _route("/up", 2)])


def test_port_shared_across_kinds_rejected():
    with pytest.raises(ValueError, match="shared"):
        RouteTable([_route("/a", 10000, ProtocolKind.VLESS), _route("/b", 10000, ProtocolKind.VMESS)])


def test_port_reused_by_same_kind_rejected():
    with pytest.raises(ValueError, match="already bound"):
        RouteTable([_route("/a", 10000), _route("/b", 10000)])


@pytest.mark.parametrize("path,port", [("up", 10000), ("/up", 0), ("/up", 70000)])
def test_route_field_validation(path, port):
    with pytest.raises(ValueError):
        _route(path, port)


def test_parse_routes():
    table = parse_routes("vless:/up:10000, vmess:/vm:10001", "cid")
    routes = list(table)
    assert [(r.path, r.backend_port, r.kind) for r in routes] == [
        ("/up", 10000, ProtocolKind.VLESS),
        ("/vm", 10001, ProtocolKind.VMESS),
    ]
    assert all(r.client_id == "cid" for r in routes)
    assert table.ports() == [10000, 10001]
    assert routes[0].backend_addr == ("127.0.0.1", 10000)


@pytest.mark.parametrize("text", ["", "vless:/up", "ssh:/up:1", "vless:/up:abc"])
def test_parse_routes_rejects_bad_entries(text):
    with pytest.raises(ValueError):
        parse_routes(text, "cid")
