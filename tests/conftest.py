import base64
import copy
import json
import re
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlparse

import pytest

from fivetransync.core.fivetran_client import FivetranClient

API_KEY = "KEY"
API_SECRET = "SECRET"
MASK = "******"


def _merge(base, ext):
    for k, v in ext.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _merge(base[k], v)
        else:
            base[k] = copy.deepcopy(v)
    return base


class FakeFivetran:
    """
    In-memory Fivetran API served over a ThreadingHTTPServer.

    Collections hold plain API objects; `calls` records every request as
    (method, path, query, body). `inject(method, path, status, body, headers=...)`
    queues a canned answer returned before normal routing.
    """

    def __init__(self):
        self.users = {}
        self.groups = {}
        self.members = {}           # group_id -> {user_id: role}
        self.destinations = {}
        self.connectors = {}
        self.schemas = {}           # connector_id -> {"schema_change_handling", "schemas"}
        self.catalog = {}           # connector_id -> schemas loaded by /schemas/reload
        self.hidden_columns = set()  # (connector_id, schema, table) omitted from /schemas
        self.metadata = []
        self.secret_keys = {"password", "private_key"}
        self.calls = []
        self._injected = {}
        self._seq = 0
        self._lock = threading.Lock()

    # ----- test helpers -----
    def inject(self, method, path, status, body=None, times=1, headers=None):
        self._injected.setdefault((method, path), []).extend([(status, body or {}, dict(headers or {}))] * times)

    def requests(self, method=None, prefix=""):
        return [c for c in self.calls if (method is None or c[0] == method) and c[1].startswith(prefix)]

    def writes(self):
        return [c for c in self.calls if c[0] != "GET"]

    def next_id(self, prefix):
        self._seq += 1
        return f"{prefix}_{self._seq}"

    # ----- routing -----
    def handle(self, method, path, query, body):
        with self._lock:
            self.calls.append((method, path, query, body))
            queued = self._injected.get((method, path))
            if queued:
                return queued.pop(0)
            return (*self._route(method, path, query, body), {})

    def _route(self, method, path, query, body):
        for verb, pattern, fn in self._routes():
            if verb != method:
                continue
            m = re.fullmatch(pattern, path)
            if m:
                return fn(query, body, *m.groups())
        return 404, {"code": "NotFound", "message": f"No route {method} {path}"}

    def _routes(self):
        return [
            ("GET", r"/users", lambda q, b: self._page(list(self.users.values()), q)),
            ("POST", r"/users", self._create_user),
            ("GET", r"/users/([^/]+)", lambda q, b, i: self._get(self.users, i)),
            ("PATCH", r"/users/([^/]+)", lambda q, b, i: self._patch(self.users, i, b)),
            ("DELETE", r"/users/([^/]+)", lambda q, b, i: self._delete(self.users, i)),
            ("GET", r"/groups", lambda q, b: self._page(list(self.groups.values()), q)),
            ("POST", r"/groups", self._create_group),
            ("GET", r"/groups/([^/]+)", lambda q, b, i: self._get(self.groups, i)),
            ("PATCH", r"/groups/([^/]+)", lambda q, b, i: self._patch(self.groups, i, b)),
            ("DELETE", r"/groups/([^/]+)", lambda q, b, i: self._delete(self.groups, i)),
            ("GET", r"/groups/([^/]+)/users", self._list_members),
            ("POST", r"/groups/([^/]+)/users", self._add_member),
            ("DELETE", r"/groups/([^/]+)/users/([^/]+)", self._remove_member),
            ("GET", r"/groups/([^/]+)/connectors", self._group_connectors),
            ("POST", r"/destinations", self._create_destination),
            ("GET", r"/destinations/([^/]+)", lambda q, b, i: self._get(self.destinations, i)),
            ("PATCH", r"/destinations/([^/]+)", lambda q, b, i: self._patch(self.destinations, i, b)),
            ("DELETE", r"/destinations/([^/]+)", lambda q, b, i: self._delete(self.destinations, i)),
            ("POST", r"/connectors", self._create_connector),
            ("GET", r"/connectors/([^/]+)", lambda q, b, i: self._get_connector(i)),
            ("PATCH", r"/connectors/([^/]+)", self._patch_connector),
            ("DELETE", r"/connectors/([^/]+)", lambda q, b, i: self._delete(self.connectors, i)),
            ("GET", r"/connectors/([^/]+)/schemas", self._get_schemas),
            ("PATCH", r"/connectors/([^/]+)/schemas", self._patch_schemas),
            ("POST", r"/connectors/([^/]+)/schemas/reload", self._reload_schemas),
            ("GET", r"/connectors/([^/]+)/schemas/([^/]+)/tables/([^/]+)/columns", self._get_columns),
            ("GET", r"/metadata/connectors", lambda q, b: self._page(self.metadata, q)),
        ]

    # ----- generic -----
    @staticmethod
    def _ok(data):
        return 200, {"code": "Success", "data": data}

    @staticmethod
    def _missing(what):
        return 404, {"code": "NotFound", "message": f"{what} not found"}

    def _page(self, items, query):
        limit = int((query.get("limit") or ["1000"])[0])
        start = int((query.get("cursor") or ["0"])[0])
        chunk = items[start:start + limit]
        nxt = str(start + limit) if start + limit < len(items) else None
        return self._ok({"items": copy.deepcopy(chunk), "next_cursor": nxt})

    def _get(self, coll, ident):
        if ident not in coll:
            return self._missing(ident)
        return self._ok(copy.deepcopy(coll[ident]))

    def _patch(self, coll, ident, body):
        if ident not in coll:
            return self._missing(ident)
        _merge(coll[ident], body or {})
        return self._ok(copy.deepcopy(coll[ident]))

    def _delete(self, coll, ident):
        if ident not in coll:
            return self._missing(ident)
        del coll[ident]
        return 200, {"code": "Success", "message": "deleted"}

    # ----- users / groups -----
    def _create_user(self, query, body):
        if any(u["email"] == body.get("email") for u in self.users.values()):
            return 409, {"code": "AlreadyExists", "message": "user exists"}
        ident = self.next_id("usr")
        self.users[ident] = {"id": ident, "invited": True, "verified": False, **body}
        return 201, {"code": "Success", "data": copy.deepcopy(self.users[ident])}

    def _create_group(self, query, body):
        ident = self.next_id("grp")
        self.groups[ident] = {"id": ident, "created_at": "2024-01-01T00:00:00Z", **body}
        return 201, {"code": "Success", "data": copy.deepcopy(self.groups[ident])}

    def _list_members(self, query, body, gid):
        if gid not in self.groups:
            return self._missing(gid)
        items = [{**self.users[uid], "role": role} for uid, role in self.members.get(gid, {}).items()]
        return self._page(items, query)

    def _add_member(self, query, body, gid):
        if gid not in self.groups:
            return self._missing(gid)
        user = next((u for u in self.users.values() if u["email"] == body.get("email")), None)
        if user is None:
            return 404, {"code": "NotFound_User", "message": f"no user {body.get('email')}"}
        self.members.setdefault(gid, {})[user["id"]] = body.get("role")
        return self._ok({"id": user["id"]})

    def _remove_member(self, query, body, gid, uid):
        if uid not in self.members.get(gid, {}):
            return self._missing(uid)
        del self.members[gid][uid]
        return 200, {"code": "Success"}

    # ----- destinations / connectors -----
    def _create_destination(self, query, body):
        ident = body["group_id"]
        obj = {k: v for k, v in body.items() if k not in ("trust_certificates", "trust_fingerprints", "run_setup_tests")}
        self.destinations[ident] = {"id": ident, "setup_status": "connected", **obj}
        return 201, {"code": "Success", "data": copy.deepcopy(self.destinations[ident])}

    def _masked(self, connector):
        out = copy.deepcopy(connector)
        for k in out.get("config", {}):
            if k in self.secret_keys:
                out["config"][k] = MASK
        return out

    def _get_connector(self, ident):
        if ident not in self.connectors:
            return self._missing(ident)
        return self._ok(self._masked(self.connectors[ident]))

    def _create_connector(self, query, body):
        ident = self.next_id("con")
        config = copy.deepcopy(body.get("config") or {})
        name = config.get("schema", "")
        if config.get("table"):
            name = f"{name}.{config['table']}"
        obj = {
            "id": ident,
            "group_id": body.get("group_id"),
            "service": body.get("service"),
            "service_version": 1,
            "schema": name,
            "config": config,
            "sync_frequency": body.get("sync_frequency", 360),
            "schedule_type": "auto",  # create ignores schedule_type
            "paused": body.get("paused", False),
            "pause_after_trial": body.get("pause_after_trial", False),
            "status": {"setup_state": "incomplete", "sync_state": "paused", "update_state": "on_schedule",
                       "is_historical_sync": True},
        }
        self.connectors[ident] = obj
        return 201, {"code": "Success", "data": self._masked(obj)}

    def _patch_connector(self, query, body, ident):
        if ident not in self.connectors:
            return self._missing(ident)
        body = {k: v for k, v in (body or {}).items() if k not in ("auth", "trust_certificates", "trust_fingerprints",
                                                                  "run_setup_tests")}
        _merge(self.connectors[ident], body)
        return self._ok(self._masked(self.connectors[ident]))

    def _group_connectors(self, query, body, gid):
        if gid not in self.groups:
            return self._missing(gid)
        items = [self._masked(c) for c in self.connectors.values() if c.get("group_id") == gid]
        return self._page(items, query)

    # ----- schema config -----
    def _get_schemas(self, query, body, cid):
        if cid not in self.schemas:
            return 404, {"code": "NotFound_SchemaConfig", "message": "schema not loaded"}
        out = copy.deepcopy(self.schemas[cid])
        for (c, s, t) in self.hidden_columns:
            if c == cid and t in out["schemas"].get(s, {}).get("tables", {}):
                out["schemas"][s]["tables"][t].pop("columns", None)
        return self._ok(out)

    def _patch_schemas(self, query, body, cid):
        if cid not in self.schemas:
            return self._missing(cid)
        _merge(self.schemas[cid], body or {})
        return self._get_schemas(query, None, cid)

    def _reload_schemas(self, query, body, cid):
        if cid not in self.connectors:
            return self._missing(cid)
        self.schemas[cid] = copy.deepcopy(self.catalog.get(cid) or {"schema_change_handling": "ALLOW_ALL",
                                                                     "schemas": {}})
        return self._get_schemas(query, None, cid)

    def _get_columns(self, query, body, cid, schema, table):
        try:
            columns = self.schemas[cid]["schemas"][schema]["tables"][table].get("columns", {})
        except KeyError:
            return self._missing(f"{schema}.{table}")
        return self._ok({"columns": copy.deepcopy(columns)})


def _make_handler(fake, expected_auth):
    class _Handler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def _send_json(self, status, obj, headers=None):
            raw = json.dumps(obj).encode("utf-8") if obj is not None else b""
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(raw)))
            for name, value in (headers or {}).items():
                self.send_header(name, value)
            self.end_headers()
            self.wfile.write(raw)

        def _dispatch(self, method):
            url = urlparse(self.path)
            length = int(self.headers.get("Content-Length", "0"))
            raw = self.rfile.read(length) if length else b""
            body = json.loads(raw.decode("utf-8")) if raw else None
            if self.headers.get("Authorization", "") != expected_auth:
                self._send_json(401, {"code": "AuthFailed", "message": "bad credentials"})
                return
            status, payload, headers = fake.handle(method, url.path, parse_qs(url.query), body)
            self._send_json(status, payload, headers)

        def do_GET(self):  # noqa: N802
            self._dispatch("GET")

        def do_POST(self):  # noqa: N802
            self._dispatch("POST")

        def do_PATCH(self):  # noqa: N802
            self._dispatch("PATCH")

        def do_DELETE(self):  # noqa: N802
            self._dispatch("DELETE")

        def log_message(self, fmt, *args):  # silence test server logs
            return

    return _Handler


@pytest.fixture
def fake():
    state = FakeFivetran()
    token = base64.b64encode(f"{API_KEY}:{API_SECRET}".encode("utf-8")).decode("ascii")
    server = ThreadingHTTPServer(("127.0.0.1", 0), _make_handler(state, f"Basic {token}"))
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    state.base_url = f"http://{server.server_address[0]}:{server.server_address[1]}"
    try:
        yield state
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def client(fake):
    return FivetranClient(API_KEY, API_SECRET, base_url=fake.base_url, retries=0, timeout_sec=5)
