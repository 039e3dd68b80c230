"""Pytest configuration and fixtures.

``FakeKanidm`` is an in-memory stand-in for the Kanidm REST API, served to the
real client through ``httpx.MockTransport``. It renders composite attributes in
the server's display format and records every mutating request.
"""

from __future__ import annotations

import json
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import httpx
import pytest

from kanidm_provision.client import KanidmClient
from kanidm_provision.models import ProvisionState
from kanidm_provision.provision import run_provision
from kanidm_provision.settings import ProvisionSettings

DOMAIN = "idm.example.com"
ADMIN_PASSWORD = "hunter2"
TOKEN = "fake-token"
SESSION_ID = "fake-session"

_DELIMITERS = {"ssv": " ", "csv": ",", "array": ";"}


@dataclass
class FakeEntity:
    kind: str
    name: str
    attrs: dict[str, list[str]] = field(default_factory=dict)
    uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    public: bool = False
    members: list[str] = field(default_factory=list)
    scope_maps: dict[str, list[str]] = field(default_factory=dict)
    sup_scope_maps: dict[str, list[str]] = field(default_factory=dict)
    claim_maps: dict[str, dict[str, list[str]]] = field(default_factory=dict)
    claim_joins: dict[str, str] = field(default_factory=dict)
    secret: str | None = None

    def to_json(self) -> dict:
        attrs = {k: list(v) for k, v in self.attrs.items()}
        attrs["name"] = [self.name]
        attrs["uuid"] = [self.uuid]
        if self.kind == "oauth2":
            attrs["class"] = [
                "oauth2_resource_server",
                "oauth2_resource_server_public" if self.public else "oauth2_resource_server_basic",
            ]
        if self.members:
            attrs["member"] = [f"{m}@{DOMAIN}" for m in self.members]
        for attr, maps in (
            ("oauth2_rs_scope_map", self.scope_maps),
            ("oauth2_rs_sup_scope_map", self.sup_scope_maps),
        ):
            if maps:
                attrs[attr] = [
                    f"{group}@{DOMAIN}: {{{', '.join(json.dumps(s) for s in sorted(scopes))}}}"
                    for group, scopes in maps.items()
                ]
        entries = []
        for claim, groups in self.claim_maps.items():
            delimiter = _DELIMITERS[self.claim_joins.get(claim, "array")]
            for group, values in groups.items():
                entries.append(f'{claim}:{group}@{DOMAIN}:{delimiter}:"{",".join(sorted(values))}"')
        if entries:
            attrs["oauth2_rs_claim_map"] = entries
        return {"attrs": attrs}


class FakeKanidm:
    """In-memory Kanidm serving groups, persons and OAuth2 resource servers."""

    def __init__(self):
        self.entities: dict[str, FakeEntity] = {}
        self.calls: list[tuple[str, str]] = []
        self.images: dict[str, tuple[str, str]] = {}

    # -------------------------------------------------------------------------
    # Seeding
    # -------------------------------------------------------------------------

    def add(self, kind: str, name: str, **kwargs) -> FakeEntity:
        entity = FakeEntity(kind=kind, name=name, **kwargs)
        self.entities[name] = entity
        return entity

    def add_group(self, name: str, members: list[str] | None = None) -> FakeEntity:
        return self.add("group", name, members=list(members or []))

    def add_person(self, name: str, display_name: str | None = None, **attrs) -> FakeEntity:
        return self.add("person", name, attrs={"displayname": [display_name or name], **attrs})

    def add_oauth2(self, name: str, public: bool = False, **kwargs) -> FakeEntity:
        return self.add("oauth2", name, public=public, **kwargs)

    def names(self, kind: str) -> set[str]:
        return {n for n, e in self.entities.items() if e.kind == kind}

    def reset_calls(self) -> None:
        self.calls.clear()

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        await request.aread()
        path = request.url.path
        if path == "/v1/auth":
            return self._auth(request)

        if request.headers.get("Authorization") != f"Bearer {TOKEN}":
            return httpx.Response(401, text="unauthorized")

        if request.method != "GET":
            self.calls.append((request.method, path))

        parts = path.strip("/").split("/")
        if len(parts) < 2 or parts[0] != "v1" or parts[1] not in ("group", "person", "oauth2"):
            return httpx.Response(404, text="not found")
        kind, rest = parts[1], parts[2:]

        if not rest:
            if request.method == "GET":
                return httpx.Response(
                    200, json=[e.to_json() for e in self.entities.values() if e.kind == kind]
                )
            if request.method == "POST" and kind != "oauth2":
                return self._create(kind, request, public=False)
            return httpx.Response(405)

        if kind == "oauth2" and len(rest) == 1 and rest[0] in ("_basic", "_public"):
            return self._create(kind, request, public=rest[0] == "_public")

        if len(rest) == 3 and rest[1] == "_attr":
            entity = self._by_uuid(kind, rest[0])
            if entity is None:
                return httpx.Response(404, text="no such entity")
            return self._attr(entity, rest[2], request)

        entity = self.entities.get(rest[0])
        if entity is None or entity.kind != kind:
            return httpx.Response(404, text="no such entity")

        if len(rest) == 1:
            if request.method == "DELETE":
                self._delete(entity)
                return httpx.Response(200, json=None)
            if request.method == "PATCH":
                return self._patch(entity, json.loads(request.content))
            return httpx.Response(405)

        return self._oauth2_sub(entity, rest[1:], request)

    def _auth(self, request: httpx.Request) -> httpx.Response:
        step = json.loads(request.content)["step"]
        if "init" in step:
            return httpx.Response(200, json={}, headers={"X-KANIDM-AUTH-SESSION-ID": SESSION_ID})
        if request.headers.get("X-KANIDM-AUTH-SESSION-ID") != SESSION_ID:
            return httpx.Response(400, text="no session")
        if "begin" in step:
            return httpx.Response(200, json={"state": {"continue": ["password"]}})
        if step["cred"]["password"] == ADMIN_PASSWORD:
            return httpx.Response(200, json={"state": {"success": TOKEN}})
        return httpx.Response(200, json={"state": {"denied": "incorrect password"}})

    def _create(self, kind: str, request: httpx.Request, public: bool) -> httpx.Response:
        attrs = dict(json.loads(request.content)["attrs"])
        name = attrs.pop("name")[0]
        if name in self.entities:
            return httpx.Response(409, text="duplicate name")
        self.add(kind, name, attrs=attrs, public=public)
        return httpx.Response(200, json=None)

    def _delete(self, entity: FakeEntity) -> None:
        del self.entities[entity.name]
        for other in self.entities.values():
            if entity.name in other.members:
                other.members.remove(entity.name)
            other.scope_maps.pop(entity.name, None)
            other.sup_scope_maps.pop(entity.name, None)
            for groups in other.claim_maps.values():
                groups.pop(entity.name, None)

    def _by_uuid(self, kind: str, entity_id: str) -> FakeEntity | None:
        for entity in self.entities.values():
            if entity.kind == kind and entity.uuid == entity_id:
                return entity
        return None

    def _attr(self, entity: FakeEntity, attr: str, request: httpx.Request) -> httpx.Response:
        values = json.loads(request.content) if request.content else []
        if attr == "member":
            unknown = [v for v in values if v not in self.entities]
            if unknown:
                return httpx.Response(400, text=f"unknown members {unknown}")
            if request.method == "PUT":
                entity.members = list(values)
            elif request.method == "POST":
                entity.members += [v for v in values if v not in entity.members]
            else:
                entity.members = []
            return httpx.Response(200, json=None)

        if request.method == "PUT":
            entity.attrs[attr] = list(values)
        elif request.method == "POST":
            entity.attrs[attr] = entity.attrs.get(attr, []) + list(values)
        else:
            entity.attrs.pop(attr, None)
        return httpx.Response(200, json=None)

    def _patch(self, entity: FakeEntity, body: dict) -> httpx.Response:
        for attr, values in body["attrs"].items():
            if attr == "oauth2_rs_basic_secret":
                entity.secret = values[0]
            else:
                entity.attrs[attr] = list(values)
        return httpx.Response(200, json=None)

    def _oauth2_sub(self, entity: FakeEntity, rest: list[str], request: httpx.Request) -> httpx.Response:
        if entity.kind != "oauth2":
            return httpx.Response(404)
        action = rest[0]

        if action in ("_scopemap", "_sup_scopemap") and len(rest) == 2:
            maps = entity.scope_maps if action == "_scopemap" else entity.sup_scope_maps
            group = rest[1]
            if request.method == "POST":
                if group not in self.names("group"):
                    return httpx.Response(400, text="unknown group")
                maps[group] = list(json.loads(request.content))
            else:
                maps.pop(group, None)
            return httpx.Response(200, json=None)

        if action == "_claimmap" and len(rest) == 3:
            claim, group = rest[1], rest[2]
            if request.method == "POST":
                entity.claim_maps.setdefault(claim, {})[group] = list(json.loads(request.content))
            else:
                groups = entity.claim_maps.get(claim, {})
                groups.pop(group, None)
                if not groups:
                    entity.claim_maps.pop(claim, None)
                    entity.claim_joins.pop(claim, None)
            return httpx.Response(200, json=None)

        if action == "_claimmap" and len(rest) == 2:
            entity.claim_joins[rest[1]] = json.loads(request.content)
            return httpx.Response(200, json=None)

        if action == "_basic_secret" and request.method == "GET":
            return httpx.Response(200, json=entity.secret)

        if action == "_image" and request.method == "POST":
            content_type = request.headers.get("content-type", "")
            self.images[entity.name] = (content_type, str(len(request.content)))
            return httpx.Response(200, json=None)

        return httpx.Response(404)


@pytest.fixture
def server() -> FakeKanidm:
    """An empty fake Kanidm server."""
    return FakeKanidm()


@pytest.fixture
def settings() -> ProvisionSettings:
    """Settings pointing at the fake server."""
    return ProvisionSettings(
        url=f"https://{DOMAIN}",
        idm_admin_user="idm_admin",
        idm_admin_token=ADMIN_PASSWORD,
    )


@pytest.fixture
def connect(server, settings):
    """Open an authenticated client against the fake server."""

    @asynccontextmanager
    async def _connect():
        async with KanidmClient(settings, transport=server.transport()) as client:
            await client.login()
            yield client

    return _connect


@pytest.fixture
def provision(connect):
    """Run a complete provisioning against the fake server."""

    async def _provision(state: dict, auto_remove: bool = True):
        async with connect() as client:
            return await run_provision(
                client, ProvisionState.model_validate(state), auto_remove=auto_remove
            )

    return _provision
