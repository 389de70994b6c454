"""Shared fixtures: sample manifests, routines and a local upstream server."""

from __future__ import annotations

import asyncio
import textwrap
from dataclasses import dataclass, field

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

SAMPLE_MANIFEST = textwrap.dedent(
    """\
    port: 7890
    mode: rule
    proxies:
      - name: hk-01
        type: ss
        server: hk.example.net
        port: 8388
    proxy-groups:
      - name: auto
        type: select
        proxies: [hk-01]
    rules:
      - MATCH,auto
    """
)

UPSTREAM_HEADERS = {
    "Subscription-Userinfo": "upload=1; download=2; total=3; expire=4",
    "Profile-Update-Interval": "24",
    "Content-Disposition": "attachment; filename=upstream.yaml",
}

PREPEND_RULE_ROUTINE = textwrap.dedent(
    """\
    def main(config, profile_name):
        console.info("profile", profile_name)
        config["rules"] = ["DOMAIN-SUFFIX,example.com,DIRECT"] + list(config.get("rules") or [])
        return config
    """
)


@dataclass
class Upstream:
    """Mutable behaviour of the fake subscription provider."""

    body: str = SAMPLE_MANIFEST
    status: int = 200
    headers: dict[str, str] = field(default_factory=lambda: dict(UPSTREAM_HEADERS))
    delay_sec: float = 0.0
    hits: int = 0
    user_agents: list[str] = field(default_factory=list)
    url: str = ""

    async def handle(self, request: web.Request) -> web.Response:
        self.hits += 1
        self.user_agents.append(request.headers.get("User-Agent", ""))
        if self.delay_sec:
            await asyncio.sleep(self.delay_sec)
        return web.Response(status=self.status, text=self.body, headers=self.headers)


@pytest_asyncio.fixture
async def upstream():
    state = Upstream()
    app = web.Application()
    app.router.add_get("/sub", state.handle)
    server = TestServer(app)
    await server.start_server()
    state.url = str(server.make_url("/sub"))
    yield state
    await server.close()


@pytest.fixture
def routine_file(tmp_path):
    path = tmp_path / "rules-script.py"
    path.write_text(PREPEND_RULE_ROUTINE, encoding="utf-8")
    return path


@pytest.fixture
def isolated_tempdir(tmp_path, monkeypatch):
    """Point tempfile at a private directory so leftover artifacts are visible."""
    import tempfile

    artifacts = tmp_path / "artifacts"
    artifacts.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(artifacts))
    return artifacts
