"""Shared pytest fixtures for the chrootmanager test suite.

Provides:
- web: a fake set of HTTP servers backed by httpx.MockTransport
- index_xml: a small mirror index in the published XML grammar
- amd64_manifest: a latest-stage3.txt body for amd64
- cfg: a ManagerConfig whose every path lives under tmp_path
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Tuple, Union

import httpx
import pytest

from chrootmanager.config import ManagerConfig
from chrootmanager.lib.http import make_client

Route = Union[Tuple[int, str, str], Callable[[httpx.Request], httpx.Response]]


class FakeWeb:
    """URL -> canned response map. Unknown URLs answer 404."""

    def __init__(self) -> None:
        self.routes: Dict[str, Route] = {}
        self.seen: List[str] = []
        self._clients: List[httpx.Client] = []

    def add(self, url: str, body: str, *, status: int = 200, content_type: str = "") -> None:
        if not content_type:
            content_type = "text/html" if body.lstrip().startswith("<") else "text/plain"
        self.routes[url] = (status, body, content_type)

    def fail(self, url: str, exc_type: type = httpx.ConnectError) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise exc_type(f"simulated failure for {request.url}", request=request)

        self.routes[url] = handler

    def serve_mirror(self, base_url: str, manifests: Dict[str, str]) -> None:
        """Publish a Gentoo-style release tree with one manifest per arch."""

        base = base_url.rstrip("/")
        links = "\n".join(f'<a href="{arch}/">{arch}/</a>' for arch in manifests)
        self.add(f"{base}/releases/", f'<html><body><a href="../">../</a>\n{links}\n</body></html>')
        for arch, manifest in manifests.items():
            self.add(f"{base}/releases/{arch}/autobuilds/latest-stage3.txt", manifest)

    def handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.seen.append(url)
        route = self.routes.get(url)
        if route is None:
            return httpx.Response(404, text="not found")
        if callable(route):
            return route(request)
        status, body, content_type = route
        return httpx.Response(status, text=body, headers={"content-type": content_type})

    def client(self) -> httpx.Client:
        c = make_client(timeout=5.0, transport=httpx.MockTransport(self.handle))
        self._clients.append(c)
        return c

    def close(self) -> None:
        for c in self._clients:
            c.close()


@pytest.fixture
def web():
    w = FakeWeb()
    yield w
    w.close()


@pytest.fixture
def index_xml() -> str:
    return """<?xml version="1.0" encoding="UTF-8"?>
<mirrors>
  <mirrorgroup region="Europe" country="DE" countryname="Germany">
    <mirror>
      <name>eu1</name>
      <uri protocol="http" ipv4="y" ipv6="y" partial="n">http://eu1.example/gentoo/</uri>
      <uri protocol="https" ipv4="y" ipv6="y" partial="n">https://eu1.example/gentoo/</uri>
      <uri protocol="rsync" ipv4="y" ipv6="n" partial="n">rsync://eu1.example/gentoo/</uri>
    </mirror>
  </mirrorgroup>
  <mirrorgroup region="North America" country="US" countryname="USA">
    <mirror>
      <name>us1</name>
      <uri protocol="https" ipv4="y" ipv6="y" partial="n">https://us1.example/</uri>
    </mirror>
  </mirrorgroup>
</mirrors>
"""


@pytest.fixture
def amd64_manifest() -> str:
    return """# Latest as of Sun, 13 Oct 2024 17:03:23 +0000
# ts=1728839003
20241013T170323Z/stage3-amd64-desktop-openrc-20241013T170323Z.tar.xz 283172676
20241013T170323Z/stage3-amd64-openrc-20241013T170323Z.tar.xz 236310252
20241006T170323Z/stage3-amd64-openrc-20241006T170323Z.tar.xz 236310000
20241013T170323Z/stage3-amd64-systemd-20241013T170323Z.tar.xz 245003028
"""


@pytest.fixture
def cfg(tmp_path) -> ManagerConfig:
    return ManagerConfig(
        raw={
            "paths": {
                "chroot_base_dir": str(tmp_path / "chroots"),
                "stage3_cache_dir": str(tmp_path / "cache" / "stage3"),
                "selection": str(tmp_path / "selection.json"),
                "catalog_cache": str(tmp_path / "cache" / "distfiles.xml"),
            },
            "mirrors": {
                "index_url": "https://index.example/mirrors/distfiles.xml",
                "timeout": 5,
                "retries": 0,
            },
        }
    )


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    root = logging.getLogger()
    level = root.level
    yield
    # Undo configure_logging() so every test starts unconfigured.
    if getattr(root, "_chrootmanager_configured", False):
        for h in list(root.handlers):
            if isinstance(h, logging.FileHandler) or type(h) is logging.StreamHandler:
                root.removeHandler(h)
                h.close()
        root._chrootmanager_configured = False  # type: ignore[attr-defined]
    root.setLevel(level)
