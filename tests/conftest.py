"""An in-process fake of the OMERO.web endpoints used by yaomero.

Tests drive coroutines with `asyncio.run`, and start the fake server inside
them with the `serve` fixture::

    def test_something(fake_omero, serve):
        async def main():
            async with serve() as (uri, settings):
                ...

        asyncio.run(main())

Every request is counted in `fake_omero.calls`, keyed by route name, so
de-duplication can be asserted exactly.
"""

from __future__ import annotations

import asyncio
import io
from collections import Counter
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, ClassVar

import numpy as np
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from PIL import Image as PILImage

from yaomero import Client, ClientSettings, Credentials
from yaomero._annotations import RATING_NAMESPACE

CSRF_TOKEN = "csrf-token-123"
SESSION_UUID = "0b1f9c1a-session"
PASSWORD = "secret"

ALICE = {"@id": 2, "FirstName": "Alice", "LastName": "Anders", "UserName": "alice"}
BOB = {"@id": 3, "FirstName": "Bob", "LastName": "Berg", "UserName": "bob"}
LAB = {"@id": 5, "Name": "lab"}


def _container(id_: int, name: str, owner: dict[str, Any]) -> dict[str, Any]:
    return {"@id": id_, "Name": name, "omero:details": {"owner": owner, "group": LAB}}


@dataclass
class FakeImage:
    id: int
    name: str
    pixel_type: str = "uint8"
    size_x: int = 512
    size_y: int = 512
    channels: tuple[str, ...] = ("red", "green", "blue")
    levels: int = 1
    tile_size: int = 256

    def json_api(self) -> dict[str, Any]:
        return {
            "@id": self.id,
            "Name": self.name,
            "omero:details": {"owner": ALICE, "group": LAB},
            "Pixels": {
                "SizeX": self.size_x,
                "SizeY": self.size_y,
                "SizeZ": 1,
                "SizeC": len(self.channels),
                "SizeT": 1,
                "Type": {"value": self.pixel_type},
            },
        }

    def img_data(self) -> dict[str, Any]:
        colors = ["FF0000", "00FF00", "0000FF", "FFFFFF"]
        return {
            "id": self.id,
            "meta": {
                "imageName": self.name,
                "imageAuthor": "Alice Anders",
                "imageAuthorId": 2,
                "pixelsType": self.pixel_type,
                "imageTimestamp": 1700000000,
            },
            "size": {
                "width": self.size_x,
                "height": self.size_y,
                "z": 1,
                "t": 1,
                "c": len(self.channels),
            },
            "channels": [
                {"label": name, "color": colors[i % len(colors)]}
                for i, name in enumerate(self.channels)
            ],
            "levels": self.levels,
            "tile_size": {"width": self.tile_size, "height": self.tile_size},
            "pixel_size": {"x": 0.5, "y": 0.5, "z": None},
        }


def channel_values(
    image_id: int, c: int, resolution: int, w: int, h: int
) -> np.ndarray:
    """Deterministic values served for one channel of a tile."""
    return (np.arange(w * h).reshape(h, w) + 10 * c + resolution) % 120


@dataclass
class FakeOmero:
    csrf_token: ClassVar[str] = CSRF_TOKEN
    session_uuid: ClassVar[str] = SESSION_UUID
    password: ClassVar[str] = PASSWORD
    channel_values = staticmethod(channel_values)

    projects: dict[int, dict[str, Any]] = field(default_factory=dict)
    datasets: dict[int, dict[str, Any]] = field(default_factory=dict)
    project_datasets: dict[int, list[int]] = field(default_factory=dict)
    dataset_images: dict[int, list[int]] = field(default_factory=dict)
    images: dict[int, FakeImage] = field(default_factory=dict)
    orphaned: list[int] = field(default_factory=list)
    ms_pixel_buffer: bool = True
    delay: float = 0.0
    broken_channels: set[int] = field(default_factory=set)
    calls: Counter[str] = field(default_factory=Counter)
    requests: list[tuple[str, dict[str, str]]] = field(default_factory=list)
    logged_out: bool = False
    # advertised API versions, mapped to the path of their base URL
    api_versions: dict[str, str] = field(default_factory=lambda: {"0": "/api/v0/"})

    @classmethod
    def default(cls) -> FakeOmero:
        images = {
            100: FakeImage(100, "cells.tif", "uint16", channels=("DAPI", "GFP", "RFP")),
            101: FakeImage(101, "slide.svs", "uint8", 1024, 1024, levels=3),
            102: FakeImage(102, "mask.tif", "uint8", 256, 256, channels=("mask",)),
            200: FakeImage(200, "orphan.tif", "float", 64, 64, channels=("c0",)),
            201: FakeImage(
                201, "orphan-double.tif", "double", 64, 64, channels=("c0",)
            ),
            202: FakeImage(202, "orphan-int8.tif", "int8", 64, 64, channels=("c0",)),
        }
        return cls(
            projects={
                1: _container(1, "Project A", ALICE),
                2: _container(2, "Empty", BOB),
            },
            datasets={
                10: _container(10, "Dataset 1", ALICE),
                11: _container(11, "Dataset 2", BOB),
            },
            project_datasets={1: [10, 11], 2: []},
            dataset_images={10: [100, 101, 102], 11: []},
            images=images,
            orphaned=[200, 201, 202],
        )

    # ------------------------------------------------------------------ helpers

    def _count(self, name: str, request: web.Request) -> None:
        self.calls[name] += 1
        self.requests.append((name, dict(request.query)))

    async def _wait(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)

    @staticmethod
    def _page(request: web.Request, items: list[Any]) -> web.Response:
        limit = int(request.query.get("limit", 200))
        offset = int(request.query.get("offset", 0))
        return web.json_response(
            {
                "data": items[offset : offset + limit],
                "meta": {"totalCount": len(items), "limit": limit, "offset": offset},
            }
        )

    @staticmethod
    def _png(array: np.ndarray) -> web.Response:
        buffer = io.BytesIO()
        PILImage.fromarray(array).save(buffer, format="PNG")
        return web.Response(body=buffer.getvalue(), content_type="image/png")

    # ------------------------------------------------------------------ handlers

    async def api(self, request: web.Request) -> web.Response:
        self._count("api", request)
        origin = request.url.origin()
        versions = [
            {"version": version, "url:base": f"{origin}{path}"}
            for version, path in self.api_versions.items()
        ]
        return web.json_response({"data": versions})

    async def api_base(self, request: web.Request) -> web.Response:
        self._count("api_base", request)
        origin = request.url.origin()
        urls = {
            "url:token": f"{origin}/api/v0/token/",
            "url:servers": f"{origin}/api/v0/servers/",
            "url:login": f"{origin}/api/v0/login/",
        }
        for name in (
            "projects",
            "datasets",
            "images",
            "experimenters",
            "experimentergroups",
        ):
            urls[f"url:{name}"] = f"{origin}/api/v0/m/{name}/"
        return web.json_response(urls)

    async def token(self, request: web.Request) -> web.Response:
        self._count("token", request)
        return web.json_response({"data": CSRF_TOKEN})

    async def servers(self, request: web.Request) -> web.Response:
        self._count("servers", request)
        return web.json_response(
            {"data": [{"id": 1, "host": "localhost", "port": 4064, "server": "omero"}]}
        )

    async def login(self, request: web.Request) -> web.Response:
        self._count("login", request)
        if request.headers.get("X-CSRFToken") != CSRF_TOKEN:
            return web.json_response(
                {"message": "CSRF verification failed"}, status=403
            )
        form = await request.post()
        if form.get("password") != PASSWORD or form.get("server") != "1":
            return web.json_response({"message": "Login failed"}, status=403)
        return web.json_response(
            {
                "success": True,
                "eventContext": {
                    "userId": 2,
                    "userName": form.get("username"),
                    "groupId": 5,
                    "sessionUuid": SESSION_UUID,
                },
            }
        )

    async def logout(self, request: web.Request) -> web.Response:
        self._count("logout", request)
        self.logged_out = True
        return web.Response(text="")

    async def experimenters(self, request: web.Request) -> web.Response:
        self._count("experimenters", request)
        return self._page(request, [ALICE, BOB])

    async def groups(self, request: web.Request) -> web.Response:
        self._count("groups", request)
        system = {"@id": 0, "Name": "system"}
        user = {"@id": 1, "Name": "user"}
        return self._page(request, [system, user, LAB])

    async def group_members(self, request: web.Request) -> web.Response:
        self._count("group_members", request)
        group_id = int(request.match_info["id"])
        return self._page(request, [ALICE, BOB] if group_id == LAB["@id"] else [])

    async def projects_handler(self, request: web.Request) -> web.Response:
        self._count("projects", request)
        await self._wait()
        items = [
            {**p, "omero:childCount": len(self.project_datasets.get(i, []))}
            for i, p in self.projects.items()
        ]
        return self._page(request, items)

    async def project_datasets_handler(self, request: web.Request) -> web.Response:
        self._count("datasets", request)
        await self._wait()
        project_id = int(request.match_info["id"])
        if project_id not in self.projects:
            raise web.HTTPNotFound(text="Project not found")
        counts = {i: len(images) for i, images in self.dataset_images.items()}
        items = [
            {**self.datasets[i], "omero:childCount": counts.get(i, 0)}
            for i in self.project_datasets.get(project_id, [])
        ]
        return self._page(request, items)

    async def dataset_images_handler(self, request: web.Request) -> web.Response:
        self._count("images", request)
        await self._wait()
        dataset_id = int(request.match_info["id"])
        if dataset_id not in self.datasets:
            raise web.HTTPNotFound(text="Dataset not found")
        image_ids = self.dataset_images.get(dataset_id, [])
        items = [self.images[i].json_api() for i in image_ids]
        return self._page(request, items)

    async def images_handler(self, request: web.Request) -> web.Response:
        self._count("orphaned", request)
        await self._wait()
        return self._page(request, [self.images[i].json_api() for i in self.orphaned])

    async def img_data(self, request: web.Request) -> web.Response:
        self._count("img_data", request)
        image = self.images.get(int(request.match_info["id"]))
        if image is None:
            raise web.HTTPNotFound(text="Image not found")
        return web.json_response(image.img_data())

    async def thumbnail(self, request: web.Request) -> web.Response:
        self._count("thumbnail", request)
        await self._wait()
        size = int(request.match_info["size"])
        return self._png(np.full((size, size, 3), 77, dtype=np.uint8))

    async def render_region(self, request: web.Request) -> web.Response:
        self._count("render_region", request)
        if "region" in request.query:
            _, _, w, h = (int(v) for v in request.query["region"].split(","))
        else:
            _, _, _, w, h = (int(v) for v in request.query["tile"].split(","))
        tile = np.zeros((h, w, 3), dtype=np.uint8)
        tile[..., 0] = 200
        return self._png(tile)

    async def annotations(self, request: web.Request) -> web.Response:
        self._count("annotations", request)
        return web.json_response(
            {
                "annotations": [
                    {
                        "id": 1,
                        "class": "MapAnnotationI",
                        "ns": "openmicroscopy.org/omero/client/mapAnnotation",
                        "values": [
                            ["gene", "ACTB"],
                            ["gene", "TUBB"],
                            ["cell line", "HeLa"],
                        ],
                        "owner": {"id": 2},
                        "link": {"owner": {"id": 3}},
                    },
                    {
                        "id": 2,
                        "class": "TagAnnotationI",
                        "textValue": "mitosis",
                        "owner": {"id": 2},
                    },
                    {
                        "id": 3,
                        "class": "CommentAnnotationI",
                        "textValue": "nice",
                        "owner": {"id": 3},
                    },
                    {
                        "id": 4,
                        "class": "FileAnnotationI",
                        "file": {
                            "name": "results.csv",
                            "mimetype": "text/csv",
                            "size": 1024,
                        },
                    },
                    {
                        "id": 5,
                        "class": "LongAnnotationI",
                        "ns": RATING_NAMESPACE,
                        "longValue": 4,
                    },
                    {"id": 6, "class": "XmlAnnotationI"},
                ],
                "experimenters": [
                    {
                        "id": 2,
                        "firstName": "Alice",
                        "lastName": "Anders",
                        "omeName": "alice",
                    },
                    {"id": 3, "firstName": "Bob", "lastName": "Berg", "omeName": "bob"},
                ],
            }
        )

    async def tile_options(self, request: web.Request) -> web.Response:
        self._count("tile_options", request)
        if not self.ms_pixel_buffer:
            raise web.HTTPNotFound()
        return web.Response(text="")

    async def tile(self, request: web.Request) -> web.Response:
        self._count("tile", request)
        await self._wait()
        image = self.images[int(request.match_info["id"])]
        c = int(request.match_info["c"])
        if c in self.broken_channels:
            raise web.HTTPInternalServerError(text="broken channel")
        q = request.query
        w, h = int(q["w"]), int(q["h"])
        values = channel_values(image.id, c, int(q["resolution"]), w, h)
        dtype = {"uint8": ">u1", "uint16": ">u2", "int16": ">i2", "int32": ">i4",
                 "float": ">f4", "double": ">f8"}[image.pixel_type]
        return web.Response(body=values.astype(dtype).tobytes())

    def app(self) -> web.Application:
        app = web.Application()
        r = app.router
        r.add_get("/api/", self.api)
        r.add_get("/api/v0/", self.api_base)
        r.add_get("/api/v0/token/", self.token)
        r.add_get("/api/v0/servers/", self.servers)
        r.add_post("/api/v0/login/", self.login)
        r.add_post("/webclient/logout/", self.logout)
        r.add_get("/api/v0/m/experimenters/", self.experimenters)
        r.add_get("/api/v0/m/experimentergroups/", self.groups)
        r.add_get(
            "/api/v0/m/experimentergroups/{id}/experimenters/", self.group_members
        )
        r.add_get("/api/v0/m/projects/", self.projects_handler)
        r.add_get("/api/v0/m/projects/{id}/datasets/", self.project_datasets_handler)
        r.add_get("/api/v0/m/datasets/{id}/images/", self.dataset_images_handler)
        r.add_get("/api/v0/m/images/", self.images_handler)
        r.add_get("/webgateway/imgData/{id}/", self.img_data)
        r.add_get("/webgateway/render_thumbnail/{id}/{size}/", self.thumbnail)
        r.add_get("/webgateway/render_image_region/{id}/{z}/{t}/", self.render_region)
        r.add_get("/webclient/api/annotations/", self.annotations)
        r.add_route("OPTIONS", "/tile", self.tile_options)
        r.add_get("/tile/{id}/{z}/{c}/{t}", self.tile)
        return app


@pytest.fixture(autouse=True)
def _forget_clients() -> None:
    Client._clients.clear()


@pytest.fixture
def fake_omero() -> FakeOmero:
    return FakeOmero.default()


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(username="alice", password=PASSWORD)


@pytest.fixture
def serve(
    fake_omero: FakeOmero,
) -> Callable[..., AbstractAsyncContextManager[tuple[str, ClientSettings]]]:
    """Start the fake server; yields its URI and settings pointing at it."""

    @asynccontextmanager
    async def _serve(**settings: Any) -> AsyncIterator[tuple[str, ClientSettings]]:
        server = TestServer(fake_omero.app())
        await server.start_server()
        try:
            uri = str(server.make_url("")).rstrip("/")
            settings.setdefault("request_timeout", 5)
            yield uri, ClientSettings(ms_pixel_buffer_port=server.port, **settings)
        finally:
            await server.close()

    return _serve
