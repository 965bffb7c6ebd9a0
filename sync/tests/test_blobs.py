import unittest

from aiohttp import web
from aiohttp.test_utils import TestServer

from bakchod_sync.blobs import (
    HttpBlobStore,
    InMemoryBlobStore,
    chat_media_path,
    group_avatar_path,
    safe_filename,
)


class BlobPathTests(unittest.TestCase):
    def test_safe_filename(self):
        self.assertEqual(safe_filename("my photo (1).jpg"), "my_photo__1_.jpg")
        self.assertEqual(safe_filename(""), "file")
        self.assertEqual(safe_filename(None), "file")
        self.assertEqual(len(safe_filename("x" * 200)), 80)

    def test_paths(self):
        self.assertEqual(chat_media_path("c1", "u1", "a b.png", 42), "chatMedia/c1/u1_42_a_b.png")
        self.assertEqual(group_avatar_path("g1", "face.PNG", 7), "groups/g1/avatar_7.PNG")
        self.assertEqual(group_avatar_path("g1", None, 7), "groups/g1/avatar_7.jpg")


class InMemoryBlobStoreTests(unittest.IsolatedAsyncioTestCase):
    async def test_upload_keeps_object(self):
        blobs = InMemoryBlobStore("memory://bucket/")

        url = await blobs.upload("a/b.txt", b"hi", "text/plain")

        self.assertEqual(url, "memory://bucket/a/b.txt")
        self.assertEqual(blobs.objects["a/b.txt"], (b"hi", "text/plain"))


class HttpBlobStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.received = {}
        app = web.Application()
        app.router.add_put("/json/{path:.*}", self._put_json)
        app.router.add_put("/plain/{path:.*}", self._put_plain)
        self.server = TestServer(app)
        await self.server.start_server()

    async def asyncTearDown(self) -> None:
        await self.server.close()

    async def _put_json(self, request: web.Request) -> web.Response:
        path = request.match_info["path"]
        self.received[path] = (await request.read(), request.content_type, request.headers.get("Authorization"))
        return web.json_response({"url": f"https://cdn.example/{path}"})

    async def _put_plain(self, request: web.Request) -> web.Response:
        path = request.match_info["path"]
        self.received[path] = (await request.read(), request.content_type, None)
        return web.Response(status=201, text="stored")

    async def test_url_comes_from_response(self):
        blobs = HttpBlobStore(str(self.server.make_url("/json")), auth_token="tok")

        url = await blobs.upload("chatMedia/c1/u1_1_a.png", b"png", "image/png")

        self.assertEqual(url, "https://cdn.example/chatMedia/c1/u1_1_a.png")
        self.assertEqual(self.received["chatMedia/c1/u1_1_a.png"], (b"png", "image/png", "Bearer tok"))

    async def test_url_falls_back_to_put_location(self):
        base = str(self.server.make_url("/plain"))
        blobs = HttpBlobStore(base)

        url = await blobs.upload("x/y.bin", b"\x00\x01", "")

        self.assertEqual(url, f"{base}/x/y.bin")
        self.assertEqual(self.received["x/y.bin"][:2], (b"\x00\x01", "application/octet-stream"))


if __name__ == "__main__":
    unittest.main()
