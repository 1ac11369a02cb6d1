"""Tests for the upload engine against the fake Graph backend."""
import asyncio

import httpx
import pytest

from docpublisher.errors import InvalidPathError, RemoteApiError, UploadIncompleteError
from docpublisher.services.storage import (
    DEFAULT_CHUNK_SIZE,
    MAX_STALLED_ROUNDS,
    SIMPLE_UPLOAD_LIMIT,
    UploadEngine,
    join_path,
    validate_path,
)

from .fakes import DRIVE_PATH, make_client, resolved_repository

MiB = 1024 * 1024


class TestPaths:
    def test_validate_path_normalizes_separators(self):
        assert validate_path("/Reports\\2024//Q1/") == "Reports/2024/Q1"
        assert validate_path("") == ""

    @pytest.mark.parametrize(
        "path",
        ["Reports/a*b", "Reports/what?", "a:b", "x/../y", "./here", "Reports/ space", 'quote"d', "pipe|d"],
    )
    def test_validate_path_rejects_invalid_segments(self, path):
        with pytest.raises(InvalidPathError):
            validate_path(path)

    def test_join_path(self):
        assert join_path("Root", "", "/Sub/Dir/", None) == "Root/Sub/Dir"

    def test_chunk_size_must_be_aligned(self, graph):
        with pytest.raises(ValueError, match="multiple"):
            UploadEngine(make_client(graph), resolved_repository(), chunk_size=1000)


class TestEnsureFolder:
    @pytest.mark.asyncio
    async def test_ensure_folder_creates_each_segment_once(self, graph):
        async with make_client(graph) as client:
            engine = UploadEngine(client, resolved_repository())
            first = await engine.ensure_folder("Projects/Alpha")
            second = await engine.ensure_folder("Projects/Alpha")

        assert first == second
        assert len(graph.folder_creates) == 2
        assert graph.folder_creates[0].json() == {
            "name": "Projects",
            "folder": {},
            "@microsoft.graph.conflictBehavior": "fail",
        }
        assert set(graph.folders) == {"Projects", "Projects/Alpha"}

    @pytest.mark.asyncio
    async def test_ensure_folder_twice_with_fresh_engines_creates_once(self, graph):
        async with make_client(graph) as client:
            await UploadEngine(client, resolved_repository()).ensure_folder("Reports")
            await UploadEngine(client, resolved_repository()).ensure_folder("Reports")

        assert len(graph.folder_creates) == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_create_folder_once(self, graph):
        async with make_client(graph) as client:
            engine = UploadEngine(client, resolved_repository())
            ids = await asyncio.gather(*(engine.ensure_folder("Shared/Team") for _ in range(5)))

        assert len(set(ids)) == 1
        assert len(graph.folder_creates) == 2

    @pytest.mark.asyncio
    async def test_conflict_on_create_is_accepted(self, graph):
        graph.fail("GET", r"root:/Reports$", 404, {"error": {"message": "not found"}})
        existing = graph.add_folder("Reports")

        async with make_client(graph) as client:
            engine = UploadEngine(client, resolved_repository())
            folder_id = await engine.ensure_folder("Reports")

        assert folder_id == existing
        assert len(graph.folder_creates) == 1
        assert graph.count("GET", r"root:/Reports$") == 2

    @pytest.mark.asyncio
    async def test_empty_path_is_root(self, graph):
        async with make_client(graph) as client:
            engine = UploadEngine(client, resolved_repository())
            assert await engine.ensure_folder("") == "root"
        assert graph.calls == []

    @pytest.mark.asyncio
    async def test_check_folder_is_read_only(self, graph):
        graph.add_folder("Existing")
        async with make_client(graph) as client:
            engine = UploadEngine(client, resolved_repository())
            assert await engine.check_folder("Existing") is True
            assert await engine.check_folder("Missing/Deep") is False

        assert graph.folder_creates == []


class TestUploadRouting:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "size, session",
        [
            (SIMPLE_UPLOAD_LIMIT - 1, False),
            (SIMPLE_UPLOAD_LIMIT, False),
            (SIMPLE_UPLOAD_LIMIT + 1, True),
        ],
    )
    async def test_threshold_boundary(self, graph, size, session):
        async with make_client(graph) as client:
            engine = UploadEngine(client, resolved_repository())
            item = await engine.upload("doc.bin", b"x" * size)

        assert item.size == size
        assert len(graph.simple_uploads) == (0 if session else 1)
        assert len(graph.session_creates) == (1 if session else 0)

    @pytest.mark.asyncio
    async def test_simple_upload_request(self, graph):
        async with make_client(graph) as client:
            engine = UploadEngine(client, resolved_repository())
            item = await engine.upload("readme.md", b"# Hello", "Docs/Guides", overwrite=False)

        call = graph.simple_uploads[0]
        assert call.path == f"{DRIVE_PATH}/root:/Docs/Guides/readme.md:/content"
        assert call.params == {"@microsoft.graph.conflictBehavior": "rename"}
        assert call.headers["authorization"] == "Bearer token-1"
        assert call.body == b"# Hello"
        assert item.name == "readme.md"
        assert item.web_url.endswith("Docs/Guides/readme.md")

    @pytest.mark.asyncio
    async def test_overwrite_uses_replace(self, graph):
        async with make_client(graph) as client:
            await UploadEngine(client, resolved_repository()).upload("a.md", b"a", overwrite=True)
        assert graph.simple_uploads[0].params == {"@microsoft.graph.conflictBehavior": "replace"}

    @pytest.mark.asyncio
    async def test_ten_mib_upload_sends_every_chunk(self, graph):
        content = bytes(range(256)) * (10 * MiB // 256)

        async with make_client(graph) as client:
            engine = UploadEngine(client, resolved_repository())
            item = await engine.upload("bigdoc.md", content, overwrite=True)

        expected_chunks = -(-len(content) // DEFAULT_CHUNK_SIZE)
        assert expected_chunks == 32
        assert len(graph.session_creates) == 1
        assert graph.session_creates[0].json() == {
            "item": {"@microsoft.graph.conflictBehavior": "replace"}
        }
        chunks = graph.chunk_puts
        assert len(chunks) == expected_chunks
        assert chunks[0].headers["content-range"] == f"bytes 0-{DEFAULT_CHUNK_SIZE - 1}/{len(content)}"
        assert chunks[-1].headers["content-range"].endswith(f"-{len(content) - 1}/{len(content)}")
        assert all("authorization" not in c.headers for c in chunks)
        assert item.size == len(content)
        assert graph.items["bigdoc.md"]["id"] == item.id

    @pytest.mark.asyncio
    async def test_last_chunk_may_be_short(self, graph):
        content = b"y" * (SIMPLE_UPLOAD_LIMIT + 100)
        async with make_client(graph) as client:
            await UploadEngine(client, resolved_repository()).upload("odd.bin", content)

        last = graph.chunk_puts[-1]
        assert len(last.body) == len(content) % DEFAULT_CHUNK_SIZE

    @pytest.mark.asyncio
    async def test_early_completion_is_an_error(self, graph):
        graph.complete_early_after = 2
        async with make_client(graph) as client:
            engine = UploadEngine(client, resolved_repository())
            with pytest.raises(UploadIncompleteError):
                await engine.upload("big.bin", b"z" * (5 * MiB))

        assert len(graph.chunk_puts) == 2
        assert graph.count("DELETE", r"^/session/") == 1

    @pytest.mark.asyncio
    async def test_final_chunk_without_item_is_an_error(self, graph):
        content = b"z" * (SIMPLE_UPLOAD_LIMIT + 1)
        total_chunks = -(-len(content) // DEFAULT_CHUNK_SIZE)
        async with make_client(graph) as client:
            engine = UploadEngine(client, resolved_repository())
            original_chunk = graph._chunk

            def last_chunk_accepted(session, content_range, body):
                response = original_chunk(session, content_range, body)
                if session["chunks"] == total_chunks:
                    return httpx.Response(202, json={"nextExpectedRanges": []})
                return response

            graph._chunk = last_chunk_accepted
            with pytest.raises(UploadIncompleteError, match="no item"):
                await engine.upload("big.bin", content)

    @pytest.mark.asyncio
    async def test_failed_chunk_cancels_session(self, graph):
        graph.fail("PUT", r"^/session/", 400, {"error": {"message": "bad chunk"}})
        async with make_client(graph) as client:
            engine = UploadEngine(client, resolved_repository())
            with pytest.raises(RemoteApiError, match="bad chunk"):
                await engine.upload("big.bin", b"z" * (SIMPLE_UPLOAD_LIMIT + 1))

        assert graph.count("DELETE", r"^/session/") == 1
        assert graph.sessions == {}

    @pytest.mark.asyncio
    async def test_stored_chunk_with_lost_response_resumes_from_session_status(self, graph):
        graph.lost_chunk_responses = 1
        content = b"r" * (SIMPLE_UPLOAD_LIMIT + 1)
        total_chunks = -(-len(content) // DEFAULT_CHUNK_SIZE)

        async with make_client(graph) as client:
            item = await UploadEngine(client, resolved_repository()).upload("big.bin", content)

        assert item.size == len(content)
        # first chunk sent twice, the repeat rejected as out of range
        assert len(graph.chunk_puts) == total_chunks + 1
        assert graph.count("GET", r"^/session/") == 1
        assert graph.count("DELETE", r"^/session/") == 0

    @pytest.mark.asyncio
    async def test_session_without_progress_is_abandoned(self, graph):
        graph.stall_sessions = True
        async with make_client(graph) as client:
            engine = UploadEngine(client, resolved_repository())
            with pytest.raises(UploadIncompleteError, match="no progress"):
                await engine.upload("big.bin", b"s" * (SIMPLE_UPLOAD_LIMIT + 1))

        assert len(graph.chunk_puts) == MAX_STALLED_ROUNDS
        assert graph.count("DELETE", r"^/session/") == 1

    def test_next_offset_honours_server_ranges(self):
        assert UploadEngine._next_offset({"nextExpectedRanges": ["655360-"]}, 327680) == 655360
        assert UploadEngine._next_offset({"nextExpectedRanges": ["100-199", "50-"]}, 10) == 50
        assert UploadEngine._next_offset({}, 42) == 42

    @pytest.mark.asyncio
    async def test_invalid_file_name_is_rejected_before_any_call(self, graph):
        async with make_client(graph) as client:
            engine = UploadEngine(client, resolved_repository())
            with pytest.raises(InvalidPathError):
                await engine.upload("bad:name.md", b"x")
        assert graph.calls == []


class TestMetadata:
    @pytest.mark.asyncio
    async def test_attach_metadata_patches_fields(self, graph):
        async with make_client(graph) as client:
            engine = UploadEngine(client, resolved_repository())
            ok = await engine.attach_metadata("item-9", {"Title": "Charter"})

        assert ok is True
        assert graph.metadata["item-9"] == {"Title": "Charter"}
        assert graph.find("PATCH")[0].path == f"{DRIVE_PATH}/items/item-9/listItem/fields"

    @pytest.mark.asyncio
    async def test_attach_metadata_failure_is_reported_not_raised(self, graph):
        graph.fail("PATCH", r"listItem/fields$", 400, {"error": {"message": "Field 'X' is not recognized"}})
        async with make_client(graph) as client:
            engine = UploadEngine(client, resolved_repository())
            assert await engine.attach_metadata("item-9", {"X": 1}) is False

    @pytest.mark.asyncio
    async def test_empty_metadata_makes_no_call(self, graph):
        async with make_client(graph) as client:
            assert await UploadEngine(client, resolved_repository()).attach_metadata("item-9", {}) is True
        assert graph.calls == []
