import asyncio
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from twoschat.errors import EmptySnapshotError, IndexServiceError, PreconditionError
from twoschat.settings import SettingsStore
from twoschat.vector_store import VectorStoreService, format_data_for_vector_store


def _snapshot(n_entries=3):
    entries = [{"_id": f"e{i}", "title": f"List {i}", "lastModified": i} for i in range(n_entries)]
    posts = [
        {"_id": "p0", "entry_id": "e0", "text": "milk", "type": "checkbox", "tags": ["food"]},
        {"_id": "p1", "entry_id": "e0", "text": "eggs", "type": "checkbox"},
    ]
    return {"entries": entries, "posts": posts}


class _FakeClient:
    def __init__(self, api_key, config):
        self.api_key = api_key
        self.config = config
        self.calls = []
        self.fail_upload_at = None
        self.fail_delete_assistant = False
        self.fail_delete_files = set()

    async def upload_file(self, filename, content, purpose="assistants"):
        index = len([c for c in self.calls if c[0] == "upload_file"])
        self.calls.append(("upload_file", filename, json.loads(content), purpose))
        if self.fail_upload_at == index:
            raise IndexServiceError("upload rejected", status=500)
        return {"id": f"file-{index}"}

    async def delete_file(self, file_id):
        self.calls.append(("delete_file", file_id))
        if file_id in self.fail_delete_files:
            raise IndexServiceError("file locked", status=409)
        return {"deleted": True}

    async def create_vector_store(self, name):
        self.calls.append(("create_vector_store", name))
        return {"id": "vs_new"}

    async def delete_vector_store(self, vector_store_id):
        self.calls.append(("delete_vector_store", vector_store_id))
        return {"deleted": True}

    async def create_file_batch(self, vector_store_id, file_ids):
        self.calls.append(("create_file_batch", vector_store_id, list(file_ids)))
        return {"id": "vsfb_1"}

    async def create_assistant(self, *, instructions, model, name, tools, tool_resources):
        self.calls.append(("create_assistant", model, name, tools, tool_resources))
        return {"id": "asst_new", "name": name}

    async def delete_assistant(self, assistant_id):
        self.calls.append(("delete_assistant", assistant_id))
        if self.fail_delete_assistant:
            raise IndexServiceError("assistant gone", status=404)
        return {"deleted": True}

    async def create_thread(self, messages, tool_resources):
        self.calls.append(("create_thread", messages, tool_resources))
        return {"id": "thread_1"}


class FormatDataTests(unittest.TestCase):
    def test_chunks_are_batched_by_fifty_in_order(self):
        chunks = format_data_for_vector_store(_snapshot(120))

        self.assertEqual([len(c["entries"]) for c in chunks], [50, 50, 20])
        ids = [e["_id"] for c in chunks for e in c["entries"]]
        self.assertEqual(ids, [f"e{i}" for i in range(120)])
        self.assertTrue(all(e["content"] for c in chunks for e in c["entries"]))

    def test_content_combines_title_post_text_and_tags(self):
        entry = format_data_for_vector_store(_snapshot(1))[0]["entries"][0]

        self.assertEqual(entry["content"], "List 0\nmilk food\neggs ")
        self.assertEqual(entry["posts"][1]["url"], "")
        self.assertEqual(entry["posts"][1]["tags"], [])
        self.assertEqual(entry["posts"][0]["_id"], "p0")

    def test_scalar_tag_is_not_split_into_characters(self):
        data = {
            "entries": [{"_id": "e0", "title": "Groceries"}],
            "posts": [{"_id": "p0", "entry_id": "e0", "text": "milk", "tags": "food"}],
        }

        entry = format_data_for_vector_store(data)[0]["entries"][0]

        self.assertEqual(entry["posts"][0]["tags"], ["food"])
        self.assertEqual(entry["content"], "Groceries\nmilk food")

    def test_zero_entries_fail(self):
        with self.assertRaises(EmptySnapshotError):
            format_data_for_vector_store({"entries": [], "posts": []})


class VectorStoreServiceTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.settings = SettingsStore(str(Path(self.temp_dir.name) / "twoschat.db"))
        self.settings.set("openaiId", "sk-test")
        self.client = _FakeClient("sk-test", {})
        self.fetch = mock.AsyncMock(return_value=_snapshot(3))
        self.service = VectorStoreService(
            self.settings, client_factory=lambda _key, _config: self.client, fetch=self.fetch
        )

    def tearDown(self):
        self.temp_dir.cleanup()

    def _call_names(self):
        return [c[0] for c in self.client.calls]

    async def test_sync_provisions_resources_in_order(self):
        result = await self.service.sync_to_vector_store("user", "token")

        self.assertEqual(
            result,
            {
                "success": True,
                "vector_store_id": "vs_new",
                "assistant_id": "asst_new",
                "chunks_processed": 1,
                "file_ids": ["file-0"],
            },
        )
        self.assertEqual(
            self._call_names(),
            ["upload_file", "create_vector_store", "create_file_batch", "create_assistant"],
        )
        self.assertEqual(self.client.calls[0][1], "twos_data_0.json")
        self.assertEqual(self.client.calls[0][3], "assistants")
        self.assertEqual(self.client.calls[2], ("create_file_batch", "vs_new", ["file-0"]))
        self.assertEqual(self.settings.get("vectorStoreId"), "vs_new")
        self.assertEqual(self.settings.get("assistantId"), "asst_new")
        self.assertEqual(self.service.sync_status.get(), "success")

    async def test_assistant_is_bound_to_new_vector_store(self):
        await self.service.sync_to_vector_store("user", "token")

        _name, model, _assistant_name, tools, tool_resources = self.client.calls[-1]
        self.assertEqual(model, "gpt-4o")
        self.assertEqual(tools, [{"type": "file_search"}])
        self.assertEqual(tool_resources, {"file_search": {"vector_store_ids": ["vs_new"]}})

    async def test_sync_cleans_up_previous_resources_first(self):
        self.settings.set("assistantId", "asst_old")
        self.settings.set("vectorStoreId", "vs_old")

        await self.service.sync_to_vector_store("user", "token")

        self.assertEqual(self.client.calls[0], ("delete_assistant", "asst_old"))
        self.assertEqual(self.client.calls[1], ("delete_vector_store", "vs_old"))

    async def test_cleanup_failure_does_not_abort_sync(self):
        self.settings.set("assistantId", "asst_old")
        self.client.fail_delete_assistant = True

        result = await self.service.sync_to_vector_store("user", "token")

        self.assertTrue(result["success"])
        self.fetch.assert_awaited_once_with("user", "token")
        self.assertIn("create_assistant", self._call_names())
        self.assertEqual(self.settings.get("assistantId"), "asst_new")

    async def test_upload_files_returns_ids_in_chunk_order(self):
        chunks = format_data_for_vector_store(_snapshot(120))

        file_ids = await self.service.upload_files(chunks)

        self.assertEqual(file_ids, ["file-0", "file-1", "file-2"])
        self.assertEqual(
            [c[1] for c in self.client.calls],
            ["twos_data_0.json", "twos_data_1.json", "twos_data_2.json"],
        )

    async def test_upload_failure_stops_remaining_uploads_and_fails_sync(self):
        self.fetch.return_value = _snapshot(120)
        self.client.fail_upload_at = 1

        with self.assertRaises(IndexServiceError):
            await self.service.sync_to_vector_store("user", "token")

        self.assertEqual(self._call_names(), ["upload_file", "upload_file"])
        self.assertEqual(self.service.sync_status.get(), "error")
        self.assertEqual(self.settings.get("vectorStoreId"), "")

    async def test_empty_snapshot_fails_sync(self):
        self.fetch.return_value = {"entries": [], "posts": []}

        with self.assertRaises(EmptySnapshotError):
            await self.service.sync_to_vector_store("user", "token")

        self.assertEqual(self.service.sync_status.get(), "error")

    async def test_sync_requires_credentials(self):
        with self.assertRaises(PreconditionError):
            await self.service.sync_to_vector_store("", "")

        self.fetch.assert_not_awaited()
        self.assertEqual(self.service.sync_status.get(), "idle")

    async def test_sync_requires_api_key(self):
        self.settings.set("openaiId", "")

        with self.assertRaises(PreconditionError):
            await self.service.sync_to_vector_store("user", "token")

        self.fetch.assert_not_awaited()

    async def test_sync_uses_stored_twos_credentials(self):
        self.settings.set("twosUserId", "stored-user")
        self.settings.set("twosToken", "stored-token")

        await self.service.sync_to_vector_store()

        self.fetch.assert_awaited_once_with("stored-user", "stored-token")

    async def test_create_assistant_without_vector_store_makes_no_call(self):
        with self.assertRaises(PreconditionError) as ctx:
            await self.service.create_assistant()

        self.assertIn("sync data first", str(ctx.exception))
        self.assertEqual(self.client.calls, [])

    async def test_create_thread_defaults_to_greeting(self):
        self.settings.set("vectorStoreId", "vs_live")

        thread = await self.service.create_thread()

        self.assertEqual(thread, {"id": "thread_1"})
        _name, messages, tool_resources = self.client.calls[0]
        self.assertEqual(messages, [{"role": "user", "content": "Hello"}])
        self.assertEqual(tool_resources, {"file_search": {"vector_store_ids": ["vs_live"]}})

    async def test_create_thread_requires_vector_store(self):
        with self.assertRaises(PreconditionError):
            await self.service.create_thread("hi")

        self.assertEqual(self.client.calls, [])

    async def test_second_sync_deletes_files_from_first_sync(self):
        first = await self.service.sync_to_vector_store("user", "token")
        self.assertEqual(self.settings.get_file_ids(), first["file_ids"])

        second = await self.service.sync_to_vector_store("user", "token")

        deleted = [c[1] for c in self.client.calls if c[0] == "delete_file"]
        self.assertEqual(deleted, first["file_ids"])
        self.assertEqual(self.settings.get_file_ids(), second["file_ids"])
        self.assertNotEqual(first["file_ids"], second["file_ids"])

    async def test_files_uploaded_before_a_failure_are_tracked(self):
        self.fetch.return_value = _snapshot(120)
        self.client.fail_upload_at = 1

        with self.assertRaises(IndexServiceError):
            await self.service.sync_to_vector_store("user", "token")

        self.assertEqual(self.settings.get_file_ids(), ["file-0"])

    async def test_undeletable_files_stay_tracked_for_next_cleanup(self):
        self.settings.set_file_ids(["file-old-1", "file-old-2"])
        self.client.fail_delete_files = {"file-old-2"}

        await self.service.cleanup_existing_resources()

        self.assertEqual(
            self.client.calls,
            [("delete_file", "file-old-1"), ("delete_file", "file-old-2")],
        )
        self.assertEqual(self.settings.get_file_ids(), ["file-old-2"])

    async def test_concurrent_syncs_run_one_at_a_time(self):
        release_first = asyncio.Event()
        fetch_started = []

        async def fetch(user_id, token):
            fetch_started.append(user_id)
            if user_id == "first":
                await release_first.wait()
            return _snapshot(3)

        service = VectorStoreService(
            self.settings, client_factory=lambda _key, _config: self.client, fetch=fetch
        )
        syncs = asyncio.gather(
            service.sync_to_vector_store("first", "token"),
            service.sync_to_vector_store("second", "token"),
        )
        for _ in range(10):
            await asyncio.sleep(0)

        self.assertEqual(fetch_started, ["first"])
        self.assertEqual(self._call_names(), [])

        release_first.set()
        first, second = await syncs

        self.assertEqual(fetch_started, ["first", "second"])
        self.assertEqual(
            self._call_names(),
            [
                "upload_file",
                "create_vector_store",
                "create_file_batch",
                "create_assistant",
                "delete_assistant",
                "delete_vector_store",
                "delete_file",
                "upload_file",
                "create_vector_store",
                "create_file_batch",
                "create_assistant",
            ],
        )
        self.assertEqual(self.settings.get_file_ids(), second["file_ids"])
        self.assertEqual(first["file_ids"], ["file-0"])
        self.assertEqual(second["file_ids"], ["file-1"])

    async def test_client_follows_rotated_api_key(self):
        service = VectorStoreService(self.settings)
        self.assertEqual(service.client().api_key, "sk-test")

        self.settings.set("openaiId", "sk-rotated")

        self.assertEqual(service.client().api_key, "sk-rotated")


if __name__ == "__main__":
    unittest.main()
