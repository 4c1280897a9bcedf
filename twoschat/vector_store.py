import asyncio
import json
import logging

from .constants import (
    CHUNK_SIZE,
    KEY_ASSISTANT_ID,
    KEY_OPENAI_ID,
    KEY_VECTOR_STORE_ID,
    STATUS_ERROR,
    STATUS_IDLE,
    STATUS_SUCCESS,
    STATUS_SYNCING,
)
from .errors import EmptySnapshotError, PreconditionError
from .openai_client import OpenAIClient
from .state import StateCell
from .twos import fetch_twos_snapshot
from .utils import normalize_tags, normalize_text

logger = logging.getLogger("TwosChat")


def _entry_key(record):
    return record.get("_id", record.get("id"))


def format_data_for_vector_store(data: dict, chunk_size: int = CHUNK_SIZE) -> list[dict]:
    """Group entries (with their posts and a combined ``content`` field) into upload chunks."""
    entries = (data or {}).get("entries") or []
    if not entries:
        raise EmptySnapshotError("No entries found in Twos data")
    posts = (data or {}).get("posts") or []

    by_entry = {}
    for post in posts:
        by_entry.setdefault(post.get("entry_id"), []).append(post)

    formatted = []
    for entry in entries:
        entry_id = _entry_key(entry)
        entry_posts = [
            {
                "text": post.get("text"),
                "_id": _entry_key(post),
                "type": post.get("type"),
                "lastModified": post.get("lastModified"),
                "url": post.get("url") or "",
                "tags": normalize_tags(post.get("tags")),
            }
            for post in by_entry.get(entry_id, [])
        ]
        lines = [normalize_text(entry.get("title"))]
        for post in entry_posts:
            lines.append(f"{normalize_text(post['text'])} {' '.join(post['tags'])}")
        formatted.append(
            {
                "title": entry.get("title"),
                "_id": entry_id,
                "lastModified": entry.get("lastModified"),
                "posts": entry_posts,
                "content": "\n".join(lines),
            }
        )

    chunks = [
        {"entries": formatted[i : i + chunk_size]} for i in range(0, len(formatted), chunk_size)
    ]
    logger.info("Formatted chunks: %d", len(chunks))
    return chunks


class VectorStoreService:
    """Mirrors the Twos export into a hosted vector store and assistant."""

    def __init__(self, settings, client_factory=None, fetch=None):
        self.settings = settings
        self._client_factory = client_factory or OpenAIClient
        self._fetch = fetch or fetch_twos_snapshot
        self.sync_status = StateCell(STATUS_IDLE, name="vector_sync_status")
        self._sync_lock = asyncio.Lock()

    @property
    def vector_store_id(self):
        return self.settings.get(KEY_VECTOR_STORE_ID).strip() or None

    @property
    def assistant_id(self):
        return self.settings.get(KEY_ASSISTANT_ID).strip() or None

    def client(self):
        """Build a client from the current API key, or ``None`` when unset."""
        api_key = self.settings.get(KEY_OPENAI_ID).strip()
        if not api_key:
            return None
        return self._client_factory(api_key, self.settings.get_index_config())

    def _require_client(self):
        client = self.client()
        if client is None:
            raise PreconditionError("OpenAI client not initialized")
        return client

    async def cleanup_existing_resources(self, client=None):
        client = client or self._require_client()
        logger.info("Starting cleanup of existing resources...")

        existing_assistant_id = self.assistant_id
        if existing_assistant_id:
            logger.info("Deleting existing assistant: %s", existing_assistant_id)
            try:
                await client.delete_assistant(existing_assistant_id)
                self.settings.remove(KEY_ASSISTANT_ID)
            except Exception as e:
                logger.warning("Error deleting assistant %s: %s", existing_assistant_id, e)

        existing_vector_store_id = self.vector_store_id
        if existing_vector_store_id:
            logger.info("Deleting existing vector store: %s", existing_vector_store_id)
            try:
                await client.delete_vector_store(existing_vector_store_id)
                self.settings.remove(KEY_VECTOR_STORE_ID)
            except Exception as e:
                logger.warning("Error deleting vector store %s: %s", existing_vector_store_id, e)

        stale_file_ids = self.settings.get_file_ids()
        if stale_file_ids:
            logger.info("Deleting %d previously uploaded files", len(stale_file_ids))
            remaining = []
            for file_id in stale_file_ids:
                try:
                    await client.delete_file(file_id)
                except Exception as e:
                    logger.warning("Error deleting file %s: %s", file_id, e)
                    remaining.append(file_id)
            # Files that could not be deleted are retried on the next cleanup.
            self.settings.set_file_ids(remaining)

        logger.info("Cleanup completed")

    async def fetch_twos_data(self, user_id, token):
        return await self._fetch(user_id, token)

    def format_data_for_vector_store(self, data):
        return format_data_for_vector_store(data)

    async def upload_files(self, chunks, client=None):
        client = client or self._require_client()
        file_ids = []
        tracked = self.settings.get_file_ids()
        for index, chunk in enumerate(chunks):
            logger.info("Uploading file %d/%d", index + 1, len(chunks))
            payload = json.dumps(chunk, ensure_ascii=False).encode("utf-8")
            uploaded = await client.upload_file(f"twos_data_{index}.json", payload, purpose="assistants")
            file_ids.append(uploaded["id"])
            tracked.append(uploaded["id"])
            self.settings.set_file_ids(tracked)
            logger.info("File %d uploaded with ID: %s", index + 1, uploaded["id"])
        return file_ids

    async def sync_to_vector_store(self, user_id=None, token=None):
        """Rebuild the remote vector store and assistant from a fresh Twos export.

        Failures set ``sync_status`` to ``error`` and are re-raised.
        """
        client = self._require_client()
        if user_id is None and token is None:
            user_id, token = self.settings.credentials()
        if not user_id or not token:
            raise PreconditionError("Twos User ID and Token are required")

        async with self._sync_lock:
            try:
                self.sync_status.set(STATUS_SYNCING)

                await self.cleanup_existing_resources(client)

                twos_data = await self.fetch_twos_data(user_id, token)
                chunks = self.format_data_for_vector_store(twos_data)
                if not chunks:
                    raise EmptySnapshotError("No data available to sync")

                logger.info("Uploading files...")
                file_ids = await self.upload_files(chunks, client)

                config = self.settings.get_index_config()
                logger.info("Creating vector store...")
                vector_store = await client.create_vector_store(config["vector_store_name"])
                self.settings.set(KEY_VECTOR_STORE_ID, vector_store["id"])
                logger.info("Vector store created: %s", vector_store["id"])

                logger.info("Creating file batch...")
                await client.create_file_batch(vector_store["id"], file_ids)

                logger.info("Creating assistant...")
                assistant = await self.create_assistant(client)
                logger.info("Assistant created: %s", assistant["id"])
            except Exception:
                logger.exception("Error syncing to vector store")
                self.sync_status.set(STATUS_ERROR)
                raise

            self.sync_status.set(STATUS_SUCCESS)
            return {
                "success": True,
                "vector_store_id": vector_store["id"],
                "assistant_id": assistant["id"],
                "chunks_processed": len(chunks),
                "file_ids": file_ids,
            }

    def _file_search_resources(self, vector_store_id):
        return {"file_search": {"vector_store_ids": [vector_store_id]}}

    async def create_assistant(self, client=None):
        client = client or self._require_client()
        vector_store_id = self.vector_store_id
        if not vector_store_id:
            raise PreconditionError("Vector store ID not found. Please sync data first.")

        config = self.settings.get_index_config()
        assistant = await client.create_assistant(
            instructions=config["instructions"],
            model=config["model"],
            name=config["assistant_name"],
            tools=[{"type": "file_search"}],
            tool_resources=self._file_search_resources(vector_store_id),
        )
        self.settings.set(KEY_ASSISTANT_ID, assistant["id"])
        return assistant

    async def create_thread(self, initial_message=None):
        client = self.client()
        vector_store_id = self.vector_store_id
        if client is None or not vector_store_id:
            raise PreconditionError("OpenAI client or vector store ID not initialized")

        return await client.create_thread(
            messages=[{"role": "user", "content": initial_message or "Hello"}],
            tool_resources=self._file_search_resources(vector_store_id),
        )
