import json

from aiohttp import web

from .constants import (
    KEY_ASSISTANT_ID,
    KEY_INDEX_CONFIG,
    KEY_OPENAI_ID,
    KEY_TWOS_TOKEN,
    KEY_TWOS_USER_ID,
    KEY_VECTOR_STORE_ID,
)
from .errors import PreconditionError, TwosChatError
from .utils import mask_secret

_WRITABLE_SETTINGS = {KEY_OPENAI_ID, KEY_TWOS_USER_ID, KEY_TWOS_TOKEN}


def _json_response(obj, status=200):
    return web.Response(
        status=status,
        text=json.dumps(obj, ensure_ascii=False),
        content_type="application/json",
    )


def _bad_request(msg):
    return _json_response({"error": msg}, status=400)


def _error_response(exc):
    status = 400 if isinstance(exc, PreconditionError) else 502
    return _json_response({"error": str(exc)}, status=status)


async def _read_json(request):
    if not request.can_read_body:
        return {}
    try:
        payload = await request.json()
    except Exception:
        return None
    return payload if isinstance(payload, dict) else None


def setup_routes(app, cache, index, settings):
    routes = web.RouteTableDef()

    def _sanitized_settings():
        safe = settings.all()
        if KEY_OPENAI_ID in safe:
            safe[KEY_OPENAI_ID] = mask_secret(safe[KEY_OPENAI_ID])
        return safe

    @routes.get("/twoschat/health")
    async def health(_request):
        return _json_response({"ok": True, "db_path": cache.db_path})

    @routes.get("/twoschat/status")
    async def status(_request):
        return _json_response(
            {
                "sync_status": cache.sync_status.get(),
                "vector_sync_status": index.sync_status.get(),
                "counts": cache.counts(),
                "vector_store_id": settings.get(KEY_VECTOR_STORE_ID) or None,
                "assistant_id": settings.get(KEY_ASSISTANT_ID) or None,
            }
        )

    @routes.post("/twoschat/sync")
    async def sync(request):
        payload = await _read_json(request)
        if payload is None:
            return _bad_request("Invalid JSON body")
        result = await cache.replace_all(payload.get("user_id"), payload.get("token"))
        return _json_response(result, status=200 if result["success"] else 502)

    @routes.get("/twoschat/tasks")
    async def list_tasks(request):
        q = request.query.get("q", "")
        items = cache.search_tasks(q)
        return _json_response({"items": items, "total": len(items), "q": q})

    @routes.get("/twoschat/tasks/{task_id}")
    async def get_task(request):
        task = cache.get_task_by_id(request.match_info["task_id"])
        if task is None:
            return _json_response({"error": "Task not found"}, status=404)
        return _json_response(task)

    @routes.post("/twoschat/index/sync")
    async def index_sync(request):
        payload = await _read_json(request)
        if payload is None:
            return _bad_request("Invalid JSON body")
        try:
            result = await index.sync_to_vector_store(payload.get("user_id"), payload.get("token"))
        except TwosChatError as exc:
            return _error_response(exc)
        return _json_response(result)

    @routes.post("/twoschat/index/assistant")
    async def index_assistant(_request):
        try:
            assistant = await index.create_assistant()
        except TwosChatError as exc:
            return _error_response(exc)
        return _json_response(assistant, status=201)

    @routes.post("/twoschat/threads")
    async def create_thread(request):
        payload = await _read_json(request)
        if payload is None:
            return _bad_request("Invalid JSON body")
        try:
            thread = await index.create_thread(payload.get("message"))
        except TwosChatError as exc:
            return _error_response(exc)
        return _json_response(thread, status=201)

    @routes.get("/twoschat/settings")
    async def get_settings(_request):
        return _json_response(_sanitized_settings())

    @routes.put("/twoschat/settings")
    async def put_settings(request):
        payload = await _read_json(request)
        if not payload:
            return _bad_request("Request body must be a JSON object")
        unknown = sorted(set(payload) - _WRITABLE_SETTINGS - {KEY_INDEX_CONFIG})
        if unknown:
            return _bad_request(f"Unknown settings: {', '.join(unknown)}")
        for key in _WRITABLE_SETTINGS & set(payload):
            settings.set(key, str(payload[key] or "").strip())
        if isinstance(payload.get(KEY_INDEX_CONFIG), dict):
            settings.set_index_config(payload[KEY_INDEX_CONFIG])
        return _json_response(_sanitized_settings())

    app.add_routes(routes)


def create_app(cache, index, settings):
    app = web.Application()
    setup_routes(app, cache, index, settings)
    return app
