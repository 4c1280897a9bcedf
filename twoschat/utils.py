import json


def normalize_text(s):
    if s is None:
        return ""
    return str(s)


def json_dumps(obj):
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def record_id(record):
    # Twos records use Mongo-style "_id"; accept plain "id" as well.
    if not isinstance(record, dict):
        return None
    rid = record.get("_id", record.get("id"))
    if rid is None or rid == "":
        return None
    return str(rid)


def normalize_tags(tags):
    if not tags:
        return []
    if not isinstance(tags, (list, tuple)):
        tags = [tags]
    return [str(t) for t in tags]


def scalar(value):
    """Coerce a remote field into something SQLite can bind."""
    if value is None or isinstance(value, (str, int, float)):
        return value
    return json_dumps(value)


def mask_secret(value):
    if value and len(value) > 4:
        return value[:2] + "*" * (len(value) - 4) + value[-2:]
    return value
