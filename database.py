"""
Database helpers

Store handle plus the small set of document operations the API needs:
validate, insert, find, find-by-id-and-update, find-by-id-and-delete and
reference population. Errors raised here are translated to HTTP responses
in main.py.
"""

import os
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Type

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pymongo import ASCENDING, MongoClient, ReturnDocument

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "bloglist")


class ValidationError(Exception):
    """A document failed its schema rules."""

    def __init__(self, model: str, errors: Dict[str, str]):
        self.model = model
        self.errors = errors
        self.message = f"{model} validation failed: " + ", ".join(
            f"{path}: {msg}" for path, msg in errors.items()
        )
        super().__init__(self.message)


class CastError(Exception):
    """A value could not be cast to an ObjectId."""

    def __init__(self, value: Any, path: str = "_id", model: Optional[str] = None):
        self.value = value
        self.path = path
        self.message = (
            f'Cast to ObjectId failed for value "{value}" '
            f'(type {type(value).__name__}) at path "{path}"'
        )
        if model:
            self.message += f' for model "{model}"'
        super().__init__(self.message)


class DocumentNotFound(Exception):
    def __init__(self, collection: str, doc_id: Any):
        self.message = f"{collection} {doc_id} not found"
        super().__init__(self.message)


class Store:
    """Handle on one MongoDB database. Open with connect(), release with close()."""

    def __init__(self, client, name: str = DATABASE_NAME):
        self.client = client
        self.db = client[name]
        self.name = name

    @classmethod
    def connect(cls, url: Optional[str] = None, name: Optional[str] = None) -> "Store":
        return cls(MongoClient(url or DATABASE_URL), name or DATABASE_NAME)

    def __getitem__(self, collection: str):
        return self.db[collection]

    def ensure_indexes(self):
        self.db["user"].create_index([("username", ASCENDING)], unique=True)

    def close(self):
        self.client.close()


def collection_name(model: Type[BaseModel]) -> str:
    return model.__name__.lower()


def to_object_id(value: Any, path: str = "_id", model: Optional[str] = None) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise CastError(value, path, model)


def _describe(error: dict) -> str:
    # union members add their tag to loc; report the field itself
    path = str(error["loc"][0])
    kind = error["type"]
    value = error.get("input")
    min_length = (error.get("ctx") or {}).get("min_length")
    if kind == "missing" or value is None or (kind == "string_too_short" and min_length == 1):
        return f"Path `{path}` is required."
    if kind == "string_too_short":
        return f"Path `{path}` (`{value}`) is shorter than the minimum allowed length ({min_length})."
    if kind.startswith("int_") or kind.startswith("float_"):
        return f'Cast to Number failed for value "{value}" (type {type(value).__name__}) at path "{path}"'
    return f"Path `{path}` {error['msg']}."


def validate_document(model: Type[BaseModel], data: dict) -> BaseModel:
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        errors = {}
        for error in e.errors():
            path = ".".join(str(part) for part in error["loc"][:1])
            errors.setdefault(path, _describe(error))
        raise ValidationError(model.__name__, errors)


def to_storage(document: BaseModel, exclude_none: bool = True) -> dict:
    """Dump a validated model, converting reference fields to ObjectIds."""
    model = type(document)
    data = document.model_dump(exclude_none=exclude_none)
    for name, field in model.model_fields.items():
        extra = field.json_schema_extra
        if not isinstance(extra, dict) or not extra.get("ref") or data.get(name) is None:
            continue
        if isinstance(data[name], list):
            data[name] = [to_object_id(v, name, model.__name__) for v in data[name]]
        else:
            data[name] = to_object_id(data[name], name, model.__name__)
    return data


def serialize(doc: Optional[dict], exclude: Iterable[str] = ()) -> Optional[dict]:
    if not doc:
        return doc
    d = {k: v for k, v in doc.items() if k not in exclude}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for k, v in list(d.items()):
        d[k] = _plain(v)
    return d


def _plain(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return serialize(value)
    return value


def create_document(store: Store, document: BaseModel) -> dict:
    data = to_storage(document)
    result = store[collection_name(type(document))].insert_one(data)
    data["_id"] = result.inserted_id
    return data


def get_documents(store: Store, collection: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None) -> List[dict]:
    cursor = store[collection].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def find_by_id(store: Store, collection: str, doc_id: Any) -> Optional[dict]:
    return store[collection].find_one({"_id": to_object_id(doc_id, model=collection)})


def find_by_id_and_update(store: Store, model: Type[BaseModel], doc_id: Any,
                          data: dict) -> Optional[dict]:
    """Validate the merged document, then $set only the fields present in data.

    Fields given as null are written as null.
    """
    collection = collection_name(model)
    oid = to_object_id(doc_id, model=model.__name__)
    current = store[collection].find_one({"_id": oid})
    if current is None:
        return None
    merged = serialize(current)
    merged.pop("id")
    merged.update(data)
    changes = {
        k: v for k, v in to_storage(validate_document(model, merged), exclude_none=False).items()
        if k in data
    }
    if not changes:
        return current
    return store[collection].find_one_and_update(
        {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )


def find_by_id_and_delete(store: Store, collection: str, doc_id: Any) -> Optional[dict]:
    return store[collection].find_one_and_delete({"_id": to_object_id(doc_id, model=collection)})


def populate(store: Store, docs: List[dict], path: str, collection: str,
             fields: Iterable[str]) -> List[dict]:
    """Replace the ObjectId(s) at path with the referenced documents, in place."""
    ids = set()
    for doc in docs:
        value = doc.get(path)
        if isinstance(value, list):
            ids.update(value)
        elif value is not None:
            ids.add(value)
    if not ids:
        return docs
    projection = {field: 1 for field in fields}
    found = {d["_id"]: d for d in store[collection].find({"_id": {"$in": list(ids)}}, projection)}
    for doc in docs:
        value = doc.get(path)
        if isinstance(value, list):
            doc[path] = [found[v] for v in value if v in found]
        elif value is not None:
            doc[path] = found.get(value)
    return docs
