"""
Multi-collection document store.

Documents are JSON maps addressed by (collection, id) and stored in the
`document` table. The store offers what the onboarding workflow needs
from a document database:

- get / exists / set (overwrite or deep merge) / update / delete
- stream a whole collection, simple field queries (`where`)
- transactions: writes inside `transaction()` commit or roll back together

datetime values are persisted as ISO-8601 UTC strings.
"""

from __future__ import annotations

import copy
import logging
import operator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from core.database import get_db
from models import Document

logger = logging.getLogger(__name__)

# Collections
INVITATIONS = "invitations"
USERS = "users"
ATHLETES = "athletes"
COACH_PROFILES = "coach_profiles"
CREATOR_PROFILES = "creator_profiles"
CREATORS_INDEX = "creators_index"
CREATOR_PUBLIC = "creatorPublic"
SLUG_MAPPINGS = "secure_slug_mappings"
AUTH_IDENTITIES = "auth_identities"

_OPERATORS = {"==", "!=", "<", "<=", ">", ">=", "in", "array-contains"}


class DocumentNotFound(LookupError):
    """Raised by `update` when the target document does not exist."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} does not exist")
        self.collection = collection
        self.doc_id = doc_id


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Read a stored timestamp back (ISO string, epoch seconds/millis, or datetime)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e12 else float(value)
        parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_timestamp(value)
    if isinstance(value, dict):
        return {str(k): _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _deep_merge(base: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in incoming.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def get_field(data: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted field path inside a document; None when absent."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _matches(actual: Any, op: str, expected: Any) -> bool:
    if op == "==":
        return actual == expected
    if op == "!=":
        # Documents without the field never match, as in Firestore.
        return actual is not None and actual != expected
    if op == "in":
        return actual in expected
    if op == "array-contains":
        return isinstance(actual, list) and expected in actual
    if actual is None:
        return False
    try:
        if op == "<":
            return actual < expected
        if op == "<=":
            return actual <= expected
        if op == ">":
            return actual > expected
        return actual >= expected
    except TypeError:
        return False


@dataclass
class DocumentSnapshot:
    id: str
    data: Dict[str, Any]

    def get(self, path: str, default: Any = None) -> Any:
        value = get_field(self.data, path)
        return default if value is None else value


_SQL_COMPARISONS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def _scalar_kind(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "float"
    if isinstance(value, str):
        return "string"
    return None


def _sql_condition(field: str, op: str, expected: Any):
    """
    SQL form of a field comparison, or None when only the Python matcher
    can express it (list/map values, null, array-contains, mixed `in`).

    `data->>'field'` style accessors match the expression indexes of the
    initial migration. SQL NULL never compares equal or unequal, so
    documents without the field drop out just as in `_matches`.
    """
    parts = tuple(field.split("."))
    accessor = Document.data[parts[0]] if len(parts) == 1 else Document.data[parts]

    def typed(kind: str):
        if kind == "string":
            return accessor.as_string()
        if kind == "float":
            return accessor.as_float()
        return accessor.as_boolean()

    if op == "array-contains":
        return None
    if op == "in":
        if not isinstance(expected, list) or not expected:
            return None
        kinds = {_scalar_kind(v) for v in expected}
        if len(kinds) != 1 or kinds & {None, "boolean"}:
            return None
        return typed(kinds.pop()).in_(expected)

    kind = _scalar_kind(expected)
    if kind is None or (kind == "boolean" and op not in ("==", "!=")):
        return None
    return _SQL_COMPARISONS[op](typed(kind), expected)


def _snapshot(row: Document) -> DocumentSnapshot:
    return DocumentSnapshot(id=row.doc_id, data=copy.deepcopy(row.data or {}))


class DocumentStore:
    """Document-style access to the `document` table through one SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    def _row(self, collection: str, doc_id: str) -> Optional[Document]:
        return self.db.get(Document, (collection, doc_id))

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        if not doc_id:
            return None
        row = self._row(collection, doc_id)
        if row is None:
            return None
        return copy.deepcopy(row.data or {})

    def get_for_update(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """
        Fresh read of a document that also locks its row (SELECT ... FOR UPDATE)
        until the current transaction ends. Concurrent callers queue on the
        lock and then see the committed state.
        """
        if not doc_id:
            return None
        row = self.db.get(
            Document,
            (collection, doc_id),
            with_for_update=True,
            populate_existing=True,
        )
        if row is None:
            return None
        return copy.deepcopy(row.data or {})

    def exists(self, collection: str, doc_id: str) -> bool:
        return bool(doc_id) and self._row(collection, doc_id) is not None

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        """Create or overwrite a document; with merge=True nested maps are merged instead."""
        encoded = _encode(data)
        row = self._row(collection, doc_id)
        if row is None:
            self.db.add(Document(collection=collection, doc_id=doc_id, data=encoded))
        elif merge:
            row.data = _deep_merge(row.data or {}, encoded)
        else:
            row.data = encoded
        self.db.flush()

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Replace top-level fields of an existing document."""
        row = self._row(collection, doc_id)
        if row is None:
            raise DocumentNotFound(collection, doc_id)
        updated = copy.deepcopy(row.data or {})
        updated.update(_encode(fields))
        row.data = updated
        self.db.flush()

    def delete(self, collection: str, doc_id: str) -> bool:
        row = self._row(collection, doc_id)
        if row is None:
            return False
        self.db.delete(row)
        self.db.flush()
        return True

    def stream(self, collection: str) -> List[DocumentSnapshot]:
        rows = (
            self.db.query(Document)
            .filter(Document.collection == collection)
            .order_by(Document.doc_id)
            .all()
        )
        return [_snapshot(row) for row in rows]

    def where(
        self,
        collection: str,
        field: str,
        op: str,
        value: Any,
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        """
        Documents of `collection` whose `field` matches, id-ordered.

        Scalar comparisons run in SQL (and can use the JSON expression
        indexes); list/map values and array-contains are matched in Python.
        """
        if op not in _OPERATORS:
            raise ValueError(f"Unsupported query operator: {op}")
        expected = _encode(value)
        query = (
            self.db.query(Document)
            .filter(Document.collection == collection)
            .order_by(Document.doc_id)
        )

        condition = _sql_condition(field, op, expected)
        if condition is not None:
            query = query.filter(condition)
            if limit is not None:
                query = query.limit(limit)
            return [_snapshot(row) for row in query.all()]

        results: List[DocumentSnapshot] = []
        for row in query.all():
            if _matches(get_field(row.data or {}, field), op, expected):
                results.append(_snapshot(row))
                if limit is not None and len(results) >= limit:
                    break
        return results

    @contextmanager
    def transaction(self) -> Iterator["DocumentStore"]:
        """All writes in the block commit together, or none do."""
        try:
            yield self
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()


def get_document_store(db: Session = Depends(get_db)) -> DocumentStore:
    """FastAPI dependency: a DocumentStore bound to the request session."""
    return DocumentStore(db)
