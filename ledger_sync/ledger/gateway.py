"""
Document-store gateway for the ledger.

``LedgerGateway`` is the narrow interface the rest of the package relies on:
equality/range queries with ordering and cursor pagination, point reads,
batched merge writes, deletes, server timestamps and an append-only audit
insert. ``FirestoreLedgerGateway`` implements it on Cloud Firestore.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import logging

from ..core.exceptions import (
    BatchCommitError,
    FirestoreImportError,
    LedgerError,
    MissingIndexError,
    PermissionDeniedError,
    TransientIOError,
)


class _Sentinel:
    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return self.name


# Placeholder values translated by each gateway
SERVER_TIMESTAMP = _Sentinel("SERVER_TIMESTAMP")
DELETE_FIELD = _Sentinel("DELETE_FIELD")

# Ordering key meaning "by document id"
DOCUMENT_ID = "__name__"

# Maximum ids per ``in`` query
IN_QUERY_LIMIT = 10

Filter = Tuple[str, str, Any]


@dataclass
class LedgerDocument:
    """A document id with its data."""
    id: str
    data: Dict[str, Any]
    snapshot: Any = field(default=None, repr=False, compare=False)


@dataclass
class WriteOp:
    """One document mutation inside a batch."""
    collection: str
    doc_id: str
    data: Optional[Dict[str, Any]] = None
    delete: bool = False

    @classmethod
    def set(cls, collection: str, doc_id: str, data: Dict[str, Any]) -> "WriteOp":
        return cls(collection=collection, doc_id=doc_id, data=dict(data))

    @classmethod
    def remove(cls, collection: str, doc_id: str) -> "WriteOp":
        return cls(collection=collection, doc_id=doc_id, delete=True)


def chunked(values: Sequence[Any], size: int) -> Iterable[List[Any]]:
    """Yield consecutive slices of at most ``size`` items."""
    for start in range(0, len(values), size):
        yield list(values[start:start + size])


class LedgerGateway:
    """Abstract document-store interface."""

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        start_after: Optional[LedgerDocument] = None,
    ) -> List[LedgerDocument]:
        """Run a query. Operators: ``==``, ``>``, ``>=``, ``<``, ``<=``, ``in``."""
        raise NotImplementedError

    def get(self, collection: str, doc_id: str) -> Optional[LedgerDocument]:
        raise NotImplementedError

    def get_many(self, collection: str, doc_ids: Sequence[str]) -> List[LedgerDocument]:
        """Fetch up to ``IN_QUERY_LIMIT`` documents by id."""
        raise NotImplementedError

    def new_id(self, collection: str) -> str:
        raise NotImplementedError

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Single merge write, applied immediately."""
        raise NotImplementedError

    def commit(self, ops: Sequence[WriteOp]) -> None:
        """Apply ``ops`` atomically (merge semantics for sets)."""
        raise NotImplementedError

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        """Append a new document with a generated id."""
        raise NotImplementedError


class FirestoreLedgerGateway(LedgerGateway):
    """Cloud Firestore implementation of the ledger gateway."""

    def __init__(
        self,
        project_id: Optional[str] = None,
        credentials_path: Optional[str] = None,
        client: Any = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self.project_id = project_id
        self.credentials_path = credentials_path
        self._client = client
        self._firestore = None

    def _ensure_firestore(self):
        """Import the Firestore client lazily so it stays an optional extra."""
        if self._firestore is not None:
            return self._firestore
        try:
            from google.cloud import firestore
            from google.cloud.firestore_v1.base_query import FieldFilter
            from google.api_core import exceptions as api_exceptions
        except ImportError as e:
            self.logger.error(f"Firestore import failed: {e}")
            raise FirestoreImportError(
                "google-cloud-firestore not available. Install the firestore extra:\n"
                "  pip install 'ledger-sync[firestore]'\n"
                f"Import error details: {e}"
            )
        self._firestore = firestore
        self._FieldFilter = FieldFilter
        self._api_exceptions = api_exceptions
        return firestore

    @property
    def client(self):
        firestore = self._ensure_firestore()
        if self._client is None:
            credentials = None
            if self.credentials_path:
                from google.oauth2 import service_account
                credentials = service_account.Credentials.from_service_account_file(
                    self.credentials_path
                )
            self._client = firestore.Client(project=self.project_id, credentials=credentials)
            self.logger.debug("Firestore client created for project %s", self.project_id)
        return self._client

    # ------------------------------------------------------------------
    # Translation helpers
    # ------------------------------------------------------------------
    def _translate_error(self, exc: Exception, context: str) -> LedgerError:
        errors = self._api_exceptions
        message = f"{context}: {exc}"
        if isinstance(exc, (errors.PermissionDenied, errors.Unauthenticated)):
            return PermissionDeniedError(message, context)
        if isinstance(exc, errors.FailedPrecondition) and "index" in str(exc).lower():
            return MissingIndexError(message, context)
        return TransientIOError(message, context)

    def _api_errors(self) -> tuple:
        self._ensure_firestore()
        return (self._api_exceptions.GoogleAPICallError, self._api_exceptions.RetryError)

    def _encode(self, data: Dict[str, Any]) -> Dict[str, Any]:
        firestore = self._ensure_firestore()
        encoded: Dict[str, Any] = {}
        for key, value in data.items():
            if value is SERVER_TIMESTAMP:
                encoded[key] = firestore.SERVER_TIMESTAMP
            elif value is DELETE_FIELD:
                encoded[key] = firestore.DELETE_FIELD
            elif isinstance(value, dict):
                encoded[key] = self._encode(value)
            else:
                encoded[key] = value
        return encoded

    @staticmethod
    def _to_document(snapshot) -> LedgerDocument:
        return LedgerDocument(id=snapshot.id, data=snapshot.to_dict() or {}, snapshot=snapshot)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def query(self, collection, filters=(), order_by=None, limit=None, start_after=None):
        context = f"query {collection}"
        try:
            ref = self.client.collection(collection)
            for field_name, op, value in filters:
                if field_name == DOCUMENT_ID:
                    field_name = self._firestore.FieldPath.document_id()
                ref = ref.where(filter=self._FieldFilter(field_name, op, value))
            if order_by:
                if order_by == DOCUMENT_ID:
                    ref = ref.order_by(self._firestore.FieldPath.document_id())
                else:
                    ref = ref.order_by(order_by)
            if start_after is not None:
                cursor = start_after.snapshot
                if cursor is None:
                    cursor = self.client.collection(collection).document(start_after.id).get()
                ref = ref.start_after(cursor)
            if limit:
                ref = ref.limit(limit)
            return [self._to_document(snap) for snap in ref.stream()]
        except self._api_errors() as e:
            raise self._translate_error(e, context)

    def get(self, collection, doc_id):
        context = f"get {collection}/{doc_id}"
        try:
            snap = self.client.collection(collection).document(doc_id).get()
        except self._api_errors() as e:
            raise self._translate_error(e, context)
        if not snap.exists:
            return None
        return self._to_document(snap)

    def get_many(self, collection, doc_ids):
        if not doc_ids:
            return []
        coll = self.client.collection(collection)
        refs = [coll.document(doc_id) for doc_id in doc_ids[:IN_QUERY_LIMIT]]
        return self.query(collection, filters=[(DOCUMENT_ID, "in", refs)])

    def new_id(self, collection):
        return self.client.collection(collection).document().id

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def set(self, collection, doc_id, data):
        context = f"set {collection}/{doc_id}"
        try:
            self.client.collection(collection).document(doc_id).set(self._encode(data), merge=True)
        except self._api_errors() as e:
            raise self._translate_error(e, context)

    def commit(self, ops):
        if not ops:
            return
        batch = self.client.batch()
        for op in ops:
            ref = self.client.collection(op.collection).document(op.doc_id)
            if op.delete:
                batch.delete(ref)
            else:
                batch.set(ref, self._encode(op.data or {}), merge=True)
        try:
            batch.commit()
        except self._api_errors() as e:
            translated = self._translate_error(e, f"commit {len(ops)} writes")
            if isinstance(translated, PermissionDeniedError):
                raise translated
            raise BatchCommitError(str(translated), translated.context)

    def add(self, collection, data):
        context = f"add {collection}"
        try:
            _, ref = self.client.collection(collection).add(self._encode(data))
        except self._api_errors() as e:
            raise self._translate_error(e, context)
        return ref.id
