"""
Entity Store - document-style access to the PIR aggregate tables.

Every workflow component reads and writes entities through an
``EntityStore`` instance handed to it at construction time. Each call is
one document operation and commits on its own; there is no cross-document
transaction. Multi-entity operations (create a child, then link it on the
parent) are two sequential calls, and callers are written to tolerate a
failure between them.

Usage:
    from pirflow.services.entity_store import EntityStore

    store = EntityStore()
    pir_id = store.create("pirs", {"title": "...", ...})
    store.update("pirs", pir_id, {"status": "requested"}, expected={"status": "draft"})
    store.array_union("pirs", pir_id, "question_ids", question_id)
    questions = store.batch_get("questions", pir.question_ids)
"""

import logging
import operator
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from pirflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from pirflow.models import db
from pirflow.models.auth import User
from pirflow.models.pir import PIR, Answer, Attachment, Question, Tag

logger = logging.getLogger(__name__)

COLLECTIONS = {
    "pirs": PIR,
    "questions": Question,
    "answers": Answer,
    "attachments": Attachment,
    "tags": Tag,
    "users": User,
}

# Ceiling on ids resolved per batch request.
BATCH_SIZE = 10

# Attempts at a version-checked id-list write before giving up.
MAX_LIST_RETRIES = 5

RANGE_OPERATORS = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def _utcnow():
    return datetime.now(timezone.utc)


def _chunks(items, size):
    for start in range(0, len(items), size):
        yield items[start:start + size]


class EntityStore:
    """Keyed document API over the SQLAlchemy session."""

    def __init__(self, session=None, batch_size=BATCH_SIZE, max_list_retries=MAX_LIST_RETRIES):
        self._session = session
        self.batch_size = batch_size
        self.max_list_retries = max_list_retries

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def model_for(collection):
        model = COLLECTIONS.get(collection)
        if model is None:
            raise ValidationError(f"Unknown collection: {collection}")
        return model

    @staticmethod
    def _column(model, field):
        column = model.__table__.columns.get(field)
        if column is None:
            raise ValidationError(
                f"{model.__name__} has no field '{field}'",
                details={field: "unknown field"},
            )
        return getattr(model, field)

    def _commit(self, what):
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("Entity store commit failed: %s", what)
            raise

    # ── Reads ────────────────────────────────────────────────────────────

    def get(self, collection, entity_id):
        """Return the entity or ``None``."""
        if not entity_id:
            return None
        return self.session.get(self.model_for(collection), entity_id)

    def get_or_404(self, collection, entity_id, label=None):
        model = self.model_for(collection)
        entity = self.get(collection, entity_id)
        if entity is None:
            raise NotFoundError(resource=label or model.__name__, resource_id=entity_id)
        return entity

    def query(self, collection, filters=None, *, ranges=None, order_by=None, descending=False):
        """
        Equality/range query with an optional single sort key.

        Args:
            filters: {field: value} exact matches (``None`` matches NULL).
            ranges: iterable of (field, op, value) with op in ``<, <=, >, >=``.
            order_by: field name to sort by.
            descending: sort direction for ``order_by``.
        """
        model = self.model_for(collection)
        q = self.session.query(model)
        for field, value in (filters or {}).items():
            column = self._column(model, field)
            q = q.filter(column.is_(None) if value is None else column == value)
        for field, op, value in (ranges or ()):
            compare = RANGE_OPERATORS.get(op)
            if compare is None:
                raise ValidationError(f"Unsupported range operator: {op}")
            q = q.filter(compare(self._column(model, field), value))
        if order_by:
            column = self._column(model, order_by)
            q = q.order_by(column.desc() if descending else column.asc())
        return q.all()

    def batch_get(self, collection, ids):
        """
        Resolve a list of ids in sequential chunks of ``batch_size``.

        Missing ids are skipped. Order is not guaranteed across chunks.
        """
        model = self.model_for(collection)
        unique_ids = list(dict.fromkeys(i for i in (ids or []) if i))
        found = []
        for chunk in _chunks(unique_ids, self.batch_size):
            found.extend(self.session.query(model).filter(model.id.in_(chunk)).all())
        return found

    # ── Writes ───────────────────────────────────────────────────────────

    def create(self, collection, data):
        """Insert a new entity and return its id."""
        model = self.model_for(collection)
        for field in data:
            self._column(model, field)

        entity_id = data.get("id")
        if entity_id and self.session.get(model, entity_id) is not None:
            raise ConflictError(model.__name__, "id", entity_id)

        entity = model(**data)
        now = _utcnow()
        if "created_at" in model.__table__.columns and entity.created_at is None:
            entity.created_at = now
        if "updated_at" in model.__table__.columns:
            entity.updated_at = now
        self.session.add(entity)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.warning("Integrity error creating %s: %s", model.__name__, exc.orig)
            raise ConflictError(model.__name__, "unique key", str(exc.orig)) from exc
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("Entity store commit failed: create %s", collection)
            raise
        return entity.id

    def update(self, collection, entity_id, patch, *, expected=None):
        """
        Apply a partial update.

        Patch keys must be in the model's ``MUTABLE_FIELDS``. ``expected`` is
        a {field: value} compare-and-set precondition evaluated in the same
        UPDATE statement; when it no longer holds, ``ConflictError`` is raised
        and nothing is written.
        """
        model = self.model_for(collection)
        illegal = sorted(set(patch) - model.MUTABLE_FIELDS)
        if illegal:
            raise ValidationError(
                f"Fields not updatable on {model.__name__}: {', '.join(illegal)}",
                details={field: "not updatable" for field in illegal},
            )

        values = dict(patch)
        if "updated_at" in model.__table__.columns:
            values["updated_at"] = _utcnow()
        if "version" in model.__table__.columns:
            values["version"] = model.version + 1

        criteria = [model.id == entity_id]
        for field, value in (expected or {}).items():
            column = self._column(model, field)
            criteria.append(column.is_(None) if value is None else column == value)

        matched = self.session.query(model).filter(*criteria).update(values, synchronize_session=False)
        if not matched:
            self.session.rollback()
            if self.session.get(model, entity_id) is None:
                raise NotFoundError(resource=model.__name__, resource_id=entity_id)
            field = next(iter(expected or {"id": None}))
            raise ConflictError(model.__name__, field, (expected or {}).get(field))

        # Bulk UPDATE bypasses the identity map; the commit expires it.
        self._commit(f"update {collection}/{entity_id}")
        return self.get(collection, entity_id)

    def _mutate_list(self, collection, entity_id, field, mutate):
        model = self.model_for(collection)
        if field not in model.LIST_FIELDS:
            raise ValidationError(
                f"{model.__name__}.{field} is not a list field",
                details={field: "not a list field"},
            )
        for attempt in range(1, self.max_list_retries + 1):
            entity = self.session.get(model, entity_id, populate_existing=True)
            if entity is None:
                raise NotFoundError(resource=model.__name__, resource_id=entity_id)
            current = list(getattr(entity, field) or [])
            updated = mutate(current)
            if updated == current:
                return False

            # Conditional on the version read above so a concurrent writer's
            # change is re-read and merged instead of overwritten.
            read_version = entity.version
            matched = (
                self.session.query(model)
                .filter(model.id == entity_id, model.version == read_version)
                .update(
                    {field: updated, "version": read_version + 1, "updated_at": _utcnow()},
                    synchronize_session=False,
                )
            )
            if matched:
                self._commit(f"{field} change on {collection}/{entity_id}")
                return True

            self.session.rollback()
            logger.info(
                "Concurrent change on %s/%s.%s (attempt %d), retrying",
                collection, entity_id, field, attempt,
            )

        raise ConflictError(model.__name__, "version", read_version)

    def array_union(self, collection, entity_id, field, *values):
        """Add values with set semantics. Returns True if the list changed."""

        def _union(current):
            merged = list(current)
            for value in values:
                if value not in merged:
                    merged.append(value)
            return merged

        return self._mutate_list(collection, entity_id, field, _union)

    def array_remove(self, collection, entity_id, field, *values):
        """Remove every occurrence of values. Returns True if the list changed."""
        drop = set(values)
        return self._mutate_list(
            collection, entity_id, field,
            lambda current: [item for item in current if item not in drop],
        )

    def delete(self, collection, entity_id):
        entity = self.get_or_404(collection, entity_id)
        self.session.delete(entity)
        self._commit(f"delete {collection}/{entity_id}")
