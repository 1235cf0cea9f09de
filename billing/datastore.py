"""Region router and datastore adapters.

Exactly one backend is live per deployment. Both honour the same contract:

* ``find_one`` / ``find_all`` by equality criteria
* ``upsert`` replaces the record stored under its natural key, or inserts it
* ``append_ledger`` inserts and returns ``False`` when the natural key is
  already taken, so a duplicate reads as "already processed"
* ``update_where`` is a compare-and-set used for one-way state transitions

Neither backend gives cross-collection transactions, so callers rely on
natural-key uniqueness instead of locks.
"""
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Type, TypeVar

import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core import exceptions as gexc
from google.cloud.firestore_v1.base_query import FieldFilter
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from billing.config import CN, INTL, Settings
from billing.database import Base, make_engine, make_session_factory
from billing.errors import DatastoreError
from billing.models import ROWS
from billing.schemas import PaymentRecord, Record, UserProfile

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)


class Datastore(ABC):
    region: str

    @abstractmethod
    def find_one(self, model: Type[R], **criteria: Any) -> Optional[R]:
        ...

    @abstractmethod
    def find_all(self, model: Type[R], **criteria: Any) -> List[R]:
        ...

    @abstractmethod
    def upsert(self, record: R) -> R:
        ...

    @abstractmethod
    def append_ledger(self, record: Record) -> bool:
        ...

    @abstractmethod
    def update_where(self, model: Type[Record], key: Dict[str, Any], expect: Dict[str, Any], changes: Dict[str, Any]) -> bool:
        ...

    @abstractmethod
    def remove(self, model: Type[Record], **key: Any) -> None:
        ...

    def get_user(self, user_ref: str) -> Optional[UserProfile]:
        """Resolve a user by id, falling back to email."""
        if not user_ref:
            return None
        profile = self.find_one(UserProfile, user_id=user_ref)
        if profile is None and "@" in user_ref:
            profile = self.find_one(UserProfile, email=user_ref.strip().lower())
        return profile

    def get_payment(self, order_id: str) -> Optional[PaymentRecord]:
        return self.find_one(PaymentRecord, order_id=order_id)

    def find_payment(self, reference: str) -> Optional[PaymentRecord]:
        """Look a payment up by any identifier a client or provider may send back."""
        for field in ("order_id", "provider_ref", "provider_transaction_id"):
            payment = self.find_one(PaymentRecord, **{field: reference})
            if payment is not None:
                return payment
        return None

    def replace_payment(self, payment: PaymentRecord) -> PaymentRecord:
        return self.upsert(payment)

    def close(self) -> None:
        pass


class SqlDatastore(Datastore):
    region = INTL

    def __init__(self, session_factory):
        self.SessionLocal = session_factory

    @contextmanager
    def _session(self):
        db = self.SessionLocal()
        try:
            yield db
        except IntegrityError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("sql datastore failure")
            raise DatastoreError(str(exc)) from exc
        finally:
            db.close()

    @staticmethod
    def _to_record(model, row):
        return model.model_validate(row) if row is not None else None

    def find_one(self, model, **criteria):
        with self._session() as db:
            row = db.query(ROWS[model]).filter_by(**criteria).first()
            return self._to_record(model, row)

    def find_all(self, model, **criteria):
        with self._session() as db:
            rows = db.query(ROWS[model]).filter_by(**criteria).all()
            return [self._to_record(model, row) for row in rows]

    def _write(self, db, record):
        table = ROWS[type(record)]
        data = record.model_dump()
        row = db.query(table).filter_by(**record.key()).first()
        if row is None:
            db.add(table(**data))
        else:
            for name, value in data.items():
                setattr(row, name, value)
        db.commit()

    def upsert(self, record):
        with self._session() as db:
            try:
                self._write(db, record)
            except IntegrityError:
                # lost an insert race on the natural key; the row exists now
                db.rollback()
                try:
                    self._write(db, record)
                except IntegrityError as exc:
                    db.rollback()
                    logger.exception("sql upsert failed twice")
                    raise DatastoreError(str(exc)) from exc
        return record

    def append_ledger(self, record):
        table = ROWS[type(record)]
        with self._session() as db:
            if db.query(table).filter_by(**record.key()).first() is not None:
                return False
            db.add(table(**record.model_dump()))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
        return True

    def update_where(self, model, key, expect, changes):
        with self._session() as db:
            count = db.query(ROWS[model]).filter_by(**key, **expect).update(changes, synchronize_session=False)
            db.commit()
            return count > 0

    def remove(self, model, **key):
        with self._session() as db:
            db.query(ROWS[model]).filter_by(**key).delete(synchronize_session=False)
            db.commit()


class FirestoreDatastore(Datastore):
    """Document backend: each record lives under a document id built from its natural key."""

    region = CN

    def __init__(self, client):
        self.client = client

    def _collection(self, model):
        return self.client.collection(model.__collection__)

    @contextmanager
    def _guard(self):
        try:
            yield
        except gexc.GoogleAPIError as exc:
            logger.exception("firestore datastore failure")
            raise DatastoreError(str(exc)) from exc

    def _query(self, model, criteria):
        query = self._collection(model)
        for name, value in criteria.items():
            query = query.where(filter=FieldFilter(name, "==", value))
        return query

    def find_one(self, model, **criteria):
        with self._guard():
            if criteria and set(criteria) == set(model.__key__):
                snapshot = self._collection(model).document(model.document_id(**criteria)).get()
                return model(**snapshot.to_dict()) if snapshot.exists else None
            for snapshot in self._query(model, criteria).limit(1).stream():
                return model(**snapshot.to_dict())
        return None

    def find_all(self, model, **criteria):
        with self._guard():
            return [model(**snapshot.to_dict()) for snapshot in self._query(model, criteria).stream()]

    def upsert(self, record):
        with self._guard():
            self._collection(type(record)).document(record.document_id(**record.key())).set(record.model_dump())
        return record

    def append_ledger(self, record):
        with self._guard():
            try:
                self._collection(type(record)).document(record.document_id(**record.key())).create(record.model_dump())
            except gexc.AlreadyExists:
                return False
        return True

    def update_where(self, model, key, expect, changes):
        with self._guard():
            ref = self._collection(model).document(model.document_id(**key))
            snapshot = ref.get()
            if not snapshot.exists:
                return False
            current = snapshot.to_dict()
            if any(current.get(name) != value for name, value in expect.items()):
                return False
            try:
                ref.update(changes, option=self.client.write_option(last_update_time=snapshot.update_time))
            except (gexc.FailedPrecondition, gexc.NotFound):
                return False
        return True

    def remove(self, model, **key):
        with self._guard():
            self._collection(model).document(model.document_id(**key)).delete()


def build_datastore(settings: Settings) -> Datastore:
    """Pick the one backend this deployment talks to."""
    settings.validate_region()
    if settings.region == INTL:
        engine = make_engine(settings.database_url)
        Base.metadata.create_all(bind=engine)
        logger.info("datastore ready", extra={"region": INTL, "backend": engine.dialect.name})
        return SqlDatastore(make_session_factory(engine))

    try:
        app = firebase_admin.get_app()
    except ValueError:
        cred = (
            credentials.Certificate(settings.firebase_credentials)
            if settings.firebase_credentials
            else credentials.ApplicationDefault()
        )
        app = firebase_admin.initialize_app(cred, {"projectId": settings.firebase_project_id})
    logger.info("datastore ready", extra={"region": CN, "backend": "firestore"})
    return FirestoreDatastore(firestore.client(app))
