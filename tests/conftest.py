import base64
import copy
import hashlib
import hmac
import itertools
import json
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.x509.oid import NameOID
from fastapi.testclient import TestClient
from google.api_core import exceptions as gexc
from jose import jws

from billing.auth import CurrentUser, verify_token
from billing.config import CN, INTL, Settings
from billing.database import Base, make_engine, make_session_factory
from billing.datastore import FirestoreDatastore, SqlDatastore
from billing.entitlements import EntitlementApplier
from billing.main import create_app
from billing.providers.base import CreatedPayment, ProviderAdapter
from billing.schemas import PaymentMethod

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
WECHAT_API_V3_KEY = "0123456789abcdef0123456789abcdef"
STRIPE_SECRET = "whsec_test"


# Firestore client surface used by FirestoreDatastore


class FakeSnapshot:
    def __init__(self, doc_id, data, update_time):
        self.id = doc_id
        self._data = data
        self.exists = data is not None
        self.update_time = update_time

    def to_dict(self):
        return copy.deepcopy(self._data)


class FakeDocument:
    def __init__(self, client, collection, doc_id):
        self.client = client
        self.docs = client.data[collection]
        self.id = doc_id

    def get(self):
        data, update_time = self.docs.get(self.id, (None, None))
        return FakeSnapshot(self.id, data, update_time)

    def set(self, data):
        self.docs[self.id] = (copy.deepcopy(data), self.client.tick())

    def create(self, data):
        if self.id in self.docs:
            raise gexc.AlreadyExists(f"document {self.id} exists")
        self.set(data)

    def update(self, changes, option=None):
        if self.id not in self.docs:
            raise gexc.NotFound(f"document {self.id} missing")
        data, update_time = self.docs[self.id]
        if option is not None and option.last_update_time != update_time:
            raise gexc.FailedPrecondition("stale write")
        self.docs[self.id] = ({**data, **copy.deepcopy(changes)}, self.client.tick())

    def delete(self):
        self.docs.pop(self.id, None)


class FakeQuery:
    def __init__(self, client, collection, filters=(), limit=None):
        self.client = client
        self.collection_name = collection
        self.filters = filters
        self._limit = limit

    def where(self, filter=None):
        return FakeQuery(self.client, self.collection_name, self.filters + (filter,), self._limit)

    def limit(self, count):
        return FakeQuery(self.client, self.collection_name, self.filters, count)

    def stream(self):
        matched = 0
        for doc_id, (data, update_time) in list(self.client.data[self.collection_name].items()):
            if all(f.op_string == "==" and data.get(f.field_path) == f.value for f in self.filters):
                yield FakeSnapshot(doc_id, data, update_time)
                matched += 1
                if self._limit is not None and matched >= self._limit:
                    return


class FakeCollection(FakeQuery):
    def document(self, doc_id):
        return FakeDocument(self.client, self.collection_name, doc_id)


class FakeFirestore:
    def __init__(self):
        self.data = defaultdict(dict)
        self._clock = itertools.count(1)

    def tick(self):
        return next(self._clock)

    def collection(self, name):
        return FakeCollection(self, name)

    def write_option(self, last_update_time=None):
        return SimpleNamespace(last_update_time=last_update_time)


# keys and certificates


def _pem_private(key):
    return key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    ).decode()


def _pem_public(key):
    return key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()


def _cert(subject_key, subject, issuer_key, issuer, ca):
    name = lambda cn: x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(name(subject))
        .issuer_name(name(issuer))
        .public_key(subject_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(issuer_key, hashes.SHA256())
    )


@pytest.fixture(scope="session")
def rsa_keys():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return SimpleNamespace(
        key=key,
        private_pem=_pem_private(key),
        public_pem=_pem_public(key),
        other_private_pem=_pem_private(other),
    )


@pytest.fixture(scope="session")
def apple_chain():
    root_key = ec.generate_private_key(ec.SECP256R1())
    inter_key = ec.generate_private_key(ec.SECP256R1())
    leaf_key = ec.generate_private_key(ec.SECP256R1())
    root = _cert(root_key, "Test Apple Root", root_key, "Test Apple Root", True)
    inter = _cert(inter_key, "Test Apple WWDR", root_key, "Test Apple Root", True)
    leaf = _cert(leaf_key, "Test App Store Signing", inter_key, "Test Apple WWDR", False)
    der = lambda cert: base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode()

    def sign(payload, key=leaf_key):
        return jws.sign(
            json.dumps(payload).encode(),
            _pem_private(key),
            algorithm="ES256",
            headers={"x5c": [der(leaf), der(inter), der(root)]},
        )

    return SimpleNamespace(
        root_pem=root.public_bytes(serialization.Encoding.PEM).decode(),
        sign=sign,
        stranger_key=ec.generate_private_key(ec.SECP256R1()),
        api_key_pem=_pem_private(ec.generate_private_key(ec.SECP256R1())),
    )


def encrypt_resource(data, key=WECHAT_API_V3_KEY, nonce="abcdefghijkl", aad="transaction"):
    ciphertext = AESGCM(key.encode()).encrypt(nonce.encode(), json.dumps(data).encode(), aad.encode())
    return {
        "algorithm": "AEAD_AES_256_GCM",
        "ciphertext": base64.b64encode(ciphertext).decode(),
        "nonce": nonce,
        "associated_data": aad,
    }


def stripe_signature(payload: bytes, secret: str = STRIPE_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


# settings and stores


@pytest.fixture
def intl_settings(apple_chain):
    return Settings(
        environment="test",
        region=INTL,
        database_url="sqlite://",
        jwt_secret="test-secret",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secrets=["whsec_old", STRIPE_SECRET],
        paypal_client_id="paypal-id",
        paypal_client_secret="paypal-secret",
        paypal_webhook_id="WH-123",
        apple_issuer_id="issuer",
        apple_key_id="KEY123",
        apple_private_key=apple_chain.api_key_pem,
        apple_bundle_id="com.morntool.app",
        apple_root_cert=apple_chain.root_pem,
        log_format="console",
    )


@pytest.fixture
def cn_settings(rsa_keys, apple_chain):
    return Settings(
        environment="test",
        region=CN,
        firebase_project_id="test-project",
        jwt_secret="test-secret",
        alipay_app_id="2021000000000000",
        alipay_private_key=rsa_keys.private_pem,
        alipay_public_key=rsa_keys.public_pem,
        wechat_mch_id="1900000109",
        wechat_app_id="wx0000000000000000",
        wechat_serial_no="SERIAL123",
        wechat_private_key=rsa_keys.private_pem,
        wechat_platform_public_key=rsa_keys.public_pem,
        wechat_api_v3_key=WECHAT_API_V3_KEY,
        apple_issuer_id="issuer",
        apple_key_id="KEY123",
        apple_private_key=apple_chain.api_key_pem,
        apple_bundle_id="com.morntool.app",
        apple_root_cert=apple_chain.root_pem,
        log_format="console",
    )


@pytest.fixture
def sql_store():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield SqlDatastore(make_session_factory(engine))
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def firestore_store():
    return FirestoreDatastore(FakeFirestore())


@pytest.fixture(params=["sql", "firestore"])
def store(request):
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def applier(store):
    return EntitlementApplier(store, clock=lambda: NOW, sleep=lambda seconds: None)


# providers


def _unreachable(request):
    raise httpx.ConnectError("no network in tests", request=request)


class ScriptedProvider(ProviderAdapter):
    """Answers ``query`` from a script; the last answer repeats."""

    def __init__(self, settings, method, answers=()):
        super().__init__(settings, http=httpx.Client(transport=httpx.MockTransport(_unreachable)))
        self.method = PaymentMethod(method)
        self.answers = list(answers)
        self.created = []
        self.queries = []

    def create(self, order):
        self.created.append(order)
        return CreatedPayment(provider_ref=f"ref_{order.order_id}", redirect_url=f"https://pay.example/{order.order_id}")

    def query(self, reference):
        self.queries.append(reference)
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        return answer


def mock_http(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


@pytest.fixture
def buyer():
    return CurrentUser(user_id="user-1", email="buyer@example.com")


@pytest.fixture
def make_client(buyer):
    clients = []

    def build(settings, store, providers, user=buyer):
        fastapi_app = create_app(settings=settings, datastore=store, providers=providers)
        if user is not None:
            fastapi_app.dependency_overrides[verify_token] = lambda: user
        client = TestClient(fastapi_app)
        client.__enter__()
        clients.append((fastapi_app, client))
        return client

    yield build
    for fastapi_app, client in clients:
        client.__exit__(None, None, None)
        fastapi_app.dependency_overrides.clear()
