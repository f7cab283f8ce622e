"""Shared fixtures: in-memory database and fakes for the external collaborators."""

import hashlib
import os
from datetime import datetime, timezone

os.environ.setdefault("POSTGRES_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("COLLABORATOR_BACKOFF_SECONDS", "0")

import pytest  # noqa: E402
from eth_account import Account  # noqa: E402
from redis.exceptions import WatchError  # noqa: E402

from pogpp.common.content_store import ContentMissing  # noqa: E402
from pogpp.common.db import Base, build_engine, session_factory_for  # noqa: E402
from pogpp.common.ledger import TX_DROPPED, AlreadyClaimedError, MintReceipt  # noqa: E402
from pogpp.services.auth.models import User  # noqa: E402
from pogpp.services.badges.models import BadgeClaim, BadgeOutboxEvent  # noqa: E402, F401
from pogpp.services.visits.models import Visit, VisitOutboxEvent  # noqa: E402, F401

T0 = datetime(2024, 5, 24, 10, 0, 0, tzinfo=timezone.utc)
USER_KEY = "0x" + "4c" * 32
CONTRACT = "0x00000000000000000000000000000000000b4d6e"


class FakeClock:
    """Settable clock passed to services as `clock=`."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta) -> None:
        self.now = self.now + delta


class FakeContentStore:
    """Content-addressed dict: identical bytes give the identical ref."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.puts = 0

    def put(self, data: bytes) -> str:
        self.puts += 1
        ref = "bafk" + hashlib.sha256(data).hexdigest()[:52]
        self.objects[ref] = bytes(data)
        return ref

    def get(self, ref: str) -> bytes:
        if ref not in self.objects:
            raise ContentMissing(ref)
        return self.objects[ref]


class FakeLedger:
    """One-claim-per-(address, category) contract held in memory.

    `mint_error` is raised by the next mint; with `land=True` the claim is
    recorded first, as when the transaction was mined but the caller did not
    learn about it. `tx_states` maps held transaction refs to their status;
    unknown refs read as dropped.
    """

    def __init__(self) -> None:
        self.claims: dict[tuple[str, int], MintReceipt] = {}
        self.next_token = 1
        self.mint_calls = 0
        self.mint_error: Exception | None = None
        self.land = False
        self.on_has_claimed = None
        self.tx_states: dict[str, str] = {}
        self.status_calls: list[str] = []

    def _record(self, address: str, category_id: int) -> MintReceipt:
        receipt = MintReceipt(
            token_id=str(self.next_token),
            tx_ref="0x" + f"{self.next_token:064x}",
            contract_ref=CONTRACT,
            minted_at=T0,
        )
        self.next_token += 1
        self.claims[(address.lower(), category_id)] = receipt
        return receipt

    def has_claimed(self, address: str, category_id: int) -> bool:
        if self.on_has_claimed is not None:
            hook, self.on_has_claimed = self.on_has_claimed, None
            hook()
        return (address.lower(), category_id) in self.claims

    def find_claim(self, address: str, category_id: int) -> MintReceipt | None:
        return self.claims.get((address.lower(), category_id))

    def owner_of(self, token_id: str) -> str | None:
        for (address, _), receipt in self.claims.items():
            if receipt.token_id == token_id:
                return address
        return None

    def transaction_status(self, tx_ref: str) -> str:
        self.status_calls.append(tx_ref)
        return self.tx_states.get(tx_ref, TX_DROPPED)

    def mint(self, address: str, category_id: int, token_uri: str) -> MintReceipt:
        self.mint_calls += 1
        self.last_token_uri = token_uri
        if self.mint_error is not None:
            error, self.mint_error = self.mint_error, None
            if self.land:
                self._record(address, category_id)
            raise error
        if (address.lower(), category_id) in self.claims:
            raise AlreadyClaimedError("execution reverted: Already claimed")
        return self._record(address, category_id)


class FakePipeline:
    """WATCH/MULTI/EXEC over `FakeRedis`: EXEC fails if a watched key was written."""

    def __init__(self, rdb: "FakeRedis") -> None:
        self.rdb = rdb
        self.watched: dict[str, int] = {}
        self.queued: list | None = None

    def watch(self, *keys) -> None:
        self.watched = {key: self.rdb.versions.get(key, 0) for key in keys}
        self.queued = None

    def hmget(self, key, *fields):
        if self.rdb.on_hmget is not None:
            hook, self.rdb.on_hmget = self.rdb.on_hmget, None
            hook()
        return self.rdb.hmget(key, *fields)

    def multi(self) -> None:
        self.queued = []

    def hset(self, key, mapping):
        self.queued.append(lambda: self.rdb.hset(key, mapping=mapping))

    def expire(self, key, seconds):
        self.queued.append(lambda: self.rdb.expire(key, seconds))

    def execute(self):
        changed = any(self.rdb.versions.get(key, 0) != version for key, version in self.watched.items())
        queued, self.queued, self.watched = self.queued or [], None, {}
        if changed:
            raise WatchError("watched key changed")
        return [command() for command in queued]


class FakeRedis:
    """The handful of redis-py calls the services make.

    `on_hmget` runs once inside the next transaction's read, which lets a test
    slip a concurrent writer between read and write.
    """

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.ttls: dict[str, int] = {}
        self.versions: dict[str, int] = {}
        self.on_hmget = None
        self.aborted = 0

    def _touch(self, key) -> None:
        self.versions[key] = self.versions.get(key, 0) + 1

    def hmget(self, key, *fields):
        stored = self.hashes.get(key, {})
        return [stored.get(field) for field in fields]

    def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})
        self._touch(key)

    def expire(self, key, seconds):
        self.ttls[key] = seconds
        self._touch(key)

    def transaction(self, func, *watches, value_from_callable=False):
        pipe = FakePipeline(self)
        while True:
            try:
                pipe.watch(*watches)
                value = func(pipe)
                result = pipe.execute()
                return value if value_from_callable else result
            except WatchError:
                self.aborted += 1

    def setex(self, key, seconds, value):
        self.values[key] = value
        self.ttls[key] = seconds

    def getdel(self, key):
        return self.values.pop(key, None)


@pytest.fixture()
def session_factory():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield session_factory_for(engine)
    engine.dispose()


@pytest.fixture()
def clock():
    return FakeClock(T0)


@pytest.fixture()
def content_store():
    return FakeContentStore()


@pytest.fixture()
def ledger():
    return FakeLedger()


@pytest.fixture()
def fake_redis():
    return FakeRedis()


@pytest.fixture()
def wallet():
    return Account.from_key(USER_KEY)


@pytest.fixture()
def user(session_factory, wallet):
    """User `u1` owning the test wallet."""

    with session_factory() as db:
        row = User(user_id="u1", wallet_address=wallet.address.lower(), created_at=T0)
        db.add(row)
        db.commit()
    return row
