"""Registry coordinator: uniqueness across both user stores and best-effort mirroring."""

import asyncio

import pytest
from prometheus_client import REGISTRY

from chatrelay.service.auth import AuthService
from chatrelay.service.errors import (
    DuplicateUserError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from chatrelay.service import registry as registry_module
from chatrelay.service.registry import RegistryCoordinator
from chatrelay.storage.errors import ConstraintViolation, StorageError
from chatrelay.storage.memory import MemoryMirrorStore, MemoryUserStore
from chatrelay.storage.models import MirroredUser


class FailingMirror(MemoryMirrorStore):
    """Mirror whose writes fail; reads behave normally."""

    def insert_user(self, record):
        raise StorageError("mirror down", store="mirror", operation="insert")


class UnreachableMirror(MemoryMirrorStore):
    def get_user_by_email(self, email):
        raise StorageError("mirror down", store="mirror", operation="find")

    def insert_user(self, record):
        raise StorageError("mirror down", store="mirror", operation="insert")


class FailingPrimary(MemoryUserStore):
    def create_user(self, name, email, password_hash, **kwargs):
        raise StorageError("primary down", store="primary", operation="insert")


class RacingPrimary(MemoryUserStore):
    """Primary whose pre-check misses a concurrent insert; the unique index catches it."""

    def get_user_by_email(self, email):
        return None


@pytest.fixture
def primary():
    return MemoryUserStore()


@pytest.fixture
def mirror():
    return MemoryMirrorStore()


def _coordinator(primary, mirror, settings):
    return RegistryCoordinator(primary, mirror, AuthService(primary, settings))


@pytest.fixture
def registry(primary, mirror, settings):
    return _coordinator(primary, mirror, settings)


async def test_register_writes_both_stores_and_returns_credential(registry, primary, mirror):
    credential = await registry.register("Ann", "ann@x.com", "pw1")

    user = primary.get_user(credential.user_id)
    assert user is not None
    assert user.name == "Ann"
    assert user.email == "ann@x.com"
    assert user.password_hash != "pw1"
    mirrored = mirror.get_user_by_email("ann@x.com")
    assert mirrored is not None
    assert mirrored.password_hash == user.password_hash
    assert registry.auth.authenticate(f"Bearer {credential.access_token}").user_id == user.id


async def test_registered_user_can_login(registry):
    registered = await registry.register("Ann", "ann@x.com", "pw1")

    credential = await registry.auth.login("ann@x.com", "pw1")

    assert credential.user_id == registered.user_id


async def test_distinct_emails_all_register_and_login(registry):
    emails = [f"user{i}@example.com" for i in range(5)]
    for email in emails:
        await registry.register("User", email, f"pw-{email}")

    for email in emails:
        credential = await registry.auth.login(email, f"pw-{email}")
        assert credential.user_id


async def test_duplicate_in_primary_is_rejected(registry, primary):
    await registry.register("Ann", "ann@x.com", "pw1")

    with pytest.raises(DuplicateUserError):
        await registry.register("Other Ann", "ANN@x.com ", "pw2")

    assert len(primary.list_users()) == 1


async def test_duplicate_only_in_mirror_is_rejected(registry, primary, mirror):
    mirror.insert_user(MirroredUser(name="Legacy", email="legacy@x.com", password_hash="h"))

    with pytest.raises(DuplicateUserError):
        await registry.register("New", "legacy@x.com", "pw")

    assert primary.get_user_by_email("legacy@x.com") is None


async def test_concurrent_same_email_registers_once(primary, mirror, settings):
    registry = _coordinator(primary, mirror, settings)

    results = await asyncio.gather(
        registry.register("Ann", "ann@x.com", "pw1"),
        registry.register("Ann", "ann@x.com", "pw1"),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], DuplicateUserError)
    assert len(primary.list_users()) == 1


async def test_primary_unique_index_violation_is_duplicate(mirror, settings):
    primary = RacingPrimary()
    primary.create_user("Ann", "ann@x.com", "hash")
    registry = _coordinator(primary, mirror, settings)

    with pytest.raises(DuplicateUserError):
        await registry.register("Ann", "ann@x.com", "pw1")


async def test_mirror_write_failure_still_registers(primary, settings):
    registry = _coordinator(primary, FailingMirror(), settings)

    credential = await registry.register("Ann", "ann@x.com", "pw1")

    assert primary.get_user(credential.user_id) is not None
    assert registry.mirror_failures == 1
    login = await registry.auth.login("ann@x.com", "pw1")
    assert login.user_id == credential.user_id


async def test_unreachable_mirror_does_not_block_registration(primary, settings):
    registry = _coordinator(primary, UnreachableMirror(), settings)

    credential = await registry.register("Ann", "ann@x.com", "pw1")

    assert credential.user_id
    assert registry.mirror_failures == 1


async def test_primary_write_failure_is_store_error(mirror, settings):
    primary = FailingPrimary()
    registry = _coordinator(primary, mirror, settings)

    with pytest.raises(StoreError):
        await registry.register("Ann", "ann@x.com", "pw1")

    assert mirror.get_user_by_email("ann@x.com") is None


@pytest.mark.parametrize(
    "name,email,password",
    [("", "ann@x.com", "pw"), ("Ann", "  ", "pw"), ("Ann", "ann@x.com", "")],
)
async def test_missing_fields_are_validation_errors(registry, name, email, password):
    with pytest.raises(ValidationError):
        await registry.register(name, email, password)


async def test_lookup_reads_primary(registry):
    credential = await registry.register("Ann", "ann@x.com", "pw1")

    user = await registry.lookup("Ann@X.com")

    assert user.id == credential.user_id


async def test_lookup_ignores_mirror_only_users(registry, mirror):
    mirror.insert_user(MirroredUser(name="Legacy", email="legacy@x.com", password_hash="h"))

    with pytest.raises(NotFoundError):
        await registry.lookup("legacy@x.com")


async def test_list_users_and_mirror(registry):
    await registry.register("Ann", "ann@x.com", "pw1")
    await registry.register("Bob", "bob@x.com", "pw2")

    users = await registry.list_users()
    mirrored = await registry.list_mirrored_users()

    assert {u.email for u in users} == {"ann@x.com", "bob@x.com"}
    assert [m.email for m in mirrored] == ["ann@x.com", "bob@x.com"]


async def test_reconcile_backfills_missing_mirror_rows(primary, settings):
    failing = FailingMirror()
    registry = _coordinator(primary, failing, settings)
    await registry.register("Ann", "ann@x.com", "pw1")
    await registry.register("Bob", "bob@x.com", "pw2")

    healthy = MemoryMirrorStore()
    healthy.insert_user(MirroredUser(name="Bob", email="bob@x.com", password_hash="h"))
    registry.mirror = healthy

    preview = await registry.reconcile_mirror(dry_run=True)
    assert preview == {"checked": 2, "backfilled": 1, "failed": 0}
    assert healthy.get_user_by_email("ann@x.com") is None

    summary = await registry.reconcile_mirror()
    assert summary == {"checked": 2, "backfilled": 1, "failed": 0}
    row = healthy.get_user_by_email("ann@x.com")
    assert row is not None
    assert row.password_hash == primary.get_user_by_email("ann@x.com").password_hash


async def test_reconcile_counts_failures(primary, settings):
    registry = _coordinator(primary, FailingMirror(), settings)
    await registry.register("Ann", "ann@x.com", "pw1")

    summary = await registry.reconcile_mirror()

    assert summary == {"checked": 1, "backfilled": 0, "failed": 1}
    assert registry.mirror_failures == 2


def test_mirror_constraint_violation_is_counted(primary, settings):
    class DuplicateMirror(MemoryMirrorStore):
        def get_user_by_email(self, email):
            return None

        def insert_user(self, record):
            raise ConstraintViolation("email already exists", {"field": "email"})

    registry = _coordinator(primary, DuplicateMirror(), settings)

    credential = asyncio.run(registry.register("Ann", "ann@x.com", "pw1"))

    assert credential.user_id
    assert registry.mirror_failures == 1


async def test_reconcile_walks_every_batch(primary, mirror, settings, monkeypatch):
    monkeypatch.setattr(registry_module, "RECONCILE_BATCH_SIZE", 2)
    for i in range(5):
        primary.create_user(f"User {i}", f"user{i}@x.com", "hash")
    registry = _coordinator(primary, mirror, settings)

    summary = await registry.reconcile_mirror()

    assert summary == {"checked": 5, "backfilled": 5, "failed": 0}
    assert sorted(row.email for row in mirror.list_users()) == [
        f"user{i}@x.com" for i in range(5)
    ]


async def test_reconcile_primary_outage_is_store_error(mirror, settings):
    class UnreadablePrimary(MemoryUserStore):
        def page_users(self, after, limit):
            raise StorageError("primary down", store="primary", operation="list")

    registry = _coordinator(UnreadablePrimary(), mirror, settings)

    with pytest.raises(StoreError):
        await registry.reconcile_mirror()


async def test_mirror_failure_increments_exported_counter(primary, settings):
    before = REGISTRY.get_sample_value("chatrelay_mirror_write_failures_total")
    registry = _coordinator(primary, FailingMirror(), settings)

    await registry.register("Ann", "ann@x.com", "pw1")

    after = REGISTRY.get_sample_value("chatrelay_mirror_write_failures_total")
    assert after == before + 1
