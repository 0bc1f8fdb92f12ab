import json
import stat
import time

import pytest

from auth.models import Credential, PendingAuthorization
from auth.token_store import (
    CredentialStoreError,
    FileCredentialStore,
    FilePendingAuthStore,
    MemoryCredentialStore,
    MemoryPendingAuthStore,
)


def _credential(expires_at: float | None = None) -> Credential:
    return Credential(
        access_token="access",
        refresh_token="refresh",
        expires_at=time.time() + 3600 if expires_at is None else expires_at,
    )


@pytest.mark.asyncio
async def test_memory_store_set_get() -> None:
    store = MemoryCredentialStore()
    credential = _credential()

    await store.set(credential)

    assert await store.get() == credential


@pytest.mark.asyncio
async def test_memory_store_get_missing() -> None:
    assert await MemoryCredentialStore().get() is None


@pytest.mark.asyncio
async def test_memory_store_delete() -> None:
    store = MemoryCredentialStore(_credential())

    await store.delete()

    assert await store.get() is None


@pytest.mark.asyncio
async def test_file_store_round_trip(tmp_path) -> None:
    store = FileCredentialStore(tmp_path / "credential.json")
    credential = _credential()

    await store.set(credential)
    loaded = await FileCredentialStore(tmp_path / "credential.json").get()

    assert loaded.access_token == "access"
    assert loaded.refresh_token == "refresh"
    assert loaded.expires_at == pytest.approx(credential.expires_at, abs=1)


@pytest.mark.asyncio
async def test_file_store_writes_iso_expiry(tmp_path) -> None:
    path = tmp_path / "credential.json"

    await FileCredentialStore(path).set(_credential(expires_at=0))

    record = json.loads(path.read_text(encoding="utf-8"))
    assert record["expires_at"] == "1970-01-01T00:00:00+00:00"


@pytest.mark.asyncio
async def test_file_store_is_private(tmp_path) -> None:
    path = tmp_path / "credential.json"

    await FileCredentialStore(path).set(_credential())

    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert list(tmp_path.iterdir()) == [path]


@pytest.mark.asyncio
async def test_file_store_replaces_whole_record(tmp_path) -> None:
    store = FileCredentialStore(tmp_path / "credential.json")
    await store.set(_credential())

    await store.set(Credential(access_token="new", expires_at=time.time() + 60))

    loaded = await store.get()
    assert loaded.access_token == "new"
    assert loaded.refresh_token is None


@pytest.mark.asyncio
async def test_file_store_delete(tmp_path) -> None:
    path = tmp_path / "credential.json"
    store = FileCredentialStore(path)
    await store.set(_credential())

    await store.delete()
    await store.delete()

    assert await store.get() is None
    assert not path.exists()


@pytest.mark.asyncio
async def test_file_store_missing_file(tmp_path) -> None:
    assert await FileCredentialStore(tmp_path / "missing.json").get() is None


@pytest.mark.asyncio
async def test_file_store_rejects_corrupt_record(tmp_path) -> None:
    path = tmp_path / "credential.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(CredentialStoreError):
        await FileCredentialStore(path).get()


@pytest.mark.asyncio
async def test_memory_pending_store_is_single_use() -> None:
    store = MemoryPendingAuthStore()
    pending = PendingAuthorization(state="state", code_verifier="verifier")
    await store.save(pending)

    assert await store.consume() == pending
    assert await store.consume() is None


@pytest.mark.asyncio
async def test_pending_store_expires_records() -> None:
    store = MemoryPendingAuthStore(ttl_seconds=10)
    await store.save(
        PendingAuthorization(state="state", code_verifier="verifier", created_at=time.time() - 60)
    )

    assert await store.consume() is None
    assert await store.consume() is None


@pytest.mark.asyncio
async def test_pending_store_keeps_latest_record() -> None:
    store = MemoryPendingAuthStore()
    await store.save(PendingAuthorization(state="first", code_verifier="v1"))
    await store.save(PendingAuthorization(state="second", code_verifier="v2"))

    pending = await store.consume()

    assert pending.state == "second"


@pytest.mark.asyncio
async def test_file_pending_store_is_single_use(tmp_path) -> None:
    path = tmp_path / "pending.json"
    store = FilePendingAuthStore(path)
    await store.save(PendingAuthorization(state="state", code_verifier="verifier"))

    pending = await FilePendingAuthStore(path).consume()

    assert pending.state == "state"
    assert pending.code_verifier == "verifier"
    assert await store.consume() is None
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_file_pending_store_clear(tmp_path) -> None:
    store = FilePendingAuthStore(tmp_path / "pending.json")
    await store.save(PendingAuthorization(state="state", code_verifier="verifier"))

    await store.clear()

    assert await store.consume() is None
