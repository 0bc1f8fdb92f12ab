from __future__ import annotations

import json
import os
import stat
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path

from auth.models import Credential, PendingAuthorization


class CredentialStoreError(RuntimeError):
    pass


def _expiry_to_iso(expires_at: float) -> str:
    return datetime.fromtimestamp(expires_at, tz=timezone.utc).isoformat()


def _expiry_from_record(raw: object) -> float:
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return float(raw)
    if isinstance(raw, str):
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    raise CredentialStoreError("Credential record has no usable expires_at.")


def credential_to_record(credential: Credential) -> dict:
    return {
        "access_token": credential.access_token,
        "refresh_token": credential.refresh_token,
        "token_type": credential.token_type,
        "expires_at": _expiry_to_iso(credential.expires_at),
    }


def credential_from_record(record: dict) -> Credential:
    access_token = record.get("access_token")
    refresh_token = record.get("refresh_token")
    if not isinstance(access_token, str) or not access_token:
        raise CredentialStoreError("Credential record is missing access_token.")
    if refresh_token is not None and not isinstance(refresh_token, str):
        raise CredentialStoreError("Credential record refresh_token must be a string.")
    try:
        expires_at = _expiry_from_record(record.get("expires_at"))
    except ValueError as error:
        raise CredentialStoreError("Credential record expires_at is not ISO-8601.") from error
    return Credential(
        access_token=access_token,
        refresh_token=refresh_token or None,
        expires_at=expires_at,
        token_type=str(record.get("token_type") or "Bearer"),
    )


def _read_json(path: Path) -> dict | None:
    if not path.exists():
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as error:
        raise CredentialStoreError(f"{path.name} is not valid JSON.") from error
    if not isinstance(raw, dict):
        raise CredentialStoreError(f"{path.name} is invalid; expected top-level JSON object.")
    return raw


def _atomic_write(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        prefix=f"{path.name}.",
        suffix=".tmp",
        dir=path.parent,
    )
    tmp_path = Path(tmp_name)

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
        os.chmod(tmp_path, stat.S_IRUSR | stat.S_IWUSR)
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


class CredentialStore(ABC):
    """Durable home of the one Credential of this session.

    ``set`` always replaces the whole record.
    """

    @abstractmethod
    async def get(self) -> Credential | None:
        raise NotImplementedError

    @abstractmethod
    async def set(self, credential: Credential) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete(self) -> None:
        raise NotImplementedError


class MemoryCredentialStore(CredentialStore):
    def __init__(self, credential: Credential | None = None) -> None:
        self._credential = credential

    async def get(self) -> Credential | None:
        return self._credential

    async def set(self, credential: Credential) -> None:
        self._credential = credential

    async def delete(self) -> None:
        self._credential = None


class FileCredentialStore(CredentialStore):
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    async def get(self) -> Credential | None:
        record = _read_json(self._path)
        if record is None:
            return None
        return credential_from_record(record)

    async def set(self, credential: Credential) -> None:
        _atomic_write(self._path, credential_to_record(credential))

    async def delete(self) -> None:
        self._path.unlink(missing_ok=True)


class PendingAuthStore(ABC):
    """Single-use holder of the one outstanding PendingAuthorization.

    ``consume`` deletes the record before returning it, whether or not it is
    still usable, so a callback can never be replayed.
    """

    def __init__(self, ttl_seconds: int = 600) -> None:
        self.ttl_seconds = ttl_seconds

    @abstractmethod
    async def save(self, pending: PendingAuthorization) -> None:
        raise NotImplementedError

    @abstractmethod
    async def _take(self) -> PendingAuthorization | None:
        raise NotImplementedError

    @abstractmethod
    async def clear(self) -> None:
        raise NotImplementedError

    async def consume(self) -> PendingAuthorization | None:
        pending = await self._take()
        if pending is None or pending.is_expired(self.ttl_seconds):
            return None
        return pending


class MemoryPendingAuthStore(PendingAuthStore):
    def __init__(self, ttl_seconds: int = 600) -> None:
        super().__init__(ttl_seconds)
        self._pending: PendingAuthorization | None = None

    async def save(self, pending: PendingAuthorization) -> None:
        self._pending = pending

    async def _take(self) -> PendingAuthorization | None:
        pending, self._pending = self._pending, None
        return pending

    async def clear(self) -> None:
        self._pending = None


class FilePendingAuthStore(PendingAuthStore):
    def __init__(self, path: str | Path, ttl_seconds: int = 600) -> None:
        super().__init__(ttl_seconds)
        self._path = Path(path)

    async def save(self, pending: PendingAuthorization) -> None:
        _atomic_write(
            self._path,
            {
                "state": pending.state,
                "code_verifier": pending.code_verifier,
                "created_at": pending.created_at,
            },
        )

    async def _take(self) -> PendingAuthorization | None:
        claimed = self._path.with_name(f"{self._path.name}.consumed")
        try:
            # Rename first: a concurrent consumer loses the race here.
            os.replace(self._path, claimed)
        except FileNotFoundError:
            return None
        try:
            record = _read_json(claimed)
        finally:
            claimed.unlink(missing_ok=True)
        if record is None:
            return None
        try:
            return PendingAuthorization(
                state=str(record["state"]),
                code_verifier=str(record["code_verifier"]),
                created_at=float(record["created_at"]),
            )
        except (KeyError, TypeError, ValueError) as error:
            raise CredentialStoreError("Pending authorization record is malformed.") from error

    async def clear(self) -> None:
        self._path.unlink(missing_ok=True)
