from __future__ import annotations

import hashlib
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO


@dataclass(frozen=True)
class ProcessLock:
    path: Path
    pid: int


@dataclass(frozen=True)
class LockOwner:
    pid: int | None
    alive: bool


class LockHeldError(RuntimeError):
    """Another orbbot process already runs against the same ledger."""


def get_lock_dir() -> Path:
    configured = os.getenv("ORBBOT_LOCK_DIR")
    lock_dir = (
        Path(configured).expanduser()
        if configured
        else Path(tempfile.gettempdir()) / "orbbot-locks"
    )
    lock_dir.mkdir(parents=True, exist_ok=True)
    if not lock_dir.is_dir():
        raise RuntimeError(f"lock directory is not a directory: {lock_dir}")
    return lock_dir.resolve()


def lock_path_for(db_path: str) -> Path:
    scope = str(Path(db_path).expanduser().resolve())
    digest = hashlib.sha256(scope.encode()).hexdigest()[:16]
    return get_lock_dir() / f"orbbot-{digest}.lock"


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def read_lock_owner(db_path: str) -> LockOwner:
    pid_path = lock_path_for(db_path).with_suffix(".pid")
    try:
        raw = pid_path.read_text(encoding="utf-8").strip()
    except OSError:
        return LockOwner(pid=None, alive=False)
    if not raw.isdigit():
        return LockOwner(pid=None, alive=False)
    pid = int(raw)
    return LockOwner(pid=pid, alive=_pid_alive(pid))


def _write_pid_file(pid_path: Path, pid: int) -> None:
    tmp_path = pid_path.with_suffix(f".pid.{pid}.tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        handle.write(f"{pid}\n")
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, pid_path)


def _remove_pid_file_if_owned(pid_path: Path, pid: int) -> None:
    try:
        if pid_path.read_text(encoding="utf-8").strip() == str(pid):
            pid_path.unlink()
    except OSError:
        return


@contextmanager
def single_instance_lock(*, db_path: str) -> Iterator[ProcessLock]:
    """Hold an exclusive flock scoped to one ledger database for the life of the block.

    Intended for local filesystems; flock semantics over NFS vary.
    """
    import fcntl

    path = lock_path_for(db_path)
    pid_path = path.with_suffix(".pid")
    pid = os.getpid()
    fh: BinaryIO = os.fdopen(os.open(path, os.O_CREAT | os.O_RDWR), "r+b")
    acquired = False
    try:
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            acquired = True
        except OSError as exc:
            owner = read_lock_owner(db_path)
            owner_text = (
                f" owner_pid={owner.pid} owner_alive={owner.alive}" if owner.pid is not None else ""
            )
            raise LockHeldError(
                "LOCKED: another orbbot instance is running against "
                f"db_path={Path(db_path).expanduser().resolve()} lock_path={path}.{owner_text}"
            ) from exc

        _write_pid_file(pid_path, pid)
        yield ProcessLock(path=path, pid=pid)
    finally:
        if acquired:
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
            except OSError:
                pass
        fh.close()
        if acquired:
            _remove_pid_file_if_owned(pid_path, pid)
