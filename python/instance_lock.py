"""
instance_lock.py

Single-host advisory lock for the route53 reconciler: an exclusive flock on
a marker file that also records the owning pid. A marker whose recorded pid
is no longer running is stale and gets removed before locking.
"""
from __future__ import annotations
import fcntl
import logging
import os
from typing import Optional

import psutil

from route53_records import LockBusyError

LOCK_PATH = "/var/lock/route53.lock"
OPEN_ATTEMPTS = 3

log = logging.getLogger(__name__)


def read_owner(path: str) -> Optional[int]:
    try:
        with open(path) as f:
            raw = f.read().strip()
    except OSError:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def remove_stale(path: str) -> bool:
    """Remove the marker when its recorded owner no longer runs.

    The marker is only unlinked while this process holds its flock, so a
    marker that another run has just recreated and locked is never removed.
    """
    if not os.path.exists(path):
        return False
    owner = read_owner(path)
    if owner is not None and psutil.pid_exists(owner):
        return False
    try:
        fd = os.open(path, os.O_RDONLY)
    except FileNotFoundError:
        return False
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            # a live run holds it
            return False
        try:
            same = os.fstat(fd).st_ino == os.stat(path).st_ino
        except FileNotFoundError:
            same = False
        if not same:
            return False
        os.unlink(path)
    finally:
        os.close(fd)
    log.info("Removed stale lock file %s (owner pid %s is gone)", path, owner)
    return True


class InstanceLock:
    def __init__(self, path: str = LOCK_PATH):
        self.path = path
        self.fd: Optional[int] = None

    @property
    def locked(self) -> bool:
        return self.fd is not None

    def acquire(self) -> "InstanceLock":
        remove_stale(self.path)
        for _ in range(OPEN_ATTEMPTS):
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                raise LockBusyError(self.path, read_owner(self.path))
            try:
                same = os.fstat(fd).st_ino == os.stat(self.path).st_ino
            except FileNotFoundError:
                same = False
            if not same:
                # unlinked by a concurrent stale-lock cleanup after we opened it
                os.close(fd)
                continue
            os.ftruncate(fd, 0)
            os.write(fd, f"{os.getpid()}\n".encode())
            os.fsync(fd)
            self.fd = fd
            log.debug("Acquired lock %s", self.path)
            return self
        raise LockBusyError(self.path, read_owner(self.path))

    def release(self) -> None:
        if self.fd is None:
            return
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        finally:
            os.close(self.fd)
            self.fd = None
        log.debug("Released lock %s", self.path)

    def __enter__(self) -> "InstanceLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
