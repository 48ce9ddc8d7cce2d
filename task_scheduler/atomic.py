"""
Atomic file operations and file locking utilities.

Collection files and the configuration file are written through
AtomicFileWriter so a crash never leaves a half-written JSON document.
FileLock guards the daemon pid file.
"""

import os
import fcntl
import hashlib
import tempfile
import time
import atexit
from pathlib import Path
from typing import Any, Optional
import json


class AtomicFileWriter:
    """
    Atomic file writer using temp file + atomic replace.

    Writes to a temporary file in the target directory first, then
    atomically replaces the target file using os.replace().
    """

    @staticmethod
    def write_json(filepath: Path, data: Any, indent: int = 2) -> str:
        """
        Atomically write JSON data to a file.

        Args:
            filepath: Target file path
            data: Data to serialize as JSON
            indent: JSON indentation level

        Returns:
            MD5 hex digest of the written content

        Raises:
            OSError: If write fails (temp file is cleaned up)
        """
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        content = json.dumps(data, indent=indent, default=str) + "\n"

        temp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                mode='w',
                dir=filepath.parent,
                prefix=f".{filepath.name}.",
                suffix='.tmp',
                delete=False
            ) as tmp_file:
                temp_path = Path(tmp_file.name)
                tmp_file.write(content)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())

            # Atomic replace (POSIX guarantees this is atomic)
            os.replace(temp_path, filepath)

        except Exception:
            if temp_path and temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    pass
            raise

        return hashlib.md5(content.encode("utf-8")).hexdigest()

    @staticmethod
    def read_json(filepath: Path, default: Any = None) -> Any:
        """
        Read JSON file with safe defaults.

        Args:
            filepath: File to read
            default: Default value if file doesn't exist or is invalid

        Returns:
            Parsed JSON data or default value
        """
        filepath = Path(filepath)

        if not filepath.exists():
            return default

        try:
            with open(filepath, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError):
            return default

    @staticmethod
    def file_hash(filepath: Path) -> Optional[str]:
        """MD5 of a file's content, or None if it cannot be read."""
        hasher = hashlib.md5()
        try:
            with open(filepath, 'rb') as f:
                for chunk in iter(lambda: f.read(4096), b''):
                    hasher.update(chunk)
        except OSError:
            return None
        return hasher.hexdigest()


class FileLock:
    """
    File-based lock using fcntl for inter-process synchronization.

    Usage:
        lock = FileLock("/path/to/scheduler.pid")
        if lock.acquire(timeout=10):
            try:
                ...
            finally:
                lock.release()
    """

    def __init__(self, lockfile: Path):
        self.lockfile = Path(lockfile)
        self.lockfile.parent.mkdir(parents=True, exist_ok=True)
        self.fd: Optional[Any] = None

    def acquire(self, timeout: float = 10.0) -> bool:
        """
        Acquire exclusive lock with timeout.

        Args:
            timeout: Maximum seconds to wait for lock

        Returns:
            True if lock acquired, False if timeout
        """
        start_time = time.time()

        while True:
            try:
                self.fd = open(self.lockfile, 'a+')
                fcntl.flock(self.fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)

                # The pid file content is the owning process id
                self.fd.seek(0)
                self.fd.truncate()
                self.fd.write(f"{os.getpid()}\n")
                self.fd.flush()

                atexit.register(self.release)
                return True

            except (IOError, BlockingIOError):
                if self.fd:
                    self.fd.close()
                    self.fd = None
                if time.time() - start_time >= timeout:
                    return False
                time.sleep(0.1)

    def release(self) -> None:
        """Release the lock and remove the lock file."""
        if self.fd:
            try:
                fcntl.flock(self.fd.fileno(), fcntl.LOCK_UN)
                self.fd.close()
            except OSError:
                pass
            finally:
                self.fd = None

            if self.lockfile.exists():
                try:
                    self.lockfile.unlink()
                except OSError:
                    pass

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Could not acquire lock: {self.lockfile}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

    def is_locked(self) -> bool:
        """
        Check if lock is currently held by another process.

        Returns:
            True if locked by another process
        """
        try:
            with open(self.lockfile, 'a') as test_fd:
                fcntl.flock(test_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                fcntl.flock(test_fd.fileno(), fcntl.LOCK_UN)
            return False
        except (IOError, BlockingIOError):
            return True
