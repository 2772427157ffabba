import hashlib
import json
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Union


def sha256_bytes(b: bytes) -> str:
    h = hashlib.sha256()
    h.update(b)
    return "sha256:" + h.hexdigest()


def sha256_file(path: Union[str, Path]) -> str:
    """Return SHA256 hash of file, or 'sha256:unknown' if the file doesn't exist."""
    p = Path(path)
    if not p.exists():
        return "sha256:unknown"
    with open(p, "rb") as f:
        return sha256_bytes(f.read())


def atomic_write_json(path: Union[str, Path], obj: dict) -> None:
    """Write JSON next to `path` then rename over it, so readers never see a partial file."""
    path = str(path)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path), prefix=".tmp.")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(obj, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise


def git_commit_short() -> str:
    try:
        return subprocess.check_output(
            ["git", "rev-parse", "--short", "HEAD"], stderr=subprocess.DEVNULL
        ).decode().strip()
    except (OSError, subprocess.CalledProcessError):
        return "unknown"
