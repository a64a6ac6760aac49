# cache.py
from __future__ import annotations

import hashlib
import io
import os
import platform
import re
import subprocess
import tarfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote, unquote

import structlog

from .errors import CacheError
from .git_facts.git import current_branch, head_sha

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Keyed blob cache:
#   key  = rendered template, e.g.
#          cargo-v1-{{ checksum "Cargo.lock" }}-{{ arch }}
#   blob = tar.gz of the paths a `save_cache` step declared
#
# Entries are immutable once written by `save`; `put` overwrites.
# Restoring tries each key exactly, then as a prefix (newest wins).
#
# Layout:
#   root/
#     <url-quoted key>.tar.gz
#     +<sha256 of key>.tar.gz   keys too long for a file name
#     +<sha256 of key>.key      the original key for the entry above
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".dagci/cache"
ARTIFACT_SUFFIX = ".tar.gz"
KEY_SUFFIX = ".key"

# quoted names longer than this are stored under a hash; "+" is always
# quoted, so hashed names cannot collide with quoted ones
_MAX_NAME = 200
_HASHED_PREFIX = "+"

_TEMPLATE_RE = re.compile(r"\{\{\s*(.*?)\s*\}\}")
_CHECKSUM_RE = re.compile(r'^checksum\s+"([^"]+)"$')


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable


# ---------------------------------------------------------------------
# Key templates
# ---------------------------------------------------------------------

def _sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _arch() -> str:
    return f"{platform.machine() or 'unknown'}-{platform.system().lower() or 'unknown'}"


def render_cache_key(
    template: str,
    *,
    workdir: str | Path = ".",
    env: Optional[Dict[str, str]] = None,
    revision: Optional[Callable[[], str]] = None,
    branch: Optional[Callable[[], str]] = None,
) -> str:
    """
    Expand `{{ ... }}` placeholders in a cache key.

    Supported:
      {{ checksum "path" }}    sha256 of a file relative to workdir
      {{ arch }}               machine + OS
      {{ .Revision }}          git HEAD sha
      {{ .Branch }}            current git branch
      {{ .Environment.NAME }}  environment variable
      {{ epoch }}              unix time in seconds

    A missing checksum file or an unknown placeholder raises CacheError.
    """
    root = Path(workdir)
    merged_env = dict(os.environ)
    merged_env.update(env or {})

    def expand(match: re.Match) -> str:
        expr = match.group(1)

        m = _CHECKSUM_RE.match(expr)
        if m:
            path = root / m.group(1)
            if not path.is_file():
                raise CacheError(f"cannot checksum missing file: {m.group(1)}")
            try:
                return _sha256_file(path)
            except OSError as e:
                raise CacheError(f"cannot checksum {m.group(1)}: {e}") from e

        if expr == "arch":
            return _arch()
        if expr == "epoch":
            return str(int(time.time()))
        try:
            if expr == ".Revision":
                return (revision or (lambda: head_sha(root)))()
            if expr == ".Branch":
                return (branch or (lambda: current_branch(root)))()
        except (subprocess.CalledProcessError, OSError) as e:
            raise CacheError(f"cannot resolve {expr}: {e}") from e
        if expr.startswith(".Environment."):
            return merged_env.get(expr[len(".Environment."):], "")

        raise CacheError(f"unknown cache key placeholder: {{{{ {expr} }}}}")

    return _TEMPLATE_RE.sub(expand, template)


# ---------------------------------------------------------------------
# Tar helpers
# ---------------------------------------------------------------------
# Archive members are prefixed so restore knows where they belong:
#   rel/<path>  relative to the job's working directory
#   abs/<path>  absolute path on the machine (e.g. /root/.cargo)

_REL = "rel/"
_ABS = "abs/"


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def pack_paths(paths: Iterable[str], root: str | Path) -> bytes:
    """
    Tar+gzip files/dirs into a blob. Missing paths are skipped.
    """
    base = Path(root).resolve()
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for entry in paths:
            src = Path(os.path.expanduser(entry))
            absolute = src.is_absolute()
            if not absolute:
                src = base / src
            if not src.exists():
                logger.debug("cache_path_missing", path=entry)
                continue

            files = [src] if src.is_file() else list(_iter_files_under(src))
            for f in files:
                if absolute:
                    arcname = _ABS + f.as_posix().lstrip("/")
                else:
                    arcname = _REL + Path(os.path.relpath(f, base)).as_posix()
                tar.add(str(f), arcname=arcname, recursive=False)
    return buf.getvalue()


def unpack_blob(blob: bytes, dest: str | Path, *, absolute_root: str | Path = "/") -> List[str]:
    """
    Extract a blob produced by `pack_paths`.

    `rel/` members go under `dest`, `abs/` members under `absolute_root`.
    Returns the restored paths as they were packed.
    """
    targets = {_REL: Path(dest).resolve(), _ABS: Path(absolute_root)}
    restored: List[str] = []
    try:
        with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
            for member in tar.getmembers():
                prefix = member.name[:4]
                if prefix not in targets:
                    raise CacheError(f"unexpected archive member: {member.name}")
                member.name = member.name[4:]
                tar.extract(member, path=str(targets[prefix]), filter="data")
                restored.append(member.name)
    except (tarfile.TarError, OSError) as e:
        raise CacheError(f"corrupt cache blob: {e}") from e
    return restored


# ---------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------

class CacheStore:
    """
    File-based keyed blob store.

    Writes go to a temp file and are renamed into place, so concurrent
    puts of distinct keys never observe each other's partial files.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheError(f"cannot create cache dir {self.root}: {e}") from e

    def _stem(self, key: str) -> str:
        if not key:
            raise CacheError("cache key must not be empty")
        quoted = quote(key, safe="")
        if len(quoted) <= _MAX_NAME:
            return quoted
        return _HASHED_PREFIX + hashlib.sha256(key.encode("utf-8")).hexdigest()

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{self._stem(key)}{ARTIFACT_SUFFIX}"

    def _key_path(self, stem: str) -> Path:
        return self.root / f"{stem}{KEY_SUFFIX}"

    def _write_atomic(self, path: Path, data: bytes) -> None:
        # short name: the target may already be near the file name limit
        tmp = path.with_name(f".tmp-{os.getpid()}-{threading.get_ident()}-{time.monotonic_ns()}")
        try:
            tmp.write_bytes(data)
            tmp.replace(path)
        finally:
            tmp.unlink(missing_ok=True)

    def _key_of(self, artifact: Path) -> Optional[str]:
        stem = artifact.name[: -len(ARTIFACT_SUFFIX)]
        if not stem.startswith(_HASHED_PREFIX):
            return unquote(stem)
        try:
            return self._key_path(stem).read_text(encoding="utf-8")
        except FileNotFoundError:
            # pruned, or a put that has not written its key yet
            return None

    # ---- raw blob API ----

    def get(self, key: str) -> Optional[bytes]:
        """Return the blob stored under `key`, or None on a miss."""
        path = self.artifact_path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheError(f"cannot read cache entry {key!r}: {e}") from e

    def put(self, key: str, blob: bytes) -> None:
        """Store `blob` under `key`, overwriting any existing entry."""
        stem = self._stem(key)
        try:
            if stem.startswith(_HASHED_PREFIX):
                self._write_atomic(self._key_path(stem), key.encode("utf-8"))
            self._write_atomic(self.artifact_path(key), blob)
        except OSError as e:
            raise CacheError(f"cannot write cache entry {key!r}: {e}") from e

    def exists(self, key: str) -> bool:
        try:
            return self.artifact_path(key).exists()
        except OSError as e:
            raise CacheError(f"cannot stat cache entry {key!r}: {e}") from e

    def keys(self) -> List[str]:
        """Stored keys, newest first. Entries removed while listing are skipped."""
        entries = []
        try:
            for path in self.root.glob(f"*{ARTIFACT_SUFFIX}"):
                try:
                    mtime = path.stat().st_mtime
                except FileNotFoundError:
                    continue
                key = self._key_of(path)
                if key is not None:
                    entries.append((mtime, key))
        except OSError as e:
            raise CacheError(f"cannot list cache dir {self.root}: {e}") from e
        entries.sort(key=lambda e: e[0], reverse=True)
        return [key for _mtime, key in entries]

    def lookup(self, key: str) -> Optional[str]:
        """Exact match first, then the newest stored key starting with `key`."""
        if self.exists(key):
            return key
        for stored in self.keys():
            if stored.startswith(key):
                return stored
        return None

    # ---- path-level API used by steps ----

    def restore(self, keys: Iterable[str], dest: str | Path) -> CacheHit:
        """
        Restore the first matching key into `dest`.

        Keys are tried in order; a miss on every key is not an error.
        """
        tried: List[str] = []
        for key in keys:
            tried.append(key)
            found = self.lookup(key)
            if found is None:
                continue
            blob = self.get(found)
            if blob is None:
                # pruned between lookup and read
                continue
            unpack_blob(blob, dest)
            how = "exact" if found == key else f"prefix {key!r}"
            return CacheHit(hit=True, key=found, reason=f"restored {found} ({how})")
        return CacheHit(hit=False, key=tried[0] if tried else "", reason="cache miss")

    def save(self, key: str, paths: Iterable[str], root: str | Path) -> Tuple[bool, str]:
        """
        Save `paths` under `key`. Returns (saved, reason).

        An existing entry is kept as-is.
        """
        if self.exists(key):
            return False, f"key {key} already exists, skipping"
        try:
            blob = pack_paths(paths, root)
        except (tarfile.TarError, OSError) as e:
            raise CacheError(f"cannot pack cache entry {key!r}: {e}") from e
        self.put(key, blob)
        return True, f"saved {key} ({len(blob)} bytes)"

    def prune(self, keep: int = 5) -> List[str]:
        """
        Keep only the newest N entries. Returns removed keys.
        Uses file mtime as "newest".
        """
        removed: List[str] = []
        for key in self.keys()[keep:]:
            stem = self._stem(key)
            try:
                self.artifact_path(key).unlink(missing_ok=True)
                self._key_path(stem).unlink(missing_ok=True)
            except OSError as e:
                raise CacheError(f"cannot remove cache entry {key!r}: {e}") from e
            removed.append(key)
        return removed
