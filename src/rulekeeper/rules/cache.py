# rulekeeper:domain=rules
"""Durable, content-addressed verdict cache.

Each entry is a small JSON file named after its fingerprint.  Writes go to a
temporary file in the same directory, are fsynced, and then atomically
replace the target, so a concurrent reader sees either the old entry or the
new one, never a partial write.  Entries are never invalidated explicitly: a
change to the rule, the file, or the agent backend changes the fingerprint.
"""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rulekeeper.rules.errors import CacheError
from rulekeeper.rules.models import Severity, Verdict, Violation

if TYPE_CHECKING:
    from types import TracebackType

    from rulekeeper.rules.models import Rule

logger = logging.getLogger(__name__)

_ENTRY_SUFFIX = ".json"
_FORMAT_VERSION = 1


def default_cache_dir() -> Path:
    """Per-user cache directory for rule verdicts.

    ``$RULEKEEPER_CACHE_DIR`` wins, then ``$XDG_CACHE_HOME``, then
    ``~/.cache``.
    """
    explicit = os.environ.get("RULEKEEPER_CACHE_DIR")
    if explicit:
        return Path(explicit).expanduser()
    xdg = os.environ.get("XDG_CACHE_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".cache"
    return base / "rulekeeper" / "rules"


def compute_fingerprint(
    rule: Rule,
    rendered_rule: str,
    file_content: bytes,
    agent_identity: str,
) -> str:
    """SHA-256 fingerprint of everything that can change a verdict.

    Fields are length-prefixed so that moving bytes between adjacent fields
    always yields a different digest.
    """
    hasher = hashlib.sha256()
    fields: list[bytes] = [
        rule.name.encode("utf-8"),
        rendered_rule.encode("utf-8"),
        rule.severity.value.encode("utf-8"),
        "\x1f".join(rule.tags).encode("utf-8"),
        file_content,
        agent_identity.encode("utf-8"),
    ]
    for value in fields:
        hasher.update(len(value).to_bytes(8, "big"))
        hasher.update(value)
    return hasher.hexdigest()


def _encode(verdict: Verdict) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "version": _FORMAT_VERSION,
        "created_at": datetime.now(tz=timezone.utc).isoformat(),
    }
    if verdict.passed or verdict.violation is None:
        entry["result"] = "pass"
    else:
        entry["result"] = "violation"
        entry["rule_name"] = verdict.violation.rule_name
        entry["file_path"] = verdict.violation.file_path
        entry["severity"] = verdict.violation.severity.value
        entry["message"] = verdict.violation.message
    return entry


def _decode(data: Any, rule_name: str | None, file_path: str | None) -> Verdict:
    if not isinstance(data, dict):
        msg = "cache entry is not a JSON object"
        raise ValueError(msg)
    result = data.get("result")
    if result == "pass":
        return Verdict.passing()
    if result == "violation":
        return Verdict.violated(
            Violation(
                rule_name=rule_name or str(data["rule_name"]),
                file_path=file_path or str(data["file_path"]),
                severity=Severity.parse(data["severity"]),
                message=str(data["message"]),
            )
        )
    msg = f"unknown cached result {result!r}"
    raise ValueError(msg)


class RuleCache:
    """Handle on the verdict cache directory.

    Open once per run and close on completion; use as a context manager::

        with RuleCache.open() as cache:
            verdict = cache.get(key)
    """

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = cache_dir
        self._closed = False

    @classmethod
    def open(cls, cache_dir: Path | None = None) -> RuleCache:
        """Create the cache directory if needed and return a handle.

        Raises
        ------
        CacheError
            If the directory cannot be created.
        """
        directory = cache_dir if cache_dir is not None else default_cache_dir()
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            msg = f"failed to create cache directory {directory}: {exc}"
            raise CacheError(msg) from exc
        return cls(directory)

    def __enter__(self) -> RuleCache:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def _entry_path(self, fingerprint: str) -> Path:
        return self.cache_dir / f"{fingerprint}{_ENTRY_SUFFIX}"

    def get(
        self,
        fingerprint: str,
        *,
        rule_name: str | None = None,
        file_path: str | None = None,
    ) -> Verdict | None:
        """Return the cached verdict, or ``None`` on a miss.

        A cached violation is re-attributed to *rule_name* / *file_path* when
        given, since identical content may live at several paths.  Corrupt
        entries are logged and treated as misses.
        """
        path = self._entry_path(fingerprint)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("Cache miss: %s", fingerprint)
            return None
        except OSError as exc:
            logger.warning("Cannot read cache entry %s: %s", path, exc)
            return None

        try:
            data = json.loads(raw)
            verdict = _decode(data, rule_name, file_path)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring corrupt cache entry %s: %s", path, exc)
            return None

        logger.debug("Cache hit: %s (cached at %s)", fingerprint, data.get("created_at"))
        return verdict

    def store(self, fingerprint: str, verdict: Verdict) -> None:
        """Durably persist *verdict* under *fingerprint*.

        Returns only after the entry is flushed to stable storage and
        atomically renamed into place.

        Raises
        ------
        CacheError
            If the cache is closed or the write fails.
        """
        if self._closed:
            msg = "cache is closed"
            raise CacheError(msg)

        payload = json.dumps(_encode(verdict), indent=2, ensure_ascii=False)
        target = self._entry_path(fingerprint)
        tmp_name: str | None = None
        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=self.cache_dir, prefix=f".{fingerprint[:16]}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
            tmp_name = None
            self._fsync_dir()
        except OSError as exc:
            msg = f"failed to write cache entry {target}: {exc}"
            raise CacheError(msg) from exc
        finally:
            if tmp_name is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)

        logger.debug("Cached verdict: %s", fingerprint)

    def _fsync_dir(self) -> None:
        # Directory fsync makes the rename itself durable (POSIX only).
        if os.name != "posix":
            return
        dir_fd = os.open(self.cache_dir, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    def clear(self) -> int:
        """Remove every cache entry and return how many were removed.

        Raises
        ------
        CacheError
            If an entry cannot be removed.
        """
        if not self.cache_dir.exists():
            logger.info("Cache directory does not exist, nothing to clear")
            return 0

        count = 0
        for path in self.cache_dir.iterdir():
            if path.is_file() and path.suffix == _ENTRY_SUFFIX:
                try:
                    path.unlink()
                except OSError as exc:
                    msg = f"failed to remove cache entry {path}: {exc}"
                    raise CacheError(msg) from exc
                count += 1
        logger.info("Cleared %d cache entries", count)
        return count

    def stats(self) -> dict[str, int]:
        """Return cache statistics."""
        if not self.cache_dir.exists():
            return {"entries": 0}
        entries = sum(1 for p in self.cache_dir.iterdir() if p.suffix == _ENTRY_SUFFIX)
        return {"entries": entries}
