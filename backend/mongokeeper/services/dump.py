from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from mongokeeper.config import Settings
from mongokeeper.errors import ConnectivityError, ExecutionError

logger = logging.getLogger(__name__)

# mongodump progress line, e.g. "done dumping shop.orders (1520 documents)"
_DONE_DUMPING_RE = re.compile(r"done dumping \S+ \((\d+) documents?\)")

# How much tool output to keep in an error message
_ERROR_OUTPUT_TAIL = 2000


@dataclass(frozen=True)
class DumpResult:
    returncode: int
    output: str


@dataclass(frozen=True)
class DumpStats:
    collections: int = 0
    documents: int = 0
    indexes: int = 0


class MongoDumpRunner:
    """Runs mongodump for one attempt and inspects what it produced."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    async def probe(self) -> None:
        """Ping the database; raise ConnectivityError when it is unreachable."""

        def _ping() -> None:
            client: MongoClient = MongoClient(
                self._settings.mongo_connection_string,
                serverSelectionTimeoutMS=self._settings.connect_timeout_seconds * 1000,
            )
            try:
                client.admin.command("ping")
            finally:
                client.close()

        try:
            await asyncio.to_thread(_ping)
        except (PyMongoError, ValueError) as exc:
            logger.error("MongoDB connection test failed: %s", exc)
            raise ConnectivityError(f"Cannot connect to MongoDB: {exc}") from exc
        logger.info("MongoDB connection test successful")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def build_command(self, output_dir: Path) -> list[str]:
        return [
            self._settings.mongodump_path,
            f"--uri={self._settings.mongo_connection_string}",
            f"--out={output_dir}",
            "--readPreference=secondaryPreferred",
            "--numParallelCollections=1",
        ]

    async def run(self, output_dir: Path) -> DumpResult:
        """Run mongodump into *output_dir* and wait for it to finish.

        Stdout and stderr are merged. Raises ExecutionError when the tool
        cannot be started, exits non-zero, or exceeds the configured timeout.
        """
        cmd = self.build_command(output_dir)
        logger.debug("Running: %s --out=%s", cmd[0], output_dir)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise ExecutionError(f"Could not start {cmd[0]}: {exc}") from exc

        timeout = self._settings.dump_timeout_seconds or None
        try:
            stdout_bytes, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise ExecutionError(
                f"{cmd[0]} did not finish within {self._settings.dump_timeout_seconds} seconds"
            ) from exc

        output = stdout_bytes.decode("utf-8", errors="replace")
        returncode = proc.returncode or 0
        if returncode != 0:
            tail = output.strip()[-_ERROR_OUTPUT_TAIL:]
            message = f"{cmd[0]} exited with status {returncode}"
            if tail:
                message = f"{message}: {tail}"
            raise ExecutionError(message, returncode=returncode, output=output)
        return DumpResult(returncode=returncode, output=output)

    # ------------------------------------------------------------------
    # Artifact inspection
    # ------------------------------------------------------------------

    @staticmethod
    def parse_stats(output: str, output_dir: Path) -> DumpStats:
        """Best-effort counters for a finished dump; unknown values are zero."""
        documents = sum(int(m.group(1)) for m in _DONE_DUMPING_RE.finditer(output))

        collections = 0
        indexes = 0
        if output_dir.is_dir():
            collections = sum(1 for _ in output_dir.rglob("*.bson"))
            for meta_path in output_dir.rglob("*.metadata.json"):
                try:
                    meta = json.loads(meta_path.read_text(encoding="utf-8"))
                except (OSError, ValueError):
                    logger.warning("Could not read index metadata from %s", meta_path)
                    continue
                if isinstance(meta, dict) and isinstance(meta.get("indexes"), list):
                    indexes += len(meta["indexes"])

        return DumpStats(collections=collections, documents=documents, indexes=indexes)

    @staticmethod
    def directory_size(path: Path) -> int:
        """Total size in bytes of all files below *path*."""

        def _on_error(exc: OSError) -> None:
            logger.warning("Error calculating directory size: %s", exc)

        total = 0
        for root, _dirs, files in os.walk(path, onerror=_on_error):
            for name in files:
                try:
                    total += os.stat(os.path.join(root, name)).st_size
                except OSError as exc:
                    _on_error(exc)
        return total
