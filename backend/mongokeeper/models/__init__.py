from __future__ import annotations

from mongokeeper.models.backup import BackupRecord  # noqa: F401
