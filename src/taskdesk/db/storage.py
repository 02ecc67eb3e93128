"""
Taskdesk - File storage buckets.

Files are addressed by application path (e.g. "user-1/avatar.png"). The
store needs a short id instead, so every path maps to a deterministic
file id; uploading the same path again targets the same file.
"""

import logging
import re
import string
from typing import Any

from taskdesk.config import Settings
from taskdesk.db.errors import BackendResult, auth_config_error
from taskdesk.db.gateway import DocumentGateway, encode_path

logger = logging.getLogger(__name__)

_BASE36_DIGITS = string.digits + string.ascii_lowercase
_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9]")

MAX_FILE_ID_LENGTH = 36


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def hash_path(value: str) -> str:
    """32-bit rolling string hash (h*31 + c over UTF-16 units), base36 of its magnitude."""
    encoded = value.encode("utf-16-le")
    units = [int.from_bytes(encoded[i:i + 2], "little") for i in range(0, len(encoded), 2)]

    result = 0
    for unit in units:
        result = ((result << 5) - result + unit) & 0xFFFFFFFF
    if result >= 0x80000000:
        result -= 0x100000000
    return _to_base36(abs(result))


def stable_file_id(path: str) -> str:
    """Deterministic store file id for an application path."""
    safe = _UNSAFE_ID_CHARS.sub("_", path)
    base = safe[-24:] or "file"
    return f"f_{base}_{hash_path(path)[:10]}"[:MAX_FILE_ID_LENGTH]


class StorageBucket:
    """One bucket, resolved from an alias ('avatars', 'task-attachments') or a raw id."""

    def __init__(self, gateway: DocumentGateway, bucket_id: str):
        self._gateway = gateway
        self.bucket_id = bucket_id

    @property
    def settings(self) -> Settings:
        return self._gateway.settings

    def _files_path(self, file_id: str | None = None) -> str:
        path = f"/storage/buckets/{encode_path(self.bucket_id)}/files"
        if file_id is not None:
            path += f"/{encode_path(file_id)}"
        return path

    async def upload(
        self,
        path: str,
        content: bytes,
        content_type: str | None = None,
        upsert: bool = False,
    ) -> BackendResult:
        """
        Upload content under `path`.

        With upsert, any existing file at the same path is deleted first;
        a failed delete (typically 404) is ignored.
        """
        if not self.settings.has_auth_config:
            return BackendResult(error=auth_config_error())

        file_id = stable_file_id(path)

        if upsert:
            deleted = await self._gateway.request("DELETE", self._files_path(file_id))
            if deleted.error is not None and deleted.error.status != 404:
                logger.debug("Pre-upload delete of %s failed: %s", file_id, deleted.error.message)

        filename = path.rsplit("/", 1)[-1] or file_id
        file_part: tuple[Any, ...] = (filename, content, content_type or "application/octet-stream")
        result = await self._gateway.request(
            "POST",
            self._files_path(),
            data={"fileId": file_id},
            files={"file": file_part},
        )
        if result.error is not None:
            return BackendResult(error=result.error)
        return BackendResult(data=result.data)

    def get_public_url(self, path: str) -> str:
        """View URL for the file at `path`; empty when endpoint or project is missing."""
        endpoint = self.settings.endpoint_with_version
        project_id = self.settings.appwrite_project_id.strip()
        if not endpoint or not project_id:
            return ""
        file_id = stable_file_id(path)
        return f"{endpoint}{self._files_path(file_id)}/view?project={encode_path(project_id)}"


class Storage:
    """Entry point for `client.storage.from_(bucket)`."""

    def __init__(self, gateway: DocumentGateway):
        self._gateway = gateway

    def resolve_bucket_id(self, name: str) -> str:
        return self._gateway.settings.buckets.get(name, name)

    def from_(self, name: str) -> StorageBucket:
        return StorageBucket(self._gateway, self.resolve_bucket_id(name))
