"""Provider adapters for local files and directories."""

import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import Any

from ..errors import ProviderError
from .base import ProviderAdapter, ProviderRegistry, ProviderResource, ProviderResult

logger = logging.getLogger(__name__)


def _resolve_path(path: str) -> Path:
    """Resolve a path relative to the current working directory."""
    file_path = Path(path)
    if not file_path.is_absolute():
        file_path = Path.cwd() / file_path
    return file_path


class LocalFileAdapter(ProviderAdapter):
    """Files on the local filesystem using pure Python file I/O.

    Attributes: ``path`` (required, forces replacement), ``content`` and
    ``mode`` (octal string, default "644"). The provider id is the absolute path.
    """

    def _write(self, attributes: dict[str, Any]) -> dict[str, Any]:
        path = attributes.get("path")
        if not path:
            raise ProviderError("local_file requires a 'path' attribute")
        content = str(attributes.get("content", ""))
        mode = str(attributes.get("mode", "644"))

        file_path = _resolve_path(path)
        try:
            # Ensure parent directory exists
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(content, encoding="utf-8")
            os.chmod(file_path, int(mode, 8))
            mode = format(int(mode, 8), "o")
        except ValueError as e:
            raise ProviderError(f"Invalid mode '{mode}' for {file_path}: {e}") from e
        except OSError as e:
            # The file may be half-written
            raise ProviderError(f"Failed to write file {file_path}: {e}", indeterminate=True, provider_id=str(file_path)) from e

        return {
            "path": path,
            "content": content,
            "mode": mode,
            "size": len(content),
        }

    async def create(self, resource: ProviderResource) -> ProviderResult:
        attributes = await asyncio.to_thread(self._write, resource.attributes)
        file_path = _resolve_path(attributes["path"])
        logger.debug(f"Created file {file_path}")
        return ProviderResult(provider_id=str(file_path), attributes=attributes)

    async def update(
        self,
        resource: ProviderResource,
        old_attributes: dict[str, Any],
        new_attributes: dict[str, Any],
    ) -> dict[str, Any]:
        attributes = await asyncio.to_thread(self._write, new_attributes)
        logger.debug(f"Updated file {resource.provider_id}")
        return attributes

    async def delete(self, resource: ProviderResource) -> None:
        if resource.provider_id is None:
            return
        file_path = Path(resource.provider_id)
        try:
            await asyncio.to_thread(file_path.unlink, missing_ok=True)
        except OSError as e:
            raise ProviderError(f"Failed to delete file {file_path}: {e}") from e
        logger.debug(f"Deleted file {file_path}")

    async def read(self, provider_id: str) -> dict[str, Any] | None:
        file_path = Path(provider_id)

        def _read() -> dict[str, Any] | None:
            if not file_path.is_file():
                return None
            content = file_path.read_text(encoding="utf-8")
            return {
                "content": content,
                "mode": format(file_path.stat().st_mode & 0o777, "o"),
                "size": len(content),
            }

        return await asyncio.to_thread(_read)


class LocalDirectoryAdapter(ProviderAdapter):
    """Directories on the local filesystem.

    Attributes: ``path`` (required, forces replacement) and ``mode``
    (default "755"). Deleting removes the directory tree.
    """

    def _ensure(self, attributes: dict[str, Any]) -> dict[str, Any]:
        path = attributes.get("path")
        if not path:
            raise ProviderError("local_directory requires a 'path' attribute")
        mode = str(attributes.get("mode", "755"))

        dir_path = _resolve_path(path)
        try:
            dir_path.mkdir(parents=True, exist_ok=True)
            os.chmod(dir_path, int(mode, 8))
            mode = format(int(mode, 8), "o")
        except ValueError as e:
            raise ProviderError(f"Invalid mode '{mode}' for {dir_path}: {e}") from e
        except OSError as e:
            raise ProviderError(f"Failed to create directory {dir_path}: {e}") from e

        return {"path": path, "mode": mode}

    async def create(self, resource: ProviderResource) -> ProviderResult:
        attributes = await asyncio.to_thread(self._ensure, resource.attributes)
        return ProviderResult(provider_id=str(_resolve_path(attributes["path"])), attributes=attributes)

    async def update(
        self,
        resource: ProviderResource,
        old_attributes: dict[str, Any],
        new_attributes: dict[str, Any],
    ) -> dict[str, Any]:
        return await asyncio.to_thread(self._ensure, new_attributes)

    async def delete(self, resource: ProviderResource) -> None:
        if resource.provider_id is None:
            return
        dir_path = Path(resource.provider_id)
        try:
            await asyncio.to_thread(shutil.rmtree, dir_path, ignore_errors=False)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise ProviderError(f"Failed to delete directory {dir_path}: {e}", indeterminate=True) from e

    async def read(self, provider_id: str) -> dict[str, Any] | None:
        dir_path = Path(provider_id)

        def _read() -> dict[str, Any] | None:
            if not dir_path.is_dir():
                return None
            return {"mode": format(dir_path.stat().st_mode & 0o777, "o")}

        return await asyncio.to_thread(_read)


def register_local_types(registry: ProviderRegistry) -> ProviderRegistry:
    """Register ``local_file`` and ``local_directory``."""
    registry.register("local_file", LocalFileAdapter(), force_replace=["path"])
    registry.register("local_directory", LocalDirectoryAdapter(), force_replace=["path"])
    return registry
