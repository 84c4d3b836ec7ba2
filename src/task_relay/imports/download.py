"""Child task that downloads one import file with resumable ``Range`` requests."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import httpx

from task_relay import __version__
from task_relay.imports.checkpoints import ImportDownloadInput
from task_relay.imports.controller import DOWNLOAD_DEFINITION_ID
from task_relay.tasks.definitions import RunParams, TaskDefinition
from task_relay.tasks.response import ErrorPayload, TaskResult

DEFAULT_CHUNK_BYTES = 1_048_576
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
USER_AGENT = f"task-relay/{__version__}"


class ImportFromUrlDownload:
    """Streams one file to ``download_dir/<parent>/<key>``.

    The checkpoint records how many bytes are on disk. A resumed invocation
    first truncates whatever the previous one wrote past that point and then
    asks the server for the rest; a server that ignores ``Range`` makes the
    download start over.
    """

    def __init__(
        self,
        *,
        download_dir: Path,
        chunk_bytes: int = DEFAULT_CHUNK_BYTES,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.download_dir = download_dir
        self.chunk_bytes = chunk_bytes
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.transport = transport

    def __call__(self, params: RunParams[ImportDownloadInput]) -> TaskResult:
        checkpoint = params.input
        if params.is_aborted():
            return params.response.aborted()

        item = checkpoint.file
        if item.get is None:
            return params.response.error(
                ErrorPayload(
                    code="MISSING_FILE_URL",
                    message=f'File "{item.key}" has no download URL.',
                ),
            )
        if Path(item.key).name != item.key or item.key in {".", ".."}:
            return params.response.error(
                ErrorPayload(
                    code="INVALID_FILE_KEY",
                    message=f'File key "{item.key}" cannot be used as a file name.',
                ),
            )

        target = self.target_path(params.task.parent_id or params.task.task_id, item.key)
        target.parent.mkdir(parents=True, exist_ok=True)
        offset = _prepare_target(target, checkpoint.downloaded_bytes)
        if offset != checkpoint.downloaded_bytes:
            params.logger.warning(
                "Only %d of %d checkpointed bytes on disk; restarting %s",
                offset,
                checkpoint.downloaded_bytes,
                item.key,
            )

        headers = {"Range": f"bytes={offset}-"} if offset > 0 else {}
        try:
            with (
                self._client() as client,
                client.stream("GET", item.get, headers=headers) as response,
            ):
                status = response.status_code
                if offset > 0 and status == httpx.codes.REQUESTED_RANGE_NOT_SATISFIABLE:
                    return self._done(params, target)
                response.raise_for_status()
                if offset > 0 and status != httpx.codes.PARTIAL_CONTENT:
                    params.logger.info("Server ignored Range for %s; starting over", item.key)
                    offset = _prepare_target(target, 0)

                with target.open("r+b") as handle:
                    handle.seek(offset)
                    for chunk in response.iter_bytes(self.chunk_bytes):
                        handle.write(chunk)
                        offset += len(chunk)
                        if params.is_aborted():
                            return params.response.aborted()
                        if params.is_close_to_timeout():
                            handle.flush()
                            params.logger.info("Close to timeout at %d bytes", offset)
                            return params.response.continue_(
                                replace(checkpoint, downloaded_bytes=offset),
                            )
        except httpx.HTTPStatusError as exc:
            return params.response.error(
                ErrorPayload(
                    code="DOWNLOAD_FAILED",
                    message=f'Download of "{item.key}" failed with HTTP {exc.response.status_code}.',
                    data={"url": item.get, "statusCode": exc.response.status_code},
                ),
            )
        except httpx.TransportError as exc:
            params.logger.warning("Transport error downloading %s: %s", item.key, exc)
            return params.response.continue_(
                replace(checkpoint, downloaded_bytes=offset),
                seconds=30,
            )

        return self._done(params, target)

    def target_path(self, parent_id: str, key: str) -> Path:
        return self.download_dir / parent_id / key

    def _done(self, params: RunParams[ImportDownloadInput], target: Path) -> TaskResult:
        size = target.stat().st_size
        params.logger.info("Downloaded %s (%d bytes)", params.input.file.key, size)
        return params.response.done(
            message=f"Downloaded {params.input.file.key}.",
            output={"key": params.input.file.key, "path": str(target), "size": size},
        )

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
            transport=self.transport or httpx.HTTPTransport(retries=self.max_retries),
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
        )


def _prepare_target(target: Path, offset: int) -> int:
    """Cut ``target`` to ``offset`` bytes; return the offset actually available."""

    if not target.exists():
        target.touch()
        return 0
    size = target.stat().st_size
    if size < offset:
        offset = 0
    with target.open("r+b") as handle:
        handle.truncate(offset)
    return offset


def build_download_definition(
    *,
    download_dir: Path,
    chunk_bytes: int = DEFAULT_CHUNK_BYTES,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    transport: httpx.BaseTransport | None = None,
) -> TaskDefinition:
    return TaskDefinition(
        definition_id=DOWNLOAD_DEFINITION_ID,
        title="Import from URL - download",
        run=ImportFromUrlDownload(
            download_dir=download_dir,
            chunk_bytes=chunk_bytes,
            timeout_seconds=timeout_seconds,
            transport=transport,
        ),
        checkpoint_type=ImportDownloadInput,
        description="Downloads one file of an import, resuming where the last invocation stopped.",
    )
