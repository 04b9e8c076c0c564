"""Shipping of local log files to the master.

Every upload interval, each ``*.log`` file of the log directory is read past
the last uploaded offset and the new bytes are appended on the master. The
offsets live in ``.upload-state.json`` next to the logs, so a restart never
re-sends what was already shipped. The master also checks the offset and
answers ``appended: false`` for a chunk it already has.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from emailloop.services.master_client import MasterError

if TYPE_CHECKING:
    from pathlib import Path

    from emailloop.core.state import ConfigStore
    from emailloop.services.master_client import MasterClient

logger = logging.getLogger(__name__)

STATE_FILENAME = ".upload-state.json"
DEFAULT_UPLOAD_INTERVAL = 30.0


class LogUploader:
    """Uploads new log lines to the master on a fixed interval.

    Example:
        uploader = LogUploader(client, store, settings.logs.directory)
        task = asyncio.create_task(uploader.run())
        ...
        await uploader.stop()
    """

    def __init__(
        self,
        client: MasterClient,
        store: ConfigStore,
        directory: Path,
        *,
        interval: float = DEFAULT_UPLOAD_INTERVAL,
    ) -> None:
        """Initialize the uploader.

        Args:
            client: Master API client.
            store: Token store; uploads are skipped while unregistered.
            directory: Log directory to scan.
            interval: Seconds between two uploads.
        """
        self._client = client
        self._store = store
        self._directory = directory
        self._state_path = directory / STATE_FILENAME
        self._interval = interval
        self._stop_event = asyncio.Event()
        self._lock = asyncio.Lock()

    def _load_state(self) -> dict[str, dict[str, Any]]:
        try:
            if self._state_path.exists():
                data = json.loads(self._state_path.read_text(encoding="utf-8"))
                if isinstance(data, dict):
                    return data
        except (OSError, ValueError) as e:
            logger.error("Could not load upload state: %s", e)
        return {}

    def _save_state(self, state: dict[str, dict[str, Any]]) -> None:
        try:
            self._state_path.write_text(json.dumps(state, indent=2), encoding="utf-8")
        except OSError as e:
            logger.error("Could not save upload state: %s", e)

    @staticmethod
    def _read_from(path: Path, offset: int) -> bytes:
        with path.open("rb") as f:
            f.seek(offset)
            return f.read()

    async def upload_once(self) -> int:
        """Upload everything new in the log directory.

        Returns:
            Number of files whose offset advanced.
        """
        if not self._store.has_token or not self._directory.is_dir():
            return 0

        async with self._lock:
            state = self._load_state()
            uploaded = 0

            for path in sorted(self._directory.glob("*.log")):
                offset = int(state.get(path.name, {}).get("offset", 0))
                try:
                    if path.stat().st_size <= offset:
                        continue
                    chunk = self._read_from(path, offset)
                except OSError as e:
                    logger.error("Could not read %s: %s", path.name, e)
                    continue
                if not chunk:
                    continue

                try:
                    response = await self._client.upload_log(
                        filename=path.name,
                        content=chunk.decode("utf-8", errors="replace"),
                        offset=offset,
                        length=len(chunk),
                        timestamp=datetime.now(UTC).isoformat(),
                    )
                except MasterError as e:
                    logger.debug("Log upload of %s failed: %s", path.name, e)
                    continue

                if not response.appended:
                    logger.info(
                        "%s: chunk at offset %d already on master (%s)",
                        path.name,
                        offset,
                        response.reason or "duplicate",
                    )
                state[path.name] = {
                    "offset": response.file_size or offset + len(chunk),
                    "lastUpload": datetime.now(UTC).isoformat(),
                }
                uploaded += 1

            if uploaded:
                self._save_state(state)
                logger.debug("Uploaded new log content from %d file(s)", uploaded)
            return uploaded

    async def run(self) -> None:
        """Upload on every interval until stopped."""
        logger.info("Log uploader started (interval: %.0fs)", self._interval)
        while not self._stop_event.is_set():
            try:
                await self.upload_once()
            except Exception as e:
                logger.exception("Error uploading logs: %s", e)

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
        logger.info("Log uploader stopped")

    async def stop(self) -> None:
        """Stop the loop and ship whatever was logged since the last upload."""
        self._stop_event.set()
        try:
            await self.upload_once()
        except Exception as e:
            logger.exception("Final log upload failed: %s", e)
