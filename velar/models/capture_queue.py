"""
Capture Queue Manager Module

Takes screen captures (and imports audio clips) into two bounded, strictly
FIFO queues, one for the primary problem captures and one for the
secondary debug captures. The manager owns both queues and the files
behind them.
"""

import asyncio
import logging
import os
import shutil
import sys
import tempfile
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple

from PIL import ImageGrab

from .. import EventTypes, PRIMARY_CAPTURE_DIR, SECONDARY_CAPTURE_DIR
from .pipeline_models import (
    AUDIO_EXTENSIONS, CaptureEntry, CaptureError, CaptureErrorKind, ClearResult, DeleteResult,
    InlinePart, QueueError, QueueErrorKind, QueueKind, extension_for
)
from .settings_manager import CaptureSettings

logger = logging.getLogger(__name__)

PERMISSION_MARKERS = ("could not create image", "screencapture", "permission", "not authorized")
PERMISSION_HINT = (
    "Enable Screen Recording for this application in "
    "System Settings > Privacy & Security > Screen Recording, then restart it"
)


class PresentationSurface(Protocol):
    """Window that must be out of the way while the screen is captured."""

    def hide(self) -> None:
        ...

    def show(self) -> None:
        ...


class NullSurface:
    """Surface for headless use; hiding is a no-op."""

    def hide(self) -> None:
        pass

    def show(self) -> None:
        pass


class ScreenCapturer:
    """
    Platform capture primitive.

    On macOS the native ``screencapture`` command is used when available;
    everywhere else the screen is grabbed with Pillow.
    """

    def __init__(self, prefer_native_command: bool = True):
        self.prefer_native_command = prefer_native_command

    def _native_command(self) -> Optional[str]:
        if not self.prefer_native_command or sys.platform != 'darwin':
            return None
        return shutil.which('screencapture')

    async def capture_to_file(self, path: str) -> None:
        """
        Write a PNG of the full screen to path.

        Raises:
            RuntimeError / OSError: with the platform's error text
        """
        command = self._native_command()
        if command:
            await self._run_native(command, path)
        else:
            await self._grab_with_pillow(path)

    async def _run_native(self, command: str, path: str) -> None:
        process = await asyncio.create_subprocess_exec(
            command, '-x', path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
        _, stderr = await process.communicate()
        if process.returncode != 0:
            detail = stderr.decode(errors='replace').strip()
            raise RuntimeError(detail or f"screencapture exited with status {process.returncode}")

    async def _grab_with_pillow(self, path: str) -> None:
        loop = asyncio.get_running_loop()
        image = await loop.run_in_executor(None, ImageGrab.grab)
        if image is None:
            raise RuntimeError("Screen grab returned no image")

        # Save next to the target and rename so readers never see a partial PNG
        directory, filename = os.path.split(path)
        with tempfile.NamedTemporaryFile(dir=directory, prefix=f".{filename}.", suffix=".tmp",
                                         delete=False) as temp_file:
            temp_path = temp_file.name
        try:
            await loop.run_in_executor(None, lambda: image.save(temp_path, "PNG"))
            os.replace(temp_path, path)
        finally:
            if os.path.exists(temp_path):
                os.remove(temp_path)


class CaptureQueueManager:
    """
    Owner of the primary and secondary capture queues.

    Captures are appended to the queue of the current mode. Each queue is
    bounded by ``CaptureSettings.max_entries``; the oldest entry is evicted
    and its file removed when a new one would exceed the bound.
    """

    def __init__(
        self,
        settings: CaptureSettings,
        capturer: Optional[ScreenCapturer] = None,
        surface: Optional[PresentationSurface] = None,
        event_bus=None,
        mode: QueueKind = QueueKind.PRIMARY
    ):
        self.settings = settings
        self.capturer = capturer or ScreenCapturer(settings.prefer_native_command)
        self.surface = surface or NullSurface()
        self.event_bus = event_bus
        self._mode = mode
        self._queues: Dict[QueueKind, List[CaptureEntry]] = {kind: [] for kind in QueueKind}
        self._directories = {
            QueueKind.PRIMARY: Path(settings.data_dir) / PRIMARY_CAPTURE_DIR,
            QueueKind.SECONDARY: Path(settings.data_dir) / SECONDARY_CAPTURE_DIR,
        }
        self._capture_lock = asyncio.Lock()

        for directory in self._directories.values():
            directory.mkdir(parents=True, exist_ok=True)

        logger.info("CaptureQueueManager initialized (data dir: %s)", settings.data_dir)

    @property
    def mode(self) -> QueueKind:
        return self._mode

    async def set_mode(self, kind: QueueKind) -> None:
        """Select the queue new captures are appended to."""
        if kind == self._mode:
            return
        previous, self._mode = self._mode, kind
        logger.info("Capture mode changed: %s -> %s", previous.value, kind.value)
        await self._emit(EventTypes.QUEUE_MODE_CHANGED, {'mode': kind.value, 'previous': previous.value})

    def directory_for(self, kind: QueueKind) -> Path:
        return self._directories[kind]

    def get_queue(self, kind: Optional[QueueKind] = None) -> Tuple[CaptureEntry, ...]:
        """Read-only, oldest-first view of a queue (the current mode's by default)."""
        return tuple(self._queues[kind or self._mode])

    def find_entry(self, path: str) -> Optional[CaptureEntry]:
        for entries in self._queues.values():
            for entry in entries:
                if entry.location == path:
                    return entry
        return None

    @asynccontextmanager
    async def _surface_hidden(self):
        """Hide the presentation surface for the duration of the block."""
        self.surface.hide()
        try:
            yield
        finally:
            try:
                self.surface.show()
            except Exception as e:
                logger.error("Failed to restore presentation surface: %s", e)

    async def capture(self) -> CaptureEntry:
        """
        Capture the screen into the current mode's queue.

        Returns:
            The new CaptureEntry

        Raises:
            CaptureError: permission, transient or verification_failed
        """
        async with self._capture_lock:
            kind = self._mode
            path = self._directories[kind] / f"{uuid.uuid4()}.png"

            try:
                async with self._surface_hidden():
                    await asyncio.sleep(self.settings.hide_delay_seconds)
                    await self.capturer.capture_to_file(str(path))
                    await asyncio.sleep(self.settings.settle_delay_seconds)
                    await self._verify_file(path)
            except CaptureError as e:
                await self._discard_partial(path)
                await self._emit_capture_failed(e)
                raise
            except Exception as e:
                await self._discard_partial(path)
                error = self._map_capture_failure(e)
                await self._emit_capture_failed(error)
                raise error from e

            entry = CaptureEntry(location=str(path), queue_kind=kind)
            await self._append(entry)
            logger.info("Capture added to %s queue: %s", kind.value, path)
            return entry

    async def import_audio(self, data: bytes, mime_type: str) -> CaptureEntry:
        """
        Store a recorded audio clip as a capture of the current mode.

        Raises:
            ValueError: if the MIME type is not a supported audio type
            CaptureError: verification_failed when the clip is empty or unwritable
        """
        extension = extension_for(mime_type)
        if extension not in AUDIO_EXTENSIONS:
            raise ValueError(f"Not an audio MIME type: {mime_type}")
        if not data:
            raise CaptureError(CaptureErrorKind.VERIFICATION_FAILED, "Audio clip is empty")

        async with self._capture_lock:
            kind = self._mode
            path = self._directories[kind] / f"{uuid.uuid4()}{extension}"
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, path.write_bytes, data)
                await self._verify_file(path)
            except OSError as e:
                await self._discard_partial(path)
                raise CaptureError(CaptureErrorKind.VERIFICATION_FAILED, f"Failed to save audio clip: {e}") from e

            entry = CaptureEntry(location=str(path), queue_kind=kind)
            await self._append(entry)
            logger.info("Audio clip added to %s queue: %s", kind.value, path)
            return entry

    async def _verify_file(self, path: Path) -> None:
        attempts = max(1, self.settings.verify_attempts)
        for attempt in range(attempts):
            try:
                if path.stat().st_size > 0:
                    return
            except FileNotFoundError:
                pass
            if attempt < attempts - 1:
                await asyncio.sleep(self.settings.verify_backoff_seconds)

        raise CaptureError(
            CaptureErrorKind.VERIFICATION_FAILED,
            "Capture file was not created or is empty"
        )

    def _map_capture_failure(self, exc: Exception) -> CaptureError:
        text = str(exc)
        lowered = text.lower()
        if isinstance(exc, PermissionError) or any(marker in lowered for marker in PERMISSION_MARKERS):
            logger.error("Screen capture permission denied: %s", text)
            return CaptureError(
                CaptureErrorKind.PERMISSION,
                "Screen capture permission denied",
                hint=PERMISSION_HINT
            )

        logger.error("Screen capture failed: %s", text)
        return CaptureError(CaptureErrorKind.TRANSIENT, f"Failed to take screenshot: {text or type(exc).__name__}")

    async def _append(self, entry: CaptureEntry) -> None:
        queue = self._queues[entry.queue_kind]
        queue.append(entry)

        while len(queue) > self.settings.max_entries:
            evicted = queue.pop(0)
            error = await self._remove_file(evicted.location)
            if error:
                logger.warning("Failed to remove evicted capture %s: %s", evicted.location, error)
            await self._emit(EventTypes.QUEUE_ENTRY_EVICTED, evicted.to_dict())

        await self._emit(EventTypes.CAPTURE_COMPLETED, {
            'entry': entry.to_dict(),
            'queue_size': len(queue),
        })

    async def _remove_file(self, path: str) -> Optional[str]:
        """Delete a capture file; returns the failure reason instead of raising."""
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, os.remove, path)
        except FileNotFoundError:
            return None
        except OSError as e:
            return str(e)
        return None

    async def _discard_partial(self, path: Path) -> None:
        error = await self._remove_file(str(path))
        if error:
            logger.warning("Failed to remove partial capture %s: %s", path, error)

    async def delete_entry(self, path: str) -> DeleteResult:
        """
        Delete one queued capture.

        The in-memory entry is removed only after its file was deleted.
        """
        entry = self.find_entry(path)
        if entry is None:
            logger.warning("Delete requested for unknown capture: %s", path)
            return DeleteResult(False, "Capture not found in any queue", QueueErrorKind.NOT_FOUND)

        error = await self._remove_file(path)
        if error:
            logger.error("Error deleting capture %s: %s", path, error)
            return DeleteResult(False, error, QueueErrorKind.IO_FAILURE)

        self._queues[entry.queue_kind].remove(entry)
        await self._emit(EventTypes.QUEUE_ENTRY_DELETED, entry.to_dict())
        return DeleteResult(True)

    async def clear(self, kind: QueueKind) -> ClearResult:
        """Delete every file of a queue; the queue is emptied regardless."""
        entries, self._queues[kind] = self._queues[kind], []
        result = ClearResult()

        for entry in entries:
            error = await self._remove_file(entry.location)
            if error:
                logger.error("Error deleting capture %s: %s", entry.location, error)
                result.errors.append(f"{entry.location}: {error}")
            else:
                result.cleared += 1

        await self._emit(EventTypes.QUEUE_CLEARED, {'kind': kind.value, 'cleared': result.cleared})
        return result

    async def cleanup_temp_files(self) -> None:
        """Remove the files of both queues, e.g. on shutdown."""
        for kind in QueueKind:
            result = await self.clear(kind)
            if result.cleared:
                logger.info("Cleaned up %d %s captures", result.cleared, kind.value)

    async def load_part(self, entry: CaptureEntry) -> InlinePart:
        """
        Read a capture's bytes for inline transport.

        Raises:
            QueueError: not_found or io_failure
        """
        try:
            return await InlinePart.from_file(entry.location)
        except FileNotFoundError as e:
            raise QueueError(QueueErrorKind.NOT_FOUND, f"Capture file not found: {entry.filename}",
                             entry.location) from e
        except OSError as e:
            raise QueueError(QueueErrorKind.IO_FAILURE, f"Failed to read capture: {e}", entry.location) from e

    async def get_preview(self, path: str) -> str:
        """
        Encode a queued capture as a data URL.

        Raises:
            QueueError: not_found if the capture is not queued or its file is gone
        """
        entry = self.find_entry(path)
        if entry is None:
            raise QueueError(QueueErrorKind.NOT_FOUND, "Capture not found", path)

        part = await self.load_part(entry)
        return f"data:{part.mime_type};base64,{part.base64_data}"

    async def _emit_capture_failed(self, error: CaptureError) -> None:
        await self._emit(EventTypes.CAPTURE_FAILED, error.to_dict())

    async def _emit(self, event_type: str, data: dict) -> None:
        if self.event_bus:
            await self.event_bus.emit(event_type, data, source="CaptureQueueManager")
