"""Firmware update and diagnostics upload, delegated to external collaborators."""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from ocpp.v16.enums import DiagnosticsStatus, FirmwareStatus

from .errors import MaintenanceError

logger = logging.getLogger(__name__)

StatusReporter = Callable[[str], Awaitable[None]]


class FirmwareInstaller(ABC):
    """Fetches and installs a firmware image."""

    @abstractmethod
    async def download(self, location: str) -> None:
        """Fetch the image. Raises MaintenanceError on failure."""

    @abstractmethod
    async def install(self) -> None:
        """Install the fetched image. Raises MaintenanceError on failure."""


class DiagnosticsUploader(ABC):
    """Collects station diagnostics and ships them to the central system's location."""

    @abstractmethod
    async def collect(self) -> str:
        """Prepare the diagnostics archive and return its file name."""

    @abstractmethod
    async def upload(self, file_name: str, location: str) -> None:
        """Upload ``file_name`` to ``location``. Raises MaintenanceError on failure."""


async def _wait_until(when: datetime | None) -> None:
    if when is None:
        return
    delay = (when - datetime.now(UTC)).total_seconds()
    if delay > 0:
        logger.info(f"Waiting {delay:.0f}s before starting")
        await asyncio.sleep(delay)


async def update_firmware(
    installer: FirmwareInstaller | None,
    location: str,
    report: StatusReporter,
    retrieve_date: datetime | None = None,
    retries: int = 0,
    retry_interval: float = 60.0,
) -> FirmwareStatus:
    """Run a firmware update, reporting every step through ``report``."""
    if installer is None:
        logger.warning("No firmware installer configured")
        await report(FirmwareStatus.download_failed)
        return FirmwareStatus.download_failed

    await _wait_until(retrieve_date)
    for attempt in range(retries + 1):
        await report(FirmwareStatus.downloading)
        try:
            await installer.download(location)
            break
        except MaintenanceError as e:
            logger.warning(f"Firmware download attempt {attempt + 1} failed: {e}")
            if attempt == retries:
                await report(FirmwareStatus.download_failed)
                return FirmwareStatus.download_failed
            await asyncio.sleep(retry_interval)
    await report(FirmwareStatus.downloaded)

    await report(FirmwareStatus.installing)
    try:
        await installer.install()
    except MaintenanceError as e:
        logger.error(f"Firmware installation failed: {e}")
        await report(FirmwareStatus.installation_failed)
        return FirmwareStatus.installation_failed
    await report(FirmwareStatus.installed)
    return FirmwareStatus.installed


async def upload_diagnostics(
    uploader: DiagnosticsUploader,
    file_name: str,
    location: str,
    report: StatusReporter,
) -> DiagnosticsStatus:
    await report(DiagnosticsStatus.uploading)
    try:
        await uploader.upload(file_name, location)
    except MaintenanceError as e:
        logger.warning(f"Diagnostics upload of {file_name} failed: {e}")
        await report(DiagnosticsStatus.upload_failed)
        return DiagnosticsStatus.upload_failed
    await report(DiagnosticsStatus.uploaded)
    return DiagnosticsStatus.uploaded
