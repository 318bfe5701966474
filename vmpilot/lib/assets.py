"""Decide which disk images to pull out of the backend after a run.

Variables driving the choice, for each disk index ``n`` up to NUMDISKS:

- ``STORE_HDD_n``: keep the image in the private asset directory
- ``PUBLISH_HDD_n``: publish it (ignored when STORE_HDD_n is set)
- ``FORCE_PUBLISH_HDD_n``: publish even if the tests did not complete

plus ``PUBLISH_PFLASH_VARS`` for the UEFI variable store when ``UEFI`` is set.
Images are only consistent when the VM was shut down cleanly, so any
regular asset without a clean shutdown aborts the whole stage.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from vmpilot.lib.backend import AssetExtractionError

if TYPE_CHECKING:
    from vmpilot.lib.backend import BackendDriver
    from vmpilot.lib.session import Session

log = logging.getLogger(__name__)

_FORMAT_RE = re.compile(r"\.([A-Za-z0-9]+)$")


class UnsafeShutdownError(Exception):
    """Assets are pending but the VM did not shut down cleanly."""


class AssetDirectory(str, enum.Enum):
    PUBLIC = "assets_public"
    PRIVATE = "assets_private"


@dataclass(frozen=True)
class AssetDescriptor:
    index: int | None
    name: str
    directory: AssetDirectory
    format: str | None
    pflash_vars: bool = False

    @classmethod
    def for_disk(cls, index: int, name: str, directory: AssetDirectory) -> AssetDescriptor:
        match = _FORMAT_RE.search(name)
        return cls(index, name, directory, match.group(1) if match else None)

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "dir": self.directory.value, "format": self.format}
        if self.pflash_vars:
            data["pflash_vars"] = 1
        else:
            data["hdd_num"] = self.index
        return data


def _num_disks(variables: dict[str, Any]) -> int:
    try:
        return int(variables.get("NUMDISKS") or 1)
    except (TypeError, ValueError):
        log.warning("Ignoring invalid NUMDISKS=%r, assuming 1", variables.get("NUMDISKS"))
        return 1


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false", "no")
    return bool(value)


def generated_assets(variables: dict[str, Any]) -> list[AssetDescriptor]:
    """Assets requested through STORE_/PUBLISH_ variables."""
    assets = []
    for i in range(1, _num_disks(variables) + 1):
        name = variables.get(f"STORE_HDD_{i}")
        directory = AssetDirectory.PRIVATE
        if not name:
            name = variables.get(f"PUBLISH_HDD_{i}")
            directory = AssetDirectory.PUBLIC
        if not name:
            continue
        assets.append(AssetDescriptor.for_disk(i, str(name), directory))
    pflash = variables.get("PUBLISH_PFLASH_VARS")
    if _truthy(variables.get("UEFI")) and pflash:
        assets.append(AssetDescriptor(None, str(pflash), AssetDirectory.PUBLIC, "qcow2", pflash_vars=True))
    return assets


def forced_assets(variables: dict[str, Any]) -> list[AssetDescriptor]:
    """Assets requested through FORCE_PUBLISH_ variables."""
    assets = []
    for i in range(1, _num_disks(variables) + 1):
        name = variables.get(f"FORCE_PUBLISH_HDD_{i}")
        if not name:
            continue
        log.info("Requested to force the publication of %s", name)
        assets.append(AssetDescriptor.for_disk(i, str(name), AssetDirectory.PUBLIC))
    return assets


def plan_extraction(
    variables: dict[str, Any],
    *,
    test_completed: bool,
    clean_shutdown: bool | None,
) -> list[AssetDescriptor]:
    """Build the extraction work list, or raise UnsafeShutdownError."""
    work: list[AssetDescriptor] = []
    if test_completed:
        work = generated_assets(variables)
        if work and not clean_shutdown:
            msg = "unable to handle generated assets: machine not shut down when uploading disks"
            raise UnsafeShutdownError(msg)
    work.extend(forced_assets(variables))
    return work


def handle_generated_assets(
    backend: BackendDriver,
    session: Session,
    *,
    test_completed: bool,
    clean_shutdown: bool | None,
) -> int:
    """Extract every planned asset. Returns 0 on success, 1 on any failure."""
    try:
        work = plan_extraction(session.vars, test_completed=test_completed, clean_shutdown=clean_shutdown)
    except UnsafeShutdownError as e:
        session.serialize_state("vmpilot", str(e), error=True)
        return 1

    return_code = 0
    for asset in work:
        log.info("Extracting %s into %s", asset.name, asset.directory.value)
        try:
            backend.extract_asset(asset)
        except AssetExtractionError as e:
            session.serialize_state("backend", f"unable to extract assets: {e}", error=True)
            return_code = 1
    return return_code
