"""How each server variant gets its launchable artifact onto a host.

``acquisition_strategy`` maps a (variant, version) pair onto exactly one of
three strategy types; the provisioning workflow matches on the type.
"""

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import assert_never

import httpx

from mcfleet.core.exceptions import DownloadFailed, InvalidRequest
from mcfleet.schemas.server import ServerVariant

logger = logging.getLogger(__name__)

SERVER_JAR = "server.jar"
RUN_SCRIPT = "run.sh"

VANILLA_MANIFEST_URL = "https://launchermeta.mojang.com/mc/game/version_manifest.json"

PAPER_BUILDS = {
    "1.20.1": 196,
    "1.20.2": 318,
    "1.20.4": 497,
    "1.21": 119,
    "1.21.1": 131,
}

FORGE_VERSIONS = {
    "1.20.1": "47.3.0",
    "1.20.2": "48.1.0",
    "1.20.4": "49.1.0",
    "1.21": "51.0.33",
    "1.21.1": "52.0.16",
}

FABRIC_INSTALLER_VERSION = "1.0.1"


class LaunchMode(StrEnum):
    JAR = "jar"  # java -jar server.jar
    SCRIPT = "script"  # ./run.sh, written by the installer


@dataclass(frozen=True)
class DirectDownload:
    url: str


@dataclass(frozen=True)
class ManifestLookup:
    manifest_url: str
    version: str


@dataclass(frozen=True)
class InstallerRun:
    installer_url: str
    installer_name: str
    args: tuple[str, ...]
    # Jar copied to server.jar when no launch script is produced
    launcher_pattern: str
    # Launch script the installer may write instead of a single jar
    script: str | None = None


AcquisitionStrategy = DirectDownload | ManifestLookup | InstallerRun


def supported_versions(variant: ServerVariant) -> list[str] | None:
    """Versions with a pinned artifact, or None when any release is accepted."""
    match variant:
        case ServerVariant.PAPER:
            return list(PAPER_BUILDS)
        case ServerVariant.FORGE:
            return list(FORGE_VERSIONS)
        case ServerVariant.VANILLA | ServerVariant.PURPUR | ServerVariant.FABRIC:
            return None
        case _:
            assert_never(variant)


def acquisition_strategy(variant: ServerVariant, version: str) -> AcquisitionStrategy:
    match variant:
        case ServerVariant.PAPER:
            build = PAPER_BUILDS.get(version)
            if build is None:
                raise InvalidRequest(f"Paper version {version} is not supported")
            return DirectDownload(
                f"https://api.papermc.io/v2/projects/paper/versions/{version}"
                f"/builds/{build}/downloads/paper-{version}-{build}.jar"
            )
        case ServerVariant.PURPUR:
            return DirectDownload(f"https://api.purpurmc.org/v2/purpur/{version}/latest/download")
        case ServerVariant.VANILLA:
            return ManifestLookup(VANILLA_MANIFEST_URL, version)
        case ServerVariant.FABRIC:
            v = FABRIC_INSTALLER_VERSION
            return InstallerRun(
                installer_url=(
                    "https://maven.fabricmc.net/net/fabricmc/fabric-installer"
                    f"/{v}/fabric-installer-{v}.jar"
                ),
                installer_name="fabric-installer.jar",
                args=("server", "-mcversion", version, "-downloadMinecraft"),
                launcher_pattern="fabric-server-launch.jar",
            )
        case ServerVariant.FORGE:
            forge = FORGE_VERSIONS.get(version)
            if forge is None:
                raise InvalidRequest(f"Forge is not available for Minecraft {version}")
            return InstallerRun(
                installer_url=(
                    "https://maven.minecraftforge.net/net/minecraftforge/forge"
                    f"/{version}-{forge}/forge-{version}-{forge}-installer.jar"
                ),
                installer_name="forge-installer.jar",
                args=("--installServer",),
                launcher_pattern="forge-*.jar",
                script=RUN_SCRIPT,
            )
        case _:
            assert_never(variant)


class ManifestResolver:
    """Resolves a vanilla release to its server jar URL via the Mojang manifest."""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 30.0):
        self._client = client
        self.timeout = timeout

    async def _get_json(self, client: httpx.AsyncClient, url: str) -> dict:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.json()

    async def resolve(self, lookup: ManifestLookup) -> str:
        try:
            if self._client is not None:
                return await self._resolve(self._client, lookup)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await self._resolve(client, lookup)
        except httpx.HTTPError as e:
            logger.error("Manifest lookup for %s failed: %s", lookup.version, e)
            raise DownloadFailed(f"Could not fetch version manifest: {e}") from e

    async def _resolve(self, client: httpx.AsyncClient, lookup: ManifestLookup) -> str:
        manifest = await self._get_json(client, lookup.manifest_url)
        entry = next(
            (v for v in manifest.get("versions", []) if v.get("id") == lookup.version), None
        )
        if entry is None:
            raise InvalidRequest(f"Minecraft version {lookup.version} not found")
        details = await self._get_json(client, entry["url"])
        url = details.get("downloads", {}).get("server", {}).get("url")
        if not url:
            raise DownloadFailed(f"No server download available for {lookup.version}")
        return url
