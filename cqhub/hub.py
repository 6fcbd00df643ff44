"""Provider registry hub: locate, download and verify provider plugins."""

from __future__ import annotations

import logging
import os
import shutil
import stat
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

import requests
from packaging.version import InvalidVersion, Version

from cqhub.organization import DEFAULT_ORGANIZATION, parse_provider_name
from cqhub.ui import Progress, ProgressUpdateFunc, Status, create_progress_updater
from cqhub.validate import (
    ValidationError,
    _go_arch,
    _go_os,
    validate_checksum_provider,
    validate_file,
)

GITHUB_URL = "https://github.com"
GITHUB_API_URL = "https://api.github.com"
LATEST = "latest"
PROVIDER_DISPLAY_MSG = "cq-provider-{name}@{version}"

_REQUEST_TIMEOUT = 60
_PROVIDER_MODE = 0o754


class HubError(Exception):
    """A provider could not be found, downloaded or verified."""


@dataclass(frozen=True)
class ProviderDetails:
    """A provider plugin available on the local file system."""

    name: str
    version: str
    organization: str
    file_path: str


@dataclass(frozen=True)
class RequiredProvider:
    """A provider requested by configuration, as "name" or "org/name" plus a version."""

    name: str
    version: str = LATEST

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"


def get_binary_suffix() -> str:
    """Return the "<os>_<arch>" suffix of provider binaries for this platform."""
    os_name = _go_os()
    suffix = ".exe" if os_name == "windows" else ""
    return f"{os_name}_{_go_arch()}{suffix}"


def plugin_binary_name(provider_name: str) -> str:
    """Return the release asset name of a provider binary for this platform."""
    return f"cq-provider-{provider_name}_{get_binary_suffix()}"


def _key(name: str, version: str) -> str:
    return f"{name}-{version}"


@dataclass
class Hub:
    """Keeps track of downloaded providers and fetches new ones from their releases."""

    url: str
    plugin_directory: str = field(default_factory=lambda: os.path.join(".", ".cq", "providers"))
    progress_updater: Progress | None = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))
    keyring_path: str | Path | None = None
    providers: dict[str, ProviderDetails] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.load_existing()

    def get_provider(self, provider_name: str, provider_version: str) -> ProviderDetails:
        """Return an already downloaded provider; "latest" picks the highest local version."""
        if provider_version == LATEST:
            latest, latest_original = Version("v0.0.0"), "v0.0.0"
            for details in self.providers.values():
                if details.name != provider_name:
                    continue
                try:
                    current = Version(details.version)
                except InvalidVersion:
                    self.logger.warning(
                        "bad version provider exists in directory: provider=%s version=%s",
                        details.name,
                        details.version,
                    )
                    continue
                if current > latest:
                    latest, latest_original = current, details.version
            provider_version = latest_original
        details = self.providers.get(_key(provider_name, provider_version))
        if details is None:
            raise HubError(f"provider {provider_name}@{provider_version} is missing, download it first")
        return details

    def verify_provider(self, organization: str, provider_name: str, version: str) -> bool:
        """Check the provider's signed checksums; community providers are not verified."""
        if organization != DEFAULT_ORGANIZATION:
            self._update(provider_name, Status.WARN, "skipped community provider verification...", 2)
            return True

        checksums_path = os.path.join(self.plugin_directory, organization, provider_name, f"{version}.checksums.txt")
        repo = f"{GITHUB_URL}/{organization}/cq-provider-{provider_name}/releases"
        if version == LATEST:
            checksums_url = f"{repo}/latest/download/checksums.txt"
        else:
            checksums_url = f"{repo}/download/{version}/checksums.txt"
        self._update(provider_name, Status.IN_PROGRESS, "Verifying...", 1)

        self.logger.debug("downloading checksums file: url=%s path=%s", checksums_url, checksums_path)
        try:
            self._download_file(checksums_path, checksums_url)
        except HubError as exc:
            self.logger.error("failed to download checksums file: provider=%s error=%s", provider_name, exc)
            return False
        try:
            self._download_file(checksums_path + ".sig", checksums_url + ".sig")
        except HubError as exc:
            self.logger.error("failed to download signature file: provider=%s error=%s", provider_name, exc)
            return False

        try:
            if self.keyring_path is None:
                raise ValidationError("no keyring configured")
            validate_file(checksums_path, checksums_path + ".sig", self.keyring_path)
        except (ValidationError, OSError) as exc:
            self.logger.error("validating provider signature failed: provider=%s error=%s", provider_name, exc)
            self._update(provider_name, Status.ERROR, "Bad signature", 0)
            return False

        try:
            validate_checksum_provider(self.provider_path(organization, provider_name, version), checksums_path)
        except (ValidationError, OSError) as exc:
            self.logger.error("validating provider checksum failed: provider=%s error=%s", provider_name, exc)
            self._update(provider_name, Status.ERROR, "Bad checksum", 0)
            return False

        self._update(provider_name, Status.OK, "verified", 1)
        return True

    def download_provider(self, requested_provider: RequiredProvider, no_verify: bool) -> ProviderDetails:
        """Make the requested provider available locally, downloading it when needed."""
        provider_version = requested_provider.version
        try:
            organization, provider_name = parse_provider_name(requested_provider.name)
        except ValueError as exc:
            raise HubError(str(exc)) from exc

        if provider_version == LATEST:
            provider_version = self._latest_release_tag(organization, provider_name)

        existing = self.providers.get(_key(provider_name, provider_version))
        if existing is None:
            return self._download_provider(organization, provider_name, provider_version, no_verify)
        if existing.version != provider_version:
            self.logger.info(
                "Current version is not as requested version updating provider: current=%s requested=%s",
                existing.version,
                provider_version,
            )
            return self._download_provider(organization, provider_name, provider_version, no_verify)

        if self.progress_updater is not None:
            self.progress_updater.add(
                provider_name,
                PROVIDER_DISPLAY_MSG.format(name=provider_name, version=provider_version),
                provider_version,
                2,
            )

        if no_verify:
            self._update(provider_name, Status.WARN, "skipped verification...", 2)
            return existing

        if not self.verify_provider(organization, provider_name, provider_version):
            raise HubError(f"provider {provider_name}@{provider_version} verification failed")
        return existing

    def provider_path(self, org: str, name: str, version: str) -> str:
        """Return where a provider binary of the given version is stored."""
        return os.path.join(self.plugin_directory, org, name, f"{version}-{get_binary_suffix()}")

    def load_existing(self) -> None:
        """Register providers already in the plugin directory and remove partial downloads."""
        root = self.plugin_directory
        suffix = "-" + get_binary_suffix()

        def on_error(_exc: OSError) -> None:
            self.logger.warning("failed to read plugin directory, no existing plugins loaded: directory=%s", root)

        if not os.path.isdir(root):
            on_error(FileNotFoundError(root))
            return

        for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
            dirnames.sort()
            for filename in sorted(filenames):
                if "checksums" in filename:
                    continue
                path = os.path.join(dirpath, filename)
                provider = os.path.basename(dirpath)
                if path.endswith(".tmp"):
                    self.logger.debug("found temp provider file, cleaning up: provider=%s", provider)
                    try:
                        os.remove(path)
                    except OSError:
                        self.logger.warning("failed to remove temp provider file: provider=%s", provider)
                    continue
                organization = os.path.basename(os.path.dirname(dirpath))
                version = filename.split(suffix)[0]
                self.providers[_key(provider, version)] = ProviderDetails(
                    name=provider,
                    version=version,
                    organization=organization,
                    file_path=path,
                )
                self.logger.debug("found existing provider: provider=%s version=%s", provider, version)

    def _download_provider(
        self, organization: str, provider_name: str, provider_version: str, no_verify: bool
    ) -> ProviderDetails:
        if not self._verify_registered(organization, provider_name, provider_version, no_verify):
            raise HubError(
                f"provider plugin {provider_name}@{provider_version} not registered in the provider registry"
            )
        os.makedirs(os.path.join(self.plugin_directory, organization, provider_name), exist_ok=True)

        progress_cb: ProgressUpdateFunc | None = None
        if self.progress_updater is not None:
            progress_cb = create_progress_updater(
                self.progress_updater,
                PROVIDER_DISPLAY_MSG.format(name=provider_name, version=provider_version),
            )

        provider_url = (
            f"{GITHUB_URL}/{organization}/cq-provider-{provider_name}/releases/download/"
            f"{provider_version}/{plugin_binary_name(provider_name)}"
        )
        provider_path = self.provider_path(organization, provider_name, provider_version)
        try:
            self._download_file(provider_path, provider_url, progress_cb)
        except HubError as exc:
            raise HubError(
                f"plugin {organization}/{provider_name}@{provider_version} failed to download: {exc}"
            ) from exc

        if not self.verify_provider(organization, provider_name, provider_version):
            raise HubError(f"plugin {organization}/{provider_name}@{provider_version} failed to verify")

        os.chmod(provider_path, _PROVIDER_MODE)
        details = ProviderDetails(
            name=provider_name,
            version=provider_version,
            organization=organization,
            file_path=provider_path,
        )
        self.providers[_key(provider_name, provider_version)] = details
        return details

    def _latest_release_tag(self, organization: str, provider_name: str) -> str:
        url = f"{GITHUB_API_URL}/repos/{organization}/cq-provider-{provider_name}/releases/latest"
        try:
            response = requests.get(url, timeout=_REQUEST_TIMEOUT)
            response.raise_for_status()
            tag = response.json().get("tag_name")
        except (requests.RequestException, ValueError) as exc:
            raise HubError(f"failed to get latest release of {organization}/{provider_name}: {exc}") from exc
        if not tag:
            raise HubError(f"latest release of {organization}/{provider_name} has no tag")
        return str(tag)

    def _verify_registered(self, organization: str, provider_name: str, version: str, no_verify: bool) -> bool:
        if no_verify:
            self.logger.warning("skipping plugin registry verification: provider=%s", provider_name)
            return True
        self.logger.debug("verifying provider plugin is registered: provider=%s version=%s", provider_name, version)
        if not self._is_provider_registered(organization, provider_name):
            return False
        self.logger.debug("provider plugin is registered: provider=%s version=%s", provider_name, version)
        return True

    def _is_provider_registered(self, org: str, provider: str) -> bool:
        url = self.url % (org, provider)
        try:
            response = requests.get(url, timeout=_REQUEST_TIMEOUT)
        except requests.RequestException as exc:
            self.logger.error("failed to check if provider is registered: error=%s", exc)
            return False
        with response:
            return response.status_code == requests.codes.ok

    def _download_file(
        self,
        path: str,
        url: str,
        progress_cb: Callable[[BinaryIO, int], BinaryIO] | None = None,
    ) -> None:
        tmp_path = path + ".tmp"
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        try:
            with requests.get(url, stream=True, timeout=_REQUEST_TIMEOUT) as response:
                response.raise_for_status()
                response.raw.decode_content = True
                reader: BinaryIO = response.raw
                length = response.headers.get("Content-Length")
                if progress_cb is not None and length is not None and length.isdigit():
                    reader = progress_cb(reader, int(length))
                with open(tmp_path, "wb") as out:
                    shutil.copyfileobj(reader, out)
            os.replace(tmp_path, path)
        except (requests.RequestException, OSError) as exc:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise HubError(f"failed to download {url}: {exc}") from exc

    def _update(self, provider_name: str, status: Status, msg: str, amount: int) -> None:
        if self.progress_updater is not None:
            self.progress_updater.update(provider_name, status, msg, amount)


def _is_executable_mode(path: str) -> bool:
    return bool(os.stat(path).st_mode & stat.S_IXUSR)