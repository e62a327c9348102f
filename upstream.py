"""
Latest-version lookups for the two upstream sources: the Arch Linux
linux-zen package and the OpenZFS GitHub releases
"""

from dataclasses import dataclass

import requests

from errors import FetchError, ParseError
from pkgbuild import is_valid_kernel_version, is_valid_zfs_version

KERNEL_API = "https://archlinux.org/packages/extra/x86_64/linux-zen/json/"
ZFS_API = "https://api.github.com/repos/openzfs/zfs/releases/latest"
ZFS_TAG_PREFIX = "zfs-"


@dataclass(frozen=True)
class UpstreamVersion:
    """A version string fetched from one upstream source"""

    identifier: str
    value: str


def fetch_json(url, what, timeout=60, user_agent=None):
    """GET url and decode a JSON object body.

    Transport errors, timeouts, HTTP errors and empty bodies raise
    FetchError. A body that is not a JSON object raises ParseError.
    """
    headers = {'Accept': 'application/json'}
    if user_agent:
        headers['User-Agent'] = user_agent

    try:
        response = requests.get(url, headers=headers, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise FetchError(f"Failed to fetch {what} from {url}: {e}")

    if not response.content or not response.content.strip():
        raise FetchError(f"Empty response for {what} from {url}")

    try:
        data = response.json()
    except ValueError as e:
        raise ParseError(f"Invalid JSON for {what} from {url}: {e}")

    if not isinstance(data, dict):
        raise ParseError(f"Unexpected JSON for {what} from {url}: expected an object")

    return data


def _required_field(data, key, what):
    value = data.get(key)
    if value is None or str(value).strip() == '':
        raise ParseError(f"Failed to parse {what}: '{key}' missing from response")
    return str(value).strip()


def fetch_latest_kernel_version(url=KERNEL_API, timeout=60, user_agent=None):
    """Return the repository linux-zen version as `pkgver-pkgrel`"""
    data = fetch_json(url, 'kernel version', timeout=timeout, user_agent=user_agent)

    pkgver = _required_field(data, 'pkgver', 'kernel version')
    pkgrel = _required_field(data, 'pkgrel', 'kernel version')
    version = f"{pkgver}-{pkgrel}"

    if not is_valid_kernel_version(version):
        raise ParseError(f"Unexpected kernel version format: {version!r}")

    return UpstreamVersion('kernel', version)


def fetch_latest_zfs_version(url=ZFS_API, tag_prefix=ZFS_TAG_PREFIX, timeout=60, user_agent=None):
    """Return the latest OpenZFS release with the tag prefix removed"""
    data = fetch_json(url, 'ZFS version', timeout=timeout, user_agent=user_agent)

    tag = _required_field(data, 'tag_name', 'ZFS version')
    version = tag[len(tag_prefix):] if tag_prefix and tag.startswith(tag_prefix) else tag

    if not is_valid_zfs_version(version):
        raise ParseError(f"Unexpected ZFS release tag: {tag!r}")

    return UpstreamVersion('zfs', version)
