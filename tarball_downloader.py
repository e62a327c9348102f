import hashlib

import requests

from errors import FetchError

TARBALL_URL = "https://github.com/openzfs/zfs/releases/download/zfs-{version}/zfs-{version}.tar.gz"


class TarballDownloader:
    def __init__(self, url_template=TARBALL_URL, timeout=60, user_agent=None):
        self.url_template = url_template
        self.timeout = timeout
        self.user_agent = user_agent

    def tarball_url(self, version):
        """Release tarball URL for an OpenZFS version"""
        return self.url_template.format(version=version)

    def sha256(self, version):
        """Download the release tarball and return its sha256 hex digest.

        The body is hashed as it streams in and never written to disk.
        """
        url = self.tarball_url(version)
        headers = {'User-Agent': self.user_agent} if self.user_agent else {}

        sha256_hash = hashlib.sha256()
        size = 0
        try:
            response = requests.get(url, headers=headers, stream=True, timeout=self.timeout)
            try:
                response.raise_for_status()
                for chunk in response.iter_content(chunk_size=8192):
                    if chunk:
                        sha256_hash.update(chunk)
                        size += len(chunk)
            finally:
                response.close()
        except requests.RequestException as e:
            raise FetchError(f"Failed to download ZFS tarball {url}: {e}")

        if size == 0:
            raise FetchError(f"Downloaded ZFS tarball is empty: {url}")

        return sha256_hash.hexdigest()
