"""
Reading and rewriting the version fields of a PKGBUILD recipe
"""

import fcntl
import hashlib
import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from errors import LockError, ParseError, RecipeWriteError, UpdaterError

# Each pattern captures the field value; the lookbehind keeps `_zfsver` from
# matching inside a longer identifier such as `old_zfsver`.
FIELD_PATTERNS = {
    'zfs_version': re.compile(r'(?<![\w])_zfsver="([^"]*)"'),
    'kernel_version': re.compile(r'(?<![\w])_kernelver="([^"]*)"'),
    'kernel_version_full': re.compile(r'(?<![\w])_kernelver_full="([^"]*)"'),
    'checksum': re.compile(r'(?<![\w])sha256sums=\("([^"]*)"\)'),
    'release_number': re.compile(r'^pkgrel=(.*)$', re.MULTILINE),
}

ZFS_VERSION_RE = re.compile(r'^\d+(?:\.\d+)+(?:[-.][0-9A-Za-z]+)*$')
KERNEL_VERSION_RE = re.compile(r'^\d+(?:\.[0-9A-Za-z]+)+-\d+(?:\.\d+)?$')
CHECKSUM_RE = re.compile(r'^[0-9a-f]{64}$')


@dataclass(frozen=True)
class RecipeState:
    """Version fields recorded in a PKGBUILD"""

    zfs_version: str
    kernel_version: str
    checksum: Optional[str] = None
    release_number: Optional[str] = None


def is_valid_zfs_version(value):
    return bool(value) and ZFS_VERSION_RE.match(value) is not None


def is_valid_kernel_version(value):
    return bool(value) and KERNEL_VERSION_RE.match(value) is not None


def is_valid_checksum(value):
    return bool(value) and CHECKSUM_RE.match(value) is not None


def _find_field(text, name):
    match = FIELD_PATTERNS[name].search(text)
    if not match:
        return None
    return match.group(1).strip()


def parse_recipe(text, source='PKGBUILD'):
    """Extract the recipe state from PKGBUILD text.

    Both version fields must be present and well formed. The checksum and
    pkgrel are returned as found (or None) and checked later by whoever
    needs them.
    """
    zfs_version = _find_field(text, 'zfs_version')
    if zfs_version is None:
        raise ParseError(f"_zfsver not found in {source}")
    if not is_valid_zfs_version(zfs_version):
        raise ParseError(f"Malformed _zfsver in {source}: {zfs_version!r}")

    kernel_version = _find_field(text, 'kernel_version')
    if kernel_version is None:
        raise ParseError(f"_kernelver not found in {source}")
    if not is_valid_kernel_version(kernel_version):
        raise ParseError(f"Malformed _kernelver in {source}: {kernel_version!r}")

    release_number = _find_field(text, 'release_number')
    if release_number is not None:
        release_number = release_number.strip('\'"')

    return RecipeState(
        zfs_version=zfs_version,
        kernel_version=kernel_version,
        checksum=_find_field(text, 'checksum'),
        release_number=release_number,
    )


def read_recipe(path):
    """Read and parse the recipe file at path"""
    path = Path(path)
    return parse_recipe(_read_text(path), source=str(path))


def _read_text(path):
    try:
        return path.read_text(encoding='utf-8')
    except UnicodeDecodeError as e:
        raise ParseError(f"Recipe {path} is not valid UTF-8: {e}")
    except OSError as e:
        raise ParseError(f"Cannot read recipe {path}: {e}")


def render_update(text, zfs_version, kernel_version, checksum):
    """Return text with the version fields, checksum and pkgrel replaced.

    Only `_zfsver`, `_kernelver`, `_kernelver_full`, `sha256sums` and
    `pkgrel` are touched. Every field except `_kernelver_full` must already
    exist, otherwise nothing is rendered.
    """
    replacements = [
        ('zfs_version', lambda m: f'_zfsver="{zfs_version}"', True),
        ('kernel_version', lambda m: f'_kernelver="{kernel_version}"', True),
        ('kernel_version_full', lambda m: f'_kernelver_full="{kernel_version}"', False),
        ('checksum', lambda m: f'sha256sums=("{checksum}")', True),
        ('release_number', lambda m: 'pkgrel=1', True),
    ]

    missing = []
    for name, replacement, required in replacements:
        text, count = FIELD_PATTERNS[name].subn(replacement, text)
        if required and count == 0:
            missing.append(name)

    if missing:
        raise ParseError(f"Recipe is missing fields: {', '.join(missing)}")

    return text


def backup_path_for(path):
    path = Path(path)
    return path.with_name(path.name + '.bak')


def write_recipe(path, zfs_version, kernel_version, checksum):
    """Back up the recipe, then replace it with the updated text.

    The new content is written to a temporary sibling and moved into place,
    so readers see either the old or the new recipe.
    """
    path = Path(path)
    original = _read_text(path)
    updated = render_update(original, zfs_version, kernel_version, checksum)

    backup = backup_path_for(path)
    try:
        shutil.copy2(path, backup)
    except OSError as e:
        raise RecipeWriteError(f"Cannot back up {path} to {backup}: {e}")

    try:
        fd, tmp_name = tempfile.mkstemp(prefix=f'.{path.name}.', dir=path.parent)
    except OSError as e:
        raise RecipeWriteError(f"Cannot create a temporary file next to {path}: {e}")

    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(updated)
        shutil.copymode(path, tmp_name)
        os.replace(tmp_name, path)
    except OSError as e:
        os.unlink(tmp_name)
        raise RecipeWriteError(f"Cannot write {path}: {e}")

    return backup


def restore_backup(path):
    """Copy PKGBUILD.bak back over the recipe"""
    path = Path(path)
    backup = backup_path_for(path)
    if not backup.exists():
        raise UpdaterError(f"No backup found at {backup}")
    try:
        shutil.copy2(backup, path)
    except OSError as e:
        raise RecipeWriteError(f"Cannot restore {path} from {backup}: {e}")
    return backup


def lock_path_for(path):
    digest = hashlib.sha1(str(Path(path).resolve()).encode()).hexdigest()[:16]
    return Path(tempfile.gettempdir()) / f'zpkg-{digest}.lock'


@contextmanager
def recipe_lock(path):
    """Hold an exclusive advisory lock on the recipe for the enclosed block.

    The lock file sits in the shared temp directory, so it is never truncated
    and a symlink in its place is refused.
    """
    lock_path = lock_path_for(path)
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_RDWR | os.O_NOFOLLOW, 0o600)
    except OSError as e:
        raise LockError(f"Cannot open lock file {lock_path}: {e}")

    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise LockError(f"Another run is updating {path} (lock: {lock_path})")
        try:
            yield lock_path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
