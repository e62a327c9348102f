#!/usr/bin/env python3
"""
zpkg - keeps the zfs-linux-zen PKGBUILD in step with linux-zen and OpenZFS
"""

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import click
import yaml
from packaging.version import InvalidVersion, Version

from console import Console
from errors import ParseError, ToolUnavailable, UpdaterError
from pkgbuild import (
    is_valid_checksum,
    read_recipe,
    recipe_lock,
    restore_backup,
    write_recipe,
)
from srcinfo import regenerate_srcinfo
from tarball_downloader import TARBALL_URL, TarballDownloader
from upstream import (
    KERNEL_API,
    ZFS_API,
    ZFS_TAG_PREFIX,
    fetch_latest_kernel_version,
    fetch_latest_zfs_version,
)

__version__ = "1.0.0"

DEFAULT_CONFIG = {
    'pkgbuild': 'PKGBUILD',
    'kernel_api': KERNEL_API,
    'zfs_api': ZFS_API,
    'tarball_url': TARBALL_URL,
    'tag_prefix': ZFS_TAG_PREFIX,
    'timeout': 60,
    'user_agent': f"zpkg/{__version__}",
    'srcinfo': True,
    'lock': True,
}


@dataclass(frozen=True)
class UpdateDecision:
    needs_update: bool
    changed_fields: frozenset
    reason: str
    zfs_version: str
    kernel_version: str


@dataclass
class SyncResult:
    up_to_date: bool
    updated: bool
    zfs_version: Optional[str] = None
    kernel_version: Optional[str] = None
    checksum: Optional[str] = None
    reason: Optional[str] = None
    backup_path: Optional[Path] = None


def decide_update(current, latest_zfs, latest_kernel):
    """Compare recorded and latest versions by exact string equality.

    Any difference counts, a lower upstream version included.
    """
    changed = []
    reasons = []

    if current.zfs_version != latest_zfs:
        changed.append('zfs_version')
        reasons.append(f"ZFS: {current.zfs_version} → {latest_zfs}")

    if current.kernel_version != latest_kernel:
        changed.append('kernel_version')
        reasons.append(f"Kernel: {current.kernel_version} → {latest_kernel}")

    return UpdateDecision(
        needs_update=bool(changed),
        changed_fields=frozenset(changed),
        reason=", ".join(reasons),
        zfs_version=latest_zfs,
        kernel_version=latest_kernel,
    )


def is_downgrade(current, latest):
    """True when latest parses as an older version than current"""
    try:
        return Version(latest) < Version(current)
    except InvalidVersion:
        return False


def write_github_output(values, path=None):
    """Append KEY=value lines to the $GITHUB_OUTPUT file, if there is one"""
    path = path or os.environ.get('GITHUB_OUTPUT')
    if not path:
        return False

    with open(path, 'a', encoding='utf-8') as f:
        for key, value in values.items():
            f.write(f"{key}={value}\n")
    return True


class PackageUpdater:
    def __init__(self, config_path=None, pkgbuild=None, console=None):
        self.console = console or Console()
        self.config = self.load_config(config_path)
        if pkgbuild:
            self.config['pkgbuild'] = pkgbuild
        self.downloader = TarballDownloader(
            url_template=self.config['tarball_url'],
            timeout=self.config['timeout'],
            user_agent=self.config['user_agent'],
        )

    @property
    def recipe_path(self):
        return Path(self.config['pkgbuild'])

    def load_config(self, path=None):
        """Load configuration from YAML, falling back to built-in defaults"""
        config = dict(DEFAULT_CONFIG)

        if path and not os.path.exists(path):
            raise UpdaterError(f"Config file not found: {path}")

        config_locations = [
            path,
            os.path.expanduser("~/.config/zpkg/config.yaml"),
            "./zpkg.yaml",
        ]

        for config_path in config_locations:
            if not config_path or not os.path.exists(config_path):
                continue
            try:
                with open(config_path, 'r') as f:
                    loaded = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ParseError(f"Error parsing YAML in {config_path}: {e}")

            if loaded is None:
                loaded = {}
            if not isinstance(loaded, dict):
                raise ParseError(f"Config {config_path} must be a mapping")

            unknown = sorted(set(loaded) - set(DEFAULT_CONFIG))
            if unknown:
                self.console.warn(f"Ignoring unknown config keys in {config_path}: {', '.join(unknown)}")
            config.update({k: v for k, v in loaded.items() if k in DEFAULT_CONFIG})
            break

        timeout = config['timeout']
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ParseError(f"Config 'timeout' must be a positive number, got {timeout!r}")

        return config

    def get_current_state(self):
        return read_recipe(self.recipe_path)

    def get_latest_kernel_version(self):
        return fetch_latest_kernel_version(
            self.config['kernel_api'],
            timeout=self.config['timeout'],
            user_agent=self.config['user_agent'],
        ).value

    def get_latest_zfs_version(self):
        return fetch_latest_zfs_version(
            self.config['zfs_api'],
            tag_prefix=self.config['tag_prefix'],
            timeout=self.config['timeout'],
            user_agent=self.config['user_agent'],
        ).value

    def check(self):
        """Read the recipe, fetch both upstream versions and decide.

        Nothing is written.
        """
        self.console.info("Starting package update check...")

        current = self.get_current_state()
        self.console.info(f"Current ZFS version: {current.zfs_version}")
        self.console.info(f"Current kernel version: {current.kernel_version}")

        self.console.info("Checking for latest versions...")
        latest_kernel = self.get_latest_kernel_version()
        latest_zfs = self.get_latest_zfs_version()
        self.console.info(f"Latest ZFS version: {latest_zfs}")
        self.console.info(f"Latest kernel version: {latest_kernel}")

        decision = decide_update(current, latest_zfs, latest_kernel)
        if 'zfs_version' in decision.changed_fields and is_downgrade(current.zfs_version, latest_zfs):
            self.console.warn(f"Latest ZFS release {latest_zfs} is older than {current.zfs_version}")

        return current, decision

    def compute_checksum(self, current, decision):
        """New tarball checksum when ZFS changed, else the recorded one"""
        if 'zfs_version' in decision.changed_fields:
            self.console.info(f"Downloading ZFS {decision.zfs_version} tarball to calculate checksum...")
            checksum = self.downloader.sha256(decision.zfs_version)
            self.console.info(f"New SHA256: {checksum}")
            return checksum

        if not is_valid_checksum(current.checksum):
            raise ParseError(f"Malformed or missing sha256sums in {self.recipe_path}: {current.checksum!r}")
        return current.checksum

    def synchronize(self, srcinfo=None):
        """Bring the recipe up to date with both upstream sources"""
        if srcinfo is None:
            srcinfo = self.config['srcinfo']

        if self.config['lock']:
            with recipe_lock(self.recipe_path):
                return self._synchronize(srcinfo)
        return self._synchronize(srcinfo)

    def _synchronize(self, srcinfo):
        current, decision = self.check()

        if not decision.needs_update:
            self.console.info("Package is up to date!")
            return SyncResult(
                up_to_date=True,
                updated=False,
                zfs_version=current.zfs_version,
                kernel_version=current.kernel_version,
                checksum=current.checksum,
            )

        self.console.info(f"Update needed: {decision.reason}")
        checksum = self.compute_checksum(current, decision)

        self.console.info("Updating PKGBUILD...")
        backup = write_recipe(self.recipe_path, decision.zfs_version, decision.kernel_version, checksum)
        self.console.info(f"PKGBUILD updated successfully (backup: {backup})")

        if srcinfo:
            self.update_srcinfo()

        self.console.info("Update completed successfully!")
        self.console.info(f"Update summary: {decision.reason}")

        return SyncResult(
            up_to_date=False,
            updated=True,
            zfs_version=decision.zfs_version,
            kernel_version=decision.kernel_version,
            checksum=checksum,
            reason=decision.reason,
            backup_path=backup,
        )

    def update_srcinfo(self):
        """Regenerate .SRCINFO; a missing makepkg only warns"""
        self.console.info("Generating .SRCINFO...")
        try:
            path = regenerate_srcinfo(self.recipe_path)
        except ToolUnavailable as e:
            self.console.warn(str(e))
            self.console.warn("You may need to install pacman/makepkg or generate .SRCINFO manually")
            return None
        self.console.info(".SRCINFO generated successfully")
        return path

    def publish_result(self, result):
        """Report a sync result on the GitHub Actions output channel"""
        if result.up_to_date:
            values = {'UP_TO_DATE': 'true'}
        else:
            values = {
                'UPDATED': 'true',
                'ZFS_VERSION': result.zfs_version,
                'KERNEL_VERSION': result.kernel_version,
                'UPDATE_REASON': result.reason,
            }
        self._write_output(values)

    def publish_decision(self, decision):
        if decision.needs_update:
            values = {
                'NEEDS_UPDATE': 'true',
                'ZFS_VERSION': decision.zfs_version,
                'KERNEL_VERSION': decision.kernel_version,
                'UPDATE_REASON': decision.reason,
            }
        else:
            values = {'UP_TO_DATE': 'true'}
        self._write_output(values)

    def _write_output(self, values):
        try:
            write_github_output(values)
        except OSError as e:
            self.console.warn(f"Could not write GitHub output: {e}")

    def restore(self):
        backup = restore_backup(self.recipe_path)
        self.console.info(f"Restored {self.recipe_path} from {backup}")
        return backup


def _fail(console, error):
    console.error(str(error))
    sys.exit(1)


# CLI Interface
@click.group(invoke_without_command=True)
@click.option('--config', 'config_path', envvar='ZPKG_CONFIG', type=click.Path(dir_okay=False),
              help='Path to a YAML config file')
@click.option('--pkgbuild', type=click.Path(dir_okay=False), help='PKGBUILD to check and update')
@click.option('--quiet', '-q', is_flag=True, help='Only print warnings and errors')
@click.version_option(__version__, prog_name='zpkg')
@click.pass_context
def cli(ctx, config_path, pkgbuild, quiet):
    """zpkg - keeps the zfs-linux-zen PKGBUILD in step with linux-zen and OpenZFS"""
    ctx.ensure_object(dict)
    console = Console(quiet=quiet)
    ctx.obj['console'] = console
    try:
        ctx.obj['pm'] = PackageUpdater(config_path, pkgbuild=pkgbuild, console=console)
    except UpdaterError as e:
        _fail(console, e)

    if ctx.invoked_subcommand is None:
        ctx.invoke(update)


@cli.command()
@click.option('--srcinfo/--no-srcinfo', default=None, help='Regenerate .SRCINFO after an update')
@click.pass_context
def update(ctx, srcinfo):
    """Check upstream versions and update the PKGBUILD"""
    pm = ctx.obj['pm']
    try:
        result = pm.synchronize(srcinfo=srcinfo)
    except UpdaterError as e:
        _fail(ctx.obj['console'], e)
    pm.publish_result(result)


@cli.command()
@click.pass_context
def check(ctx):
    """Report whether an update is needed without changing anything"""
    pm = ctx.obj['pm']
    try:
        _, decision = pm.check()
    except UpdaterError as e:
        _fail(ctx.obj['console'], e)

    if decision.needs_update:
        click.echo(f"Update available: {decision.reason}")
    else:
        click.echo("Package is up to date")
    pm.publish_decision(decision)


@cli.command()
@click.pass_context
def status(ctx):
    """Show the versions recorded in the PKGBUILD"""
    pm = ctx.obj['pm']
    try:
        state = pm.get_current_state()
    except UpdaterError as e:
        _fail(ctx.obj['console'], e)

    click.echo(f"{'PKGBUILD:':<12} {pm.recipe_path}")
    click.echo(f"{'ZFS:':<12} {state.zfs_version}")
    click.echo(f"{'Kernel:':<12} {state.kernel_version}")
    click.echo(f"{'SHA256:':<12} {state.checksum or '-'}")
    click.echo(f"{'pkgrel:':<12} {state.release_number or '-'}")


@cli.command()
@click.pass_context
def srcinfo(ctx):
    """Regenerate .SRCINFO from the PKGBUILD"""
    try:
        ctx.obj['pm'].update_srcinfo()
    except UpdaterError as e:
        _fail(ctx.obj['console'], e)


@cli.command()
@click.pass_context
def restore(ctx):
    """Restore the PKGBUILD from its .bak copy"""
    try:
        ctx.obj['pm'].restore()
    except UpdaterError as e:
        _fail(ctx.obj['console'], e)


@cli.command()
@click.argument('version')
@click.pass_context
def checksum(ctx, version):
    """Print the sha256 of an OpenZFS release tarball"""
    pm = ctx.obj['pm']
    try:
        digest = pm.downloader.sha256(version)
    except UpdaterError as e:
        _fail(ctx.obj['console'], e)
    click.echo(f"{digest}  {pm.downloader.tarball_url(version)}")


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
