import hashlib

OLD_CHECKSUM = "a" * 64
NEW_TARBALL = b"zfs-2.4.1 release tarball contents"
NEW_CHECKSUM = hashlib.sha256(NEW_TARBALL).hexdigest()

PKGBUILD = f'''# Maintainer: zfs-linux-zen packagers
pkgbase="zfs-linux-zen"
pkgname=("zfs-linux-zen" "zfs-linux-zen-headers")
_zfsver="2.4.0"
_kernelver="6.18.3.zen1-1"
_kernelver_full="6.18.3.zen1-1"
_extramodules="${{_kernelver_full/.zen/-zen}}"
pkgver="${{_zfsver}}_$(echo ${{_kernelver}} | sed s/-/./g)"
pkgrel=3
makedepends=("linux-zen-headers=${{_kernelver}}")
arch=("x86_64")
url="https://openzfs.org/"
source=("https://github.com/openzfs/zfs/releases/download/zfs-${{_zfsver}}/zfs-${{_zfsver}}.tar.gz")
sha256sums=("{OLD_CHECKSUM}")
license=("CDDL")
depends=("kmod" "zfs-utils=${{_zfsver}}" "linux-zen=${{_kernelver}}")
'''
