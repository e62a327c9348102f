"""
.SRCINFO regeneration through makepkg
"""

import shutil
import subprocess
from pathlib import Path

from errors import ManifestError, ToolUnavailable


def find_makepkg():
    return shutil.which('makepkg')


def regenerate_srcinfo(recipe_path, timeout=120):
    """Write .SRCINFO next to the recipe from `makepkg --printsrcinfo`.

    Raises ToolUnavailable when makepkg is not installed and ManifestError
    when it runs but fails.
    """
    makepkg = find_makepkg()
    if not makepkg:
        raise ToolUnavailable("makepkg not found, cannot generate .SRCINFO")

    recipe_path = Path(recipe_path)
    cmd = [makepkg, '--printsrcinfo', '-p', recipe_path.name]
    try:
        result = subprocess.run(cmd, cwd=recipe_path.parent, capture_output=True,
                                text=True, check=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise ManifestError(f"makepkg --printsrcinfo timed out after {timeout}s")
    except subprocess.CalledProcessError as e:
        error_msg = e.stderr.strip() if e.stderr else str(e)
        raise ManifestError(f"makepkg --printsrcinfo failed: {error_msg}")

    srcinfo_path = recipe_path.parent / '.SRCINFO'
    try:
        srcinfo_path.write_text(result.stdout)
    except OSError as e:
        raise ManifestError(f"Cannot write {srcinfo_path}: {e}")
    return srcinfo_path
