import unittest
from unittest.mock import patch
import os
import tempfile
import shutil
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from errors import LockError, ParseError, RecipeWriteError, UpdaterError
from pkgbuild import (
    backup_path_for,
    lock_path_for,
    parse_recipe,
    read_recipe,
    recipe_lock,
    render_update,
    restore_backup,
    write_recipe,
)
from tests.fixtures import NEW_CHECKSUM, OLD_CHECKSUM, PKGBUILD


class TestParseRecipe(unittest.TestCase):
    def test_reads_all_fields(self):
        state = parse_recipe(PKGBUILD)
        self.assertEqual(state.zfs_version, "2.4.0")
        self.assertEqual(state.kernel_version, "6.18.3.zen1-1")
        self.assertEqual(state.checksum, OLD_CHECKSUM)
        self.assertEqual(state.release_number, "3")

    def test_kernelver_full_listed_first_is_not_mistaken_for_kernelver(self):
        text = '_kernelver_full="9.9.9.zen1-9"\n_zfsver="2.4.0"\n_kernelver="6.18.3.zen1-1"\n'
        self.assertEqual(parse_recipe(text).kernel_version, "6.18.3.zen1-1")

    def test_missing_zfs_version(self):
        text = PKGBUILD.replace('_zfsver="2.4.0"\n', '')
        with self.assertRaises(ParseError):
            parse_recipe(text)

    def test_missing_kernel_version(self):
        text = PKGBUILD.replace('_kernelver="6.18.3.zen1-1"\n', '')
        with self.assertRaises(ParseError):
            parse_recipe(text)

    def test_malformed_versions(self):
        with self.assertRaises(ParseError):
            parse_recipe(PKGBUILD.replace('_zfsver="2.4.0"', '_zfsver="latest"'))
        with self.assertRaises(ParseError):
            parse_recipe(PKGBUILD.replace('_kernelver="6.18.3.zen1-1"', '_kernelver=""'))

    def test_optional_fields_absent(self):
        state = parse_recipe('_zfsver="2.4.0"\n_kernelver="6.18.3.zen1-1"\n')
        self.assertIsNone(state.checksum)
        self.assertIsNone(state.release_number)

    def test_unreadable_file(self):
        with self.assertRaises(ParseError):
            read_recipe("/nonexistent/PKGBUILD")

    def test_recipe_that_is_not_utf8(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            recipe = Path(temp_dir) / "PKGBUILD"
            recipe.write_bytes(PKGBUILD.encode() + b"# \xff\xfe\n")
            with self.assertRaises(ParseError) as ctx:
                read_recipe(recipe)
        self.assertIn("not valid UTF-8", str(ctx.exception))


class TestRenderUpdate(unittest.TestCase):
    def test_replaces_only_tracked_fields(self):
        updated = render_update(PKGBUILD, "2.4.1", "6.18.4.zen1-1", NEW_CHECKSUM)

        self.assertIn('_zfsver="2.4.1"', updated)
        self.assertIn('_kernelver="6.18.4.zen1-1"', updated)
        self.assertIn('_kernelver_full="6.18.4.zen1-1"', updated)
        self.assertIn(f'sha256sums=("{NEW_CHECKSUM}")', updated)
        self.assertIn('\npkgrel=1\n', updated)

        old_lines = PKGBUILD.splitlines()
        new_lines = updated.splitlines()
        self.assertEqual(len(old_lines), len(new_lines))
        changed = [old for old, new in zip(old_lines, new_lines) if old != new]
        self.assertEqual(len(changed), 5)

    def test_missing_checksum_field(self):
        text = PKGBUILD.replace(f'sha256sums=("{OLD_CHECKSUM}")\n', '')
        with self.assertRaises(ParseError):
            render_update(text, "2.4.1", "6.18.4.zen1-1", NEW_CHECKSUM)

    def test_kernelver_full_is_optional(self):
        text = PKGBUILD.replace('_kernelver_full="6.18.3.zen1-1"\n', '')
        updated = render_update(text, "2.4.0", "6.18.4.zen1-1", OLD_CHECKSUM)
        self.assertIn('_kernelver="6.18.4.zen1-1"', updated)


class TestWriteRecipe(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.recipe = Path(self.temp_dir) / "PKGBUILD"
        self.recipe.write_text(PKGBUILD)

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_writes_backup_then_update(self):
        backup = write_recipe(self.recipe, "2.4.1", "6.18.4.zen1-1", NEW_CHECKSUM)

        self.assertEqual(backup, backup_path_for(self.recipe))
        self.assertEqual(backup.read_text(), PKGBUILD)
        state = read_recipe(self.recipe)
        self.assertEqual(state.zfs_version, "2.4.1")
        self.assertEqual(state.checksum, NEW_CHECKSUM)
        self.assertEqual(state.release_number, "1")
        self.assertEqual(sorted(p.name for p in Path(self.temp_dir).iterdir()),
                         ["PKGBUILD", "PKGBUILD.bak"])

    def test_missing_field_leaves_file_alone(self):
        text = PKGBUILD.replace('pkgrel=3\n', '')
        self.recipe.write_text(text)
        with self.assertRaises(ParseError):
            write_recipe(self.recipe, "2.4.1", "6.18.4.zen1-1", NEW_CHECKSUM)
        self.assertEqual(self.recipe.read_text(), text)
        self.assertFalse(backup_path_for(self.recipe).exists())

    def test_restore_backup(self):
        write_recipe(self.recipe, "2.4.1", "6.18.4.zen1-1", NEW_CHECKSUM)
        restore_backup(self.recipe)
        self.assertEqual(self.recipe.read_text(), PKGBUILD)

    def test_restore_without_backup(self):
        with self.assertRaises(UpdaterError):
            restore_backup(self.recipe)

    @patch('pkgbuild.shutil.copy2', side_effect=PermissionError(13, "Permission denied"))
    def test_backup_failure(self, _):
        with self.assertRaises(RecipeWriteError):
            write_recipe(self.recipe, "2.4.1", "6.18.4.zen1-1", NEW_CHECKSUM)
        self.assertEqual(self.recipe.read_text(), PKGBUILD)

    @patch('pkgbuild.os.replace', side_effect=OSError(28, "No space left on device"))
    def test_replace_failure_removes_temporary_copy(self, _):
        with self.assertRaises(RecipeWriteError):
            write_recipe(self.recipe, "2.4.1", "6.18.4.zen1-1", NEW_CHECKSUM)
        self.assertEqual(self.recipe.read_text(), PKGBUILD)
        self.assertEqual(sorted(p.name for p in Path(self.temp_dir).iterdir()),
                         ["PKGBUILD", "PKGBUILD.bak"])

    def test_non_utf8_recipe_is_not_written(self):
        raw = PKGBUILD.encode() + b"# \xff\xfe\n"
        self.recipe.write_bytes(raw)
        with self.assertRaises(ParseError):
            write_recipe(self.recipe, "2.4.1", "6.18.4.zen1-1", NEW_CHECKSUM)
        self.assertEqual(self.recipe.read_bytes(), raw)
        self.assertFalse(backup_path_for(self.recipe).exists())

    def test_restore_failure(self):
        write_recipe(self.recipe, "2.4.1", "6.18.4.zen1-1", NEW_CHECKSUM)
        with patch('pkgbuild.shutil.copy2', side_effect=OSError(30, "Read-only file system")):
            with self.assertRaises(RecipeWriteError):
                restore_backup(self.recipe)


class TestRecipeLock(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.recipe = Path(self.temp_dir) / "PKGBUILD"
        self.recipe.write_text(PKGBUILD)
        self.lock_path = lock_path_for(self.recipe)
        self._remove_lock()

    def tearDown(self):
        self._remove_lock()
        shutil.rmtree(self.temp_dir)

    def _remove_lock(self):
        if os.path.lexists(self.lock_path):
            os.unlink(self.lock_path)

    def test_second_holder_is_refused(self):
        with recipe_lock(self.recipe):
            with self.assertRaises(LockError):
                with recipe_lock(self.recipe):
                    pass

    def test_lock_released_after_block(self):
        with recipe_lock(self.recipe):
            pass
        with recipe_lock(self.recipe):
            pass

    def test_existing_lock_file_is_not_truncated(self):
        self.lock_path.write_text("held\n")
        with recipe_lock(self.recipe):
            pass
        self.assertEqual(self.lock_path.read_text(), "held\n")

    def test_symlinked_lock_path_is_refused(self):
        target = Path(self.temp_dir) / "important"
        target.write_text("important\n")
        os.symlink(target, self.lock_path)

        with self.assertRaises(LockError):
            with recipe_lock(self.recipe):
                pass
        self.assertEqual(target.read_text(), "important\n")

    @patch('pkgbuild.os.open', side_effect=PermissionError(13, "Permission denied"))
    def test_unopenable_lock_file(self, _):
        with self.assertRaises(LockError):
            with recipe_lock(self.recipe):
                pass


if __name__ == '__main__':
    unittest.main()
