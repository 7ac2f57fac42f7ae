import os
import shutil
import tempfile
import unittest
from unittest.mock import MagicMock, patch

from esk_builder import patching
from esk_builder.errors import ExternalToolFailure, MissingDependency, PatchApplyFailed
from esk_builder.options import NEXT, NONE, SUKI, BuildOptions
from esk_builder.variant import resolve_variant

SECURITY_KCONFIG = """\
config SECURITY_PATH
\tbool "Security hooks for pathname based access control"

config LSM
\tstring "Ordered list of enabled LSMs"
\tdefault "landlock,lockdown,yama,loadpin,safesetid,integrity,selinux,smack,tomoyo,apparmor,bpf" if DEFAULT_SECURITY_SELINUX
\tdefault "landlock,lockdown,yama,loadpin,safesetid,integrity,bpf"
\thelp
\t  A comma-separated list of LSMs, in initialization order.
\t  default bpf stays as written here.

config OTHER
\tdefault "bpf"
"""


def write(path, text=""):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        f.write(text)
    return path


class ApplyPatchTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.patch_file = write(os.path.join(self.tmp, "fix.patch"), "--- a\n+++ b\n")

    def tearDown(self):
        shutil.rmtree(self.tmp)

    def test_strict_patch_applies(self):
        with patch("esk_builder.patching.run_cmd") as run_cmd:
            outcome = patching.apply_patch(self.patch_file, self.tmp)
        self.assertEqual(outcome, patching.APPLIED)
        args = run_cmd.call_args[0][0]
        self.assertIn("--forward", args)
        self.assertIn("--fuzz=3", args)
        self.assertIn("--no-backup-if-mismatch", args)
        self.assertEqual(run_cmd.call_args[1]["cwd"], self.tmp)

    def test_strict_failure_is_fatal(self):
        with patch("esk_builder.patching.run_cmd", side_effect=ExternalToolFailure("boom", 1)):
            with self.assertRaises(PatchApplyFailed):
                patching.apply_patch(self.patch_file, self.tmp)

    def test_missing_patch_file(self):
        with self.assertRaises(MissingDependency):
            patching.apply_patch(os.path.join(self.tmp, "nope.patch"), self.tmp)

    def test_best_effort_already_present(self):
        # forward dry run fails, reverse dry run succeeds
        with patch(
            "esk_builder.patching.run_cmd",
            side_effect=[ExternalToolFailure("forward", 1), ""],
        ) as run_cmd:
            outcome = patching.apply_patch(self.patch_file, self.tmp, strict=False)
        self.assertEqual(outcome, patching.ALREADY_PRESENT)
        self.assertIn("-R", run_cmd.call_args[0][0])

    def test_best_effort_skipped(self):
        with patch(
            "esk_builder.patching.run_cmd",
            side_effect=ExternalToolFailure("nope", 1),
        ):
            outcome = patching.apply_patch(self.patch_file, self.tmp, strict=False)
        self.assertEqual(outcome, patching.SKIPPED)

    def test_best_effort_applies_after_dry_run(self):
        with patch("esk_builder.patching.run_cmd") as run_cmd:
            outcome = patching.apply_patch(self.patch_file, self.tmp, strict=False)
        self.assertEqual(outcome, patching.APPLIED)
        self.assertEqual(run_cmd.call_count, 2)
        self.assertIn("--dry-run", run_cmd.call_args_list[0][0][0])
        self.assertNotIn("--dry-run", run_cmd.call_args_list[1][0][0])


class RegisterLsmTests(unittest.TestCase):
    def test_adds_module_after_bpf(self):
        text = patching.register_lsm(SECURITY_KCONFIG, "baseband_guard")
        self.assertIn("apparmor,bpf,baseband_guard\" if DEFAULT_SECURITY_SELINUX", text)
        self.assertIn("integrity,bpf,baseband_guard\"\n", text)

    def test_idempotent(self):
        once = patching.register_lsm(SECURITY_KCONFIG, "baseband_guard")
        twice = patching.register_lsm(once, "baseband_guard")
        self.assertEqual(once, twice)
        self.assertEqual(twice.count("baseband_guard"), 2)

    def test_leaves_help_and_other_blocks_alone(self):
        text = patching.register_lsm(SECURITY_KCONFIG, "baseband_guard")
        self.assertIn("default bpf stays as written here.", text)
        self.assertTrue(text.endswith("config OTHER\n\tdefault \"bpf\"\n"))

    def test_file_transform_reports_outcome(self):
        tmp = tempfile.mkdtemp()
        try:
            path = write(os.path.join(tmp, "security", "Kconfig"), SECURITY_KCONFIG)
            self.assertEqual(patching.register_lsm_file(path, "baseband_guard"), patching.APPLIED)
            self.assertEqual(
                patching.register_lsm_file(path, "baseband_guard"), patching.ALREADY_PRESENT
            )
        finally:
            shutil.rmtree(tmp)


class HelperTests(unittest.TestCase):
    def test_read_susfs_version(self):
        tmp = tempfile.mkdtemp()
        try:
            header = write(
                os.path.join(tmp, "susfs.h"),
                '#ifndef KSU_SUSFS_H\n#define SUSFS_VERSION "v1.5.9"\n#define SUSFS_VARIANT "GKI"\n',
            )
            self.assertEqual(patching.read_susfs_version(header), "v1.5.9")
        finally:
            shutil.rmtree(tmp)

    def test_read_susfs_version_missing_macro(self):
        tmp = tempfile.mkdtemp()
        try:
            header = write(os.path.join(tmp, "susfs.h"), "#define OTHER 1\n")
            with self.assertRaises(MissingDependency):
                patching.read_susfs_version(header)
        finally:
            shutil.rmtree(tmp)

    def test_expand_requires_known_values(self):
        self.assertEqual(patching.expand("{kernel}/fs", {"kernel": "/k"}), "/k/fs")
        with self.assertRaises(MissingDependency):
            patching.expand("{workspace}/{susfs_version}", {"workspace": "/w", "susfs_version": None})


class ApplyVariantTests(unittest.TestCase):
    """Drives a whole variant against a fake kernel tree"""

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.workspace = self.tmp
        self.kernel = os.path.join(self.tmp, "kernel")
        self.patches = os.path.join(self.tmp, "kernel_patches")
        os.makedirs(self.kernel)
        write(os.path.join(self.patches, "next", "manual_hooks.patch"), "hooks")
        write(os.path.join(self.patches, "suki", "manual_hooks.patch"), "hooks")
        write(os.path.join(self.kernel, "security", "Kconfig"), SECURITY_KCONFIG)

        susfs = os.path.join(self.tmp, "susfs", "kernel_patches")
        write(os.path.join(susfs, "fs", "susfs.c"), "/* susfs */")
        write(
            os.path.join(susfs, "include", "linux", "susfs.h"),
            '#define SUSFS_VERSION "v1.5.9"\n',
        )
        write(os.path.join(susfs, "50_add_susfs_in_gki-android12-5.10.patch"), "main")
        write(os.path.join(susfs, "KernelSU", "10_enable_susfs_for_ksu.patch"), "enable")
        self.kconfig = MagicMock()

    def tearDown(self):
        shutil.rmtree(self.tmp)

    def apply(self, options, clone=None):
        resolved = resolve_variant(options)
        with patch("esk_builder.patching.run_cmd") as run_cmd, \
                patch("esk_builder.patching.run_installer") as installer, \
                patch("esk_builder.patching.git_clone", side_effect=clone) as git_clone:
            report = patching.apply_variant(
                resolved, self.kernel, self.workspace, self.patches, self.kconfig
            )
        return resolved, report, run_cmd, installer, git_clone

    def test_next_susfs_without_fix_patches_fails_fast(self):
        options = BuildOptions(NEXT, True, False, False, "thin")
        with patch("esk_builder.patching.run_cmd") as run_cmd, \
                patch("esk_builder.patching.run_installer"), \
                patch("esk_builder.patching.git_clone"):
            with self.assertRaises(MissingDependency) as ctx:
                patching.apply_variant(
                    resolve_variant(options), self.kernel, self.workspace, self.patches, self.kconfig
                )
        self.assertIn("v1.5.9", str(ctx.exception))
        self.kconfig.apply.assert_not_called()

        # KernelSU-Next is left untouched when the fix patches are missing
        patched = [c[0][0][-1] for c in run_cmd.call_args_list]
        self.assertFalse([p for p in patched if p.endswith("10_enable_susfs_for_ksu.patch")])
        self.assertTrue(patched[-1].endswith("50_add_susfs_in_gki-android12-5.10.patch"))

    def test_next_susfs_with_fix_patches(self):
        def clone(source, dest):
            if "kernel_patches" in source:
                write(os.path.join(dest, "next", "susfs_fix_patches", "v1.5.9", "0001-fix.patch"), "fix")

        options = BuildOptions(NEXT, True, False, False, "thin")
        resolved, report, run_cmd, installer, git_clone = self.apply(options, clone)

        self.assertEqual(report.susfs_version, "v1.5.9")
        self.assertTrue(os.path.isfile(os.path.join(self.kernel, "fs", "susfs.c")))
        self.assertTrue(os.path.isfile(os.path.join(self.kernel, "include", "linux", "susfs.h")))
        self.assertEqual(len(report.outcomes), len(resolved.patch_actions))
        self.assertEqual(git_clone.call_count, 2)
        self.kconfig.apply.assert_called_once_with(resolved.config_directives)

    def test_suki_bbg_registers_lsm(self):
        options = BuildOptions(SUKI, False, False, True, "thin")
        resolved, report, run_cmd, installer, git_clone = self.apply(options)

        self.assertIsNone(report.susfs_version)
        self.assertEqual(installer.call_count, 2)
        self.assertEqual(installer.call_args_list[0][0][1], ("nongki",))
        with open(os.path.join(self.kernel, "security", "Kconfig")) as f:
            self.assertIn("bpf,baseband_guard", f.read())
        git_clone.assert_not_called()

    def test_none_only_touches_config(self):
        options = BuildOptions(NONE, False, False, True, "thin")
        resolved, report, run_cmd, installer, git_clone = self.apply(options)
        self.assertEqual(report.outcomes, [])
        installer.assert_not_called()
        run_cmd.assert_not_called()
        self.kconfig.apply.assert_called_once()


if __name__ == "__main__":
    unittest.main()
