import glob
import os
import re
import string
from collections import namedtuple

from esk_builder import log
from esk_builder.errors import ExternalToolFailure, MissingDependency, PatchApplyFailed
from esk_builder.tools import copytree, git_clone, run_cmd, run_installer
from esk_builder import variant as v

APPLIED = "applied"
ALREADY_PRESENT = "already_present"
SKIPPED = "skipped"

PatchReport = namedtuple("PatchReport", ["susfs_version", "outcomes"])

SUSFS_VERSION_RE = re.compile(r"^#define\s+SUSFS_VERSION\s+(\S+)", re.M)


def patch_args(patch_file, fuzz, *extra):
    return [
        "patch", "-p1", "--forward", "--fuzz=%d" % fuzz, "--no-backup-if-mismatch",
    ] + list(extra) + ["-i", patch_file]


def apply_patch(patch_file, source_root, fuzz=3, strict=True):
    """
    Apply one patch file to a source tree

    A strict patch must apply. A non-strict one is probed first and left
    alone when it is already in the tree or does not fit.

    Returns:
        APPLIED, ALREADY_PRESENT or SKIPPED
    """
    if not os.path.isfile(patch_file):
        raise MissingDependency("Patch not found: " + patch_file)

    log.info("Applying patch: %s (in %s)" % (patch_file, source_root))

    if not strict:
        try:
            run_cmd(patch_args(patch_file, fuzz, "--dry-run"), cwd=source_root)
        except ExternalToolFailure:
            try:
                run_cmd(
                    ["patch", "-p1", "-R", "--dry-run", "--force", "-i", patch_file],
                    cwd=source_root,
                )
            except ExternalToolFailure:
                log.warn("Patch does not apply, skipping: " + patch_file)
                return SKIPPED
            log.info("Patch already present: " + patch_file)
            return ALREADY_PRESENT

    try:
        run_cmd(patch_args(patch_file, fuzz), cwd=source_root)
    except ExternalToolFailure as e:
        raise PatchApplyFailed("Failed to apply %s: %s" % (patch_file, e.output or e))

    log.success("Applied: " + os.path.basename(patch_file))
    return APPLIED


def register_lsm(text, module, after="bpf"):
    """
    Add a security module to the default LSM order of security/Kconfig

    Only 'default' lines inside the 'config LSM' block are touched, and
    only when they do not already name the module.
    """
    lines = text.split("\n")
    in_block = False
    for i, line in enumerate(lines):
        if line == "config LSM":
            in_block = True
            continue
        if not in_block:
            continue
        if line.strip() == "help" or line.startswith("config "):
            in_block = False
            continue
        if line.strip().startswith("default") and module not in line:
            lines[i] = line.replace(after, "%s,%s" % (after, module), 1)
    return "\n".join(lines)


def register_lsm_file(path, module):
    if not os.path.isfile(path):
        raise MissingDependency("LSM config not found: " + path)
    with open(path, encoding="utf-8") as f:
        text = f.read()
    updated = register_lsm(text, module)
    if updated == text:
        log.info("LSM order already includes %s" % module)
        return ALREADY_PRESENT
    with open(path, "w", encoding="utf-8") as f:
        f.write(updated)
    log.success("Registered %s in %s" % (module, path))
    return APPLIED


def read_susfs_version(header):
    if not os.path.isfile(header):
        raise MissingDependency("SuSFS header not found: " + header)
    with open(header, encoding="utf-8") as f:
        match = SUSFS_VERSION_RE.search(f.read())
    if not match:
        raise MissingDependency("SUSFS_VERSION is not defined in " + header)
    return match.group(1).replace('"', "")


def expand(template, context):
    fields = [f for _, f, _, _ in string.Formatter().parse(template) if f]
    missing = [f for f in fields if context.get(f) is None]
    if missing:
        raise MissingDependency(
            "'%s' needs %s, which is not known yet" % (template, ", ".join(missing))
        )
    return template.format(**context)


def resolve_patch_file(pattern):
    if "*" not in pattern:
        return pattern
    matches = sorted(glob.glob(pattern))
    if len(matches) != 1:
        raise MissingDependency(
            "Expected one patch matching %s, found %d" % (pattern, len(matches))
        )
    return matches[0]


def apply_patch_dir(directory, source_root, strict=True):
    if not os.path.isdir(directory):
        raise MissingDependency("Patch directory is unavailable: " + directory)
    patches = sorted(glob.glob(os.path.join(directory, "*.patch")))
    if not patches:
        raise MissingDependency("No patches in " + directory)
    results = [apply_patch(p, source_root, strict=strict) for p in patches]
    if all(r == ALREADY_PRESENT for r in results):
        return ALREADY_PRESENT
    return APPLIED


def run_action(action, context):
    source = expand(action.source, context)
    target = expand(action.target, context) if action.target else ""

    if action.kind == v.INSTALLER:
        run_installer(source, action.args, cwd=target or None)
        return APPLIED
    if action.kind == v.CLONE:
        git_clone(source, target)
        return APPLIED
    if action.kind == v.COPY:
        if not copytree(source, target):
            raise MissingDependency("Directory not found: " + source)
        return APPLIED
    if action.kind == v.PATCH:
        return apply_patch(resolve_patch_file(source), target, strict=action.strict)
    if action.kind == v.REQUIRE_DIR:
        if not os.path.isdir(source):
            raise MissingDependency(
                "SuSFS fix patches are unavailable for SuSFS %s: %s"
                % (context["susfs_version"], source)
            )
        return APPLIED
    if action.kind == v.PATCH_DIR:
        return apply_patch_dir(source, target, strict=action.strict)
    if action.kind == v.SUSFS_VERSION:
        context["susfs_version"] = read_susfs_version(source)
        log.info("SuSFS version: " + context["susfs_version"])
        return APPLIED
    if action.kind == v.LSM:
        return register_lsm_file(source, action.args[0])
    raise ValueError("Unknown patch action: %s" % action.kind)


def apply_variant(variant, kernel_dir, workspace, patches_dir, kconfig):
    """
    Run the variant's patch actions in order, then its config directives

    Nothing is rolled back: the first failure leaves the tree as it is.

    Returns:
        PatchReport
    """
    context = {
        "kernel": kernel_dir,
        "workspace": workspace,
        "patches": patches_dir,
        "susfs_version": None,
    }
    outcomes = []

    for action in variant.patch_actions:
        log.info(action.description)
        outcome = run_action(action, context)
        outcomes.append((action, outcome))

    if variant.config_directives:
        log.info("Applying %d config directives" % len(variant.config_directives))
        kconfig.apply(variant.config_directives)

    log.success("Variant %s applied" % variant.tag)
    return PatchReport(susfs_version=context["susfs_version"], outcomes=outcomes)
