###############################################################
## Build variant resolution
##
## Turns BuildOptions into the ordered patch actions and kernel
## config directives of one build, plus the variant tag used to
## name every artifact. Nothing here touches the filesystem.

from collections import namedtuple

from esk_builder.errors import InvalidConfiguration
from esk_builder.options import LTO_FULL, NEXT, NONE, OFFICIAL, SUKI

ENABLE = "enable"
DISABLE = "disable"

# Patch action kinds
INSTALLER = "installer"
CLONE = "clone"
COPY = "copy"
PATCH = "patch"
PATCH_DIR = "patch_dir"
SUSFS_VERSION = "susfs_version"
REQUIRE_DIR = "require_dir"
LSM = "lsm"

PatchAction = namedtuple(
    "PatchAction",
    ["kind", "description", "source", "target", "args", "strict"],
    defaults=("", (), True),
)

ConfigDirective = namedtuple("ConfigDirective", ["action", "symbol"])

ResolvedVariant = namedtuple(
    "ResolvedVariant", ["options", "tag", "patch_actions", "config_directives"]
)

# Upstream KernelSU installers: (repository, ref)
KSU_INSTALLERS = {
    OFFICIAL: ("tiann/KernelSU", "main"),
    NEXT: ("KernelSU-Next/KernelSU-Next", "next"),
    SUKI: ("SukiSU-Ultra/SukiSU-Ultra", None),
}
SUKI_REF_SUSFS = "susfs-main"
SUKI_REF_DEFAULT = "nongki"

# Where each installer drops its sources inside the kernel tree
KSU_SOURCE_DIRS = {
    OFFICIAL: "KernelSU",
    NEXT: "KernelSU-Next",
    SUKI: "KernelSU",
}

INSTALLER_URL = "https://raw.githubusercontent.com/{repo}/{ref}/kernel/setup.sh"

SUSFS_SOURCE = "gitlab.com:simonpunk/susfs4ksu@gki-android12-5.10"
SUSFS_FIX_SOURCE = "github.com:WildKernels/kernel_patches@main"
BBG_INSTALLER = "https://github.com/vc-teahouse/Baseband-guard/raw/main/setup.sh"
BBG_LSM_NAME = "baseband_guard"

TAG_SUSFS = "SUSFS"
TAG_LXC = "LXC"
TAG_BBG = "BBG"


def installer_ref(options):
    repo, ref = KSU_INSTALLERS[options.root_framework]
    if options.root_framework == SUKI:
        ref = SUKI_REF_SUSFS if options.susfs else SUKI_REF_DEFAULT
    return repo, ref


def variant_tag(options):
    # Order is fixed: artifact names depend on it
    parts = [options.root_framework]
    if options.susfs:
        parts.append(TAG_SUSFS)
    if options.lxc:
        parts.append(TAG_LXC)
    if options.bbg and options.root_framework != NONE:
        parts.append(TAG_BBG)
    return "-".join(parts)


def check_directives(directives):
    enabled = set(d.symbol for d in directives if d.action == ENABLE)
    disabled = set(d.symbol for d in directives if d.action == DISABLE)
    conflicts = sorted(enabled & disabled)
    if conflicts:
        raise InvalidConfiguration(
            "Config symbols both enabled and disabled: %s" % ", ".join(conflicts)
        )


def resolve_variant(options, config=None):
    """
    Derive the ordered patch actions and config directives for a build

    Args:
        options: normalized BuildOptions
        config: optional kernel.yml settings overriding the upstream sources

    Returns:
        ResolvedVariant
    """
    config = config or {}
    susfs_config = config.get("susfs", {})
    bbg_config = config.get("bbg", {})
    ksu_config = config.get("kernelsu", {})

    framework = options.root_framework
    actions = []
    directives = []

    def action(kind, description, source, target="", args=(), strict=True):
        actions.append(PatchAction(kind, description, source, target, tuple(args), strict))

    def enable(symbol):
        directives.append(ConfigDirective(ENABLE, symbol))

    def disable(symbol):
        directives.append(ConfigDirective(DISABLE, symbol))

    # KernelSU sources
    if framework != NONE:
        repo, ref = installer_ref(options)
        repo = ksu_config.get(framework.lower(), repo)
        action(
            INSTALLER,
            "Install KernelSU (%s): %s@%s" % (framework, repo, ref),
            INSTALLER_URL.format(repo=repo, ref=ref),
            "{kernel}",
            args=[ref],
        )
        enable("CONFIG_KSU")

    # Manual hooks replace the kprobe based hooks
    if framework in (NEXT, SUKI):
        action(
            PATCH,
            "Apply KernelSU manual hook patch (%s)" % framework,
            "{patches}/%s/manual_hooks.patch" % framework.lower(),
            "{kernel}",
        )
        enable("CONFIG_KSU_MANUAL_HOOK")
        disable("CONFIG_KSU_KPROBES_HOOK")
        if framework == SUKI:
            enable("CONFIG_KSU_TRACEPOINT_HOOK")
            enable("CONFIG_KPM")
            disable("CONFIG_KSU_MANUAL_SU")

    if options.susfs:
        susfs_dir = "{workspace}/susfs"
        susfs_patches = susfs_dir + "/kernel_patches"
        action(CLONE, "Clone SuSFS", susfs_config.get("source", SUSFS_SOURCE), susfs_dir)
        action(COPY, "Copy SuSFS fs overlay", susfs_patches + "/fs", "{kernel}/fs")
        action(COPY, "Copy SuSFS include overlay", susfs_patches + "/include", "{kernel}/include")
        action(
            PATCH,
            "Apply SuSFS kernel-side patch",
            susfs_patches + "/50_add_susfs_in_gki-android*-*.patch",
            "{kernel}",
        )
        action(SUSFS_VERSION, "Read SuSFS version", "{kernel}/include/linux/susfs.h")

        if framework in (NEXT, OFFICIAL):
            ksu_dir = "{kernel}/" + KSU_SOURCE_DIRS[framework]
            if framework == NEXT:
                fix_dir = "{workspace}/wild_patches"
                fix_patches = fix_dir + "/next/susfs_fix_patches/{susfs_version}"
                action(
                    CLONE,
                    "Clone SuSFS fix patches",
                    susfs_config.get("fix_source", SUSFS_FIX_SOURCE),
                    fix_dir,
                )
                action(
                    REQUIRE_DIR,
                    "Check SuSFS fix patches for KernelSU (NEXT)",
                    fix_patches,
                )
            # Upstream may already carry this one
            action(
                PATCH,
                "Enable SuSFS for KernelSU (%s)" % framework,
                susfs_patches + "/KernelSU/10_enable_susfs_for_ksu.patch",
                ksu_dir,
                strict=False,
            )
            if framework == NEXT:
                action(
                    PATCH_DIR,
                    "Apply SuSFS fix patches for KernelSU (NEXT)",
                    fix_patches,
                    ksu_dir,
                )

        enable("CONFIG_KSU_SUSFS")
        if framework in (NEXT, SUKI):
            disable("CONFIG_KSU_SUSFS_SUS_SU")
    else:
        disable("CONFIG_KSU_SUSFS")

    if options.lxc:
        action(PATCH, "Apply LXC patch", "{patches}/lxc_support.patch", "{kernel}")

    if options.bbg and framework != NONE:
        action(
            INSTALLER,
            "Install Baseband Guard (BBG) LSM",
            bbg_config.get("installer", BBG_INSTALLER),
            "{kernel}",
        )
        action(
            LSM,
            "Register Baseband Guard in LSM order",
            "{kernel}/security/Kconfig",
            args=[BBG_LSM_NAME],
        )
        enable("CONFIG_BBG")

    check_directives(directives)

    return ResolvedVariant(
        options=options,
        tag=variant_tag(options),
        patch_actions=tuple(actions),
        config_directives=tuple(directives),
    )


def lto_directives(mode):
    if mode == LTO_FULL:
        selected, other = "CONFIG_LTO_CLANG_FULL", "CONFIG_LTO_CLANG_THIN"
    else:
        selected, other = "CONFIG_LTO_CLANG_THIN", "CONFIG_LTO_CLANG_FULL"
    return (
        ConfigDirective(ENABLE, "CONFIG_LTO_CLANG"),
        ConfigDirective(ENABLE, selected),
        ConfigDirective(DISABLE, other),
    )


def describe(variant):
    lines = ["Variant: " + variant.tag]
    for a in variant.patch_actions:
        lines.append("  action   : " + a.description)
    for d in variant.config_directives:
        lines.append("  %-9s: %s" % (d.action, d.symbol))
    return lines

