#!/usr/bin/env python3

###############################################################
## Kernel build script
##
## Usage:
##   $ KSU=<NONE|OFFICIAL|NEXT|SUKI> SUSFS=<bool> LXC=<bool> BBG=<bool> \
##     LTO=<thin|full> python3 -m esk_builder [--config kernel.yml]
##
## E.g.:
##   $ KSU=SUKI SUSFS=true BBG=true python3 -m esk_builder -j8
##
## Required environment:
##   GH_TOKEN, TG_BOT_TOKEN, TG_CHAT_ID (not needed with --no-notify)

import argparse
import datetime
import os
import time

from esk_builder import log, notify, packaging, settings
from esk_builder.errors import BuildError, NotificationFailure
from esk_builder.kconfig import KernelConfig
from esk_builder.options import SUKI, normalize_options
from esk_builder.patching import apply_variant
from esk_builder.toolchain import compiler_string, fetch_toolchain
from esk_builder.tools import git_clone, reset_dirs, run_cmd
from esk_builder.variant import describe, lto_directives, resolve_variant


class Workspace:
    """Every path of one build, all under a single root"""

    def __init__(self, root, patches="kernel_patches"):
        self.root = os.path.abspath(root)
        self.kernel = os.path.join(self.root, "kernel")
        self.kernel_out = os.path.join(self.kernel, "out")
        self.anykernel = os.path.join(self.root, "anykernel3")
        self.clang = os.path.join(self.root, "clang")
        self.out = os.path.join(self.root, "out")
        self.susfs = os.path.join(self.root, "susfs")
        self.wild_patches = os.path.join(self.root, "wild_patches")
        self.patches = os.path.join(self.root, patches)
        self.log_file = os.path.join(self.root, "build.log")
        self.metadata = os.path.join(self.root, "github.env")

    def reset(self):
        reset_dirs([
            self.kernel,
            self.anykernel,
            self.out,
            self.clang,
            self.susfs,
            self.wild_patches,
        ])


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="ESK kernel builder (KernelSU / SuSFS / LXC / BBG variants)"
    )
    parser.add_argument(
        "--config", "-c",
        default=settings.DEFAULT_CONFIG,
        help="Build configuration (default: %(default)s)",
    )
    parser.add_argument(
        "--workspace", "-w",
        help="Working directory (default: directory of the config file)",
    )
    parser.add_argument(
        "--jobs", "-j",
        type=int,
        help="Number of parallel build jobs (default: jobs from config, or all CPUs)",
    )
    parser.add_argument(
        "--boot-image",
        action="store_true",
        help="Also create a signed boot image",
    )
    parser.add_argument(
        "--no-notify",
        action="store_true",
        help="Build without Telegram notifications",
    )
    return parser.parse_args(argv)


def set_timezone(tz):
    os.environ["TZ"] = tz
    if hasattr(time, "tzset"):
        time.tzset()


def make_args(ws, clang_bin, jobs, arch="arm64", ccache=False):
    cc = "ccache clang" if ccache else "clang"
    return [
        "-j%d" % jobs,
        "O=" + ws.kernel_out,
        "ARCH=" + arch,
        "CC=" + cc,
        "CROSS_COMPILE=aarch64-linux-gnu-",
        "LLVM=1",
        "LD=" + os.path.join(clang_bin, "ld.lld"),
    ]


def setup_environment(config, clang_bin, compiler, timestamp):
    os.environ["PATH"] = clang_bin + os.pathsep + os.environ.get("PATH", "")
    os.environ["KBUILD_COMPILER_STRING"] = compiler
    os.environ["KBUILD_BUILD_TIMESTAMP"] = timestamp
    os.environ["KBUILD_BUILD_USER"] = config["build_user"]
    os.environ["KBUILD_BUILD_HOST"] = config["build_host"]
    log.info("Set environment: KBUILD_BUILD_USER=%s, KBUILD_BUILD_HOST=%s"
             % (config["build_user"], config["build_host"]))


def prepare_sources(config, ws, token=None):
    #
    # Prepare workspace
    #
    ws.reset()
    git_clone(config["sources"]["kernel"], ws.kernel)
    git_clone(config["sources"]["anykernel"], ws.anykernel)

    clang_bin = fetch_toolchain(config["toolchain"], ws.clang, ws.root, token)
    return clang_bin


def build_kernel(options, kconfig, args):
    kconfig.generate()

    log.info("Clang LTO mode: " + options.lto)
    kconfig.apply(lto_directives(options.lto))
    kconfig.regenerate()

    log.info("Build kernel: Image")
    run_cmd(["make"] + list(args) + ["Image"], cwd=kconfig.kernel_dir)
    log.success("Kernel built successfully")


def package(config, options, variant, ws, version, boot_image=False, token=None):
    """
    Turn the built Image into the flashable zip (and optional boot image)

    Returns:
        (package name, zip path, boot image path or None)
    """
    log.info("Packaging AnyKernel3 zip...")
    name = packaging.package_name(config["name"], version, variant.tag)

    packaging.copy_image(ws.kernel_out, ws.anykernel, config["arch"])
    if options.root_framework == SUKI:
        packaging.patch_kpm(ws.anykernel, config["kpm"], token)

    boot_img = None
    if boot_image:
        boot_img = os.path.join(ws.out, name + "-boot.img")
        packaging.build_boot_image(
            os.path.join(ws.anykernel, "Image"), boot_img, config["boot_image"]
        )

    packaging.compress_image(ws.anykernel)
    zip_path = packaging.make_zip(ws.anykernel, os.path.join(ws.root, name + ".zip"))
    return name, zip_path, boot_img


def best_effort(send, *args):
    # A failed notification never fails the build
    try:
        send(*args)
    except NotificationFailure as e:
        log.warn(str(e))
        return False
    return True


def report_failure(err, notifier, kernel_name, log_file):
    log.error(str(err))
    if notifier is None:
        return
    best_effort(notifier.send_message, notify.error_message(kernel_name, err))
    best_effort(notifier.upload_file, log_file, notify.escape_md_v2("Build log"))


def run(config, options, variant, notifier, ws, jobs, boot_image=False, token=None):
    clang_bin = prepare_sources(config, ws, token)

    compiler = compiler_string(clang_bin)
    timestamp = datetime.datetime.now().strftime("%a %b %d %H:%M:%S %Z %Y")
    setup_environment(config, clang_bin, compiler, timestamp)

    best_effort(notifier.send_message, notify.start_message(config, options, compiler, jobs))

    version = packaging.kernel_version(ws.kernel)
    log.info("Kernel version: " + version)

    args = make_args(ws, clang_bin, jobs, config["arch"], config.get("ccache", False))
    kconfig = KernelConfig(ws.kernel, ws.kernel_out, config["defconfig"], args, config["arch"])

    #
    # Pre-build
    #
    report = apply_variant(variant, ws.kernel, ws.root, ws.patches, kconfig)

    #
    # Build
    #
    build_kernel(options, kconfig, args)

    #
    # Post-build
    #
    name, zip_path, boot_img = package(config, options, variant, ws, version, boot_image, token)

    packaging.write_metadata(ws.metadata, {
        "kernel_version": version,
        "name": config["name"],
        "toolchain": compiler,
        "build_timestamp": timestamp,
        "package_name": name,
        "variant": variant.tag,
        "susfs_version": report.susfs_version or "",
        "out_dir": ws.root,
    })

    caption = notify.success_caption({
        "name": config["name"],
        "builder": "%s@%s" % (config["build_user"], config["build_host"]),
        "kernel_version": version,
        "timestamp": timestamp,
        "root_framework": options.root_framework,
        "susfs_version": report.susfs_version,
        "variant": variant.tag,
        "compiler": compiler,
        "artifact": os.path.basename(zip_path),
        "size": packaging.human_size(zip_path),
        "sha256": packaging.file_digest(zip_path),
    })
    best_effort(notifier.upload_file, zip_path, caption)
    if boot_img:
        best_effort(notifier.upload_file, boot_img, notify.escape_md_v2(os.path.basename(boot_img)))

    log.success("Build succeeded: " + zip_path)
    return zip_path


def main(argv=None):
    args = parse_args(argv)

    config_dir = os.path.dirname(os.path.abspath(args.config))
    root = args.workspace or config_dir
    log.setup(os.path.join(os.path.abspath(root), "build.log"))

    notifier = None
    kernel_name = settings.DEFAULTS["name"]
    ws = Workspace(root)

    try:
        #
        # Check input
        #
        config = settings.load(args.config)
        kernel_name = config["name"]
        ws = Workspace(root, os.path.join(config_dir, config["patches"]))

        log.info("Validating environment variables...")
        if args.no_notify:
            secrets = {}
            notifier = notify.NullNotifier()
        else:
            secrets = settings.read_secrets()
            notifier = notify.TelegramNotifier(secrets["TG_BOT_TOKEN"], secrets["TG_CHAT_ID"])

        options = normalize_options(os.environ)
        variant = resolve_variant(options, config)
        for line in describe(variant):
            log.info(line)

        set_timezone(config["timezone"])
        jobs = args.jobs or config["jobs"]
        boot_image = args.boot_image or bool(config["boot_image"].get("enabled"))

        run(config, options, variant, notifier, ws, jobs, boot_image, secrets.get("GH_TOKEN"))
    except BuildError as e:
        report_failure(e, notifier, kernel_name, ws.log_file)
        return 1
    except Exception as e:
        report_failure("Unhandled exception: %s" % e, notifier, kernel_name, ws.log_file)
        return 1

    return 0
