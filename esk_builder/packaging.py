import hashlib
import os
import shutil
import stat
import zipfile

from esk_builder import log
from esk_builder.errors import ExternalToolFailure, MissingDependency
from esk_builder.toolchain import download_with_retries, latest_release_asset
from esk_builder.tools import run_cmd

KPM_REPO = "SukiSU-Ultra/SukiSU_KernelPatch_patch"

# Keys consumed by the CI workflow, in this order
METADATA_KEYS = (
    "kernel_version",
    "name",
    "toolchain",
    "build_timestamp",
    "package_name",
    "variant",
    "susfs_version",
    "out_dir",
)


def kernel_version(kernel_dir):
    return run_cmd(["make", "-s", "kernelversion"], cwd=kernel_dir).strip()


def package_name(kernel_name, version, tag):
    return "%s-%s-%s" % (kernel_name, version, tag)


def copy_image(kernel_out, dest_dir, arch="arm64"):
    image = os.path.join(kernel_out, "arch", arch, "boot", "Image")
    if not os.path.isfile(image):
        raise MissingDependency("Kernel image not found: " + image)
    shutil.copy2(image, os.path.join(dest_dir, "Image"))
    return os.path.join(dest_dir, "Image")


def patch_kpm(anykernel_dir, config=None, token=None):
    """
    Run SukiSU's patch_linux over the kernel Image (KPM support)

    patch_linux writes oImage next to Image, which then replaces it.
    """
    config = config or {}
    log.info("Patching KPM for SukiSU variant...")
    url = latest_release_asset(config.get("repo", KPM_REPO), "patch_linux", token)

    tool = os.path.join(anykernel_dir, "patch_linux")
    download_with_retries(url, tool)
    os.chmod(tool, os.stat(tool).st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    try:
        run_cmd([tool], cwd=anykernel_dir)
    finally:
        os.remove(tool)

    patched = os.path.join(anykernel_dir, "oImage")
    if not os.path.isfile(patched):
        raise ExternalToolFailure("patch_linux did not produce " + patched)
    os.replace(patched, os.path.join(anykernel_dir, "Image"))
    log.success("Patched KPM for SukiSU variant successfully!")


def compress_image(anykernel_dir):
    log.info("Compressing kernel image...")
    run_cmd(
        ["7z", "a", "-t7z", "-m0=lzma2", "-mx=9", "-md=64m", "-mfb=128", "-mmt=on",
         "Image.7z", "./Image"],
        cwd=anykernel_dir,
    )
    os.remove(os.path.join(anykernel_dir, "Image"))
    log.success("Compressed kernel image!")
    return os.path.join(anykernel_dir, "Image.7z")


def make_zip(src, dst):
    log.info("Creating zip file: " + dst)

    try:
        with zipfile.ZipFile(dst, "w", zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
            abs_src = os.path.abspath(src)
            for dirname, subdirs, files in os.walk(src):
                subdirs[:] = sorted(d for d in subdirs if d != ".git")
                for filename in sorted(files):
                    absname = os.path.abspath(os.path.join(dirname, filename))
                    arcname = absname[len(abs_src) + 1:]
                    zf.write(absname, arcname)
                    log.info("  Added: " + arcname)
    except OSError as e:
        raise ExternalToolFailure("Unable to create the zip file %s: %s" % (dst, e))

    log.success("Finished creating zip")
    return dst


def build_boot_image(image, dest, config):
    """
    Build a GKI boot image (header v4) around the kernel Image and sign it

    config keys: header_version, pagesize, os_version, os_patch_level,
    partition_size, key, algorithm, mkbootimg, avbtool
    """
    mkbootimg = config.get("mkbootimg", "mkbootimg")
    avbtool = config.get("avbtool", "avbtool")

    args = [
        mkbootimg,
        "--kernel", image,
        "--header_version", str(config.get("header_version", 4)),
        "--pagesize", str(config.get("pagesize", 4096)),
        "--output", dest,
    ]
    if config.get("os_version"):
        args += ["--os_version", str(config["os_version"])]
    if config.get("os_patch_level"):
        args += ["--os_patch_level", str(config["os_patch_level"])]
    run_cmd(args)

    key = config.get("key")
    if key:
        if not os.path.isfile(key):
            raise MissingDependency("Signing key not found: " + key)
        run_cmd([
            avbtool, "add_hash_footer",
            "--image", dest,
            "--partition_name", "boot",
            "--partition_size", str(config.get("partition_size", 67108864)),
            "--key", key,
            "--algorithm", config.get("algorithm", "SHA256_RSA2048"),
        ])
        log.success("Signed boot image: " + dest)
    else:
        log.warn("No boot image signing key configured, leaving it unsigned")
    return dest


def write_metadata(path, values):
    with open(path, "w", encoding="utf-8") as f:
        for key in METADATA_KEYS:
            value = values.get(key)
            f.write("%s=%s\n" % (key, "" if value is None else value))
    log.info("Wrote build metadata: " + path)
    return path


def file_digest(path):
    sha = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            sha.update(chunk)
    return sha.hexdigest()


def human_size(path):
    size = float(os.path.getsize(path))
    for unit in ("B", "K", "M", "G"):
        if size < 1024 or unit == "G":
            break
        size /= 1024
    if unit == "B":
        return "%d%s" % (size, unit)
    return "%.1f%s" % (size, unit)
